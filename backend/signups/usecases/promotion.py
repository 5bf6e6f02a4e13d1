import logging
from datetime import datetime

from ..domain.errors import CapacityExhaustedError, CapacityScope, VersionConflictError
from ..domain.repositories import Notifier, OrderService, UnitOfWorkFactory, UserService
from ..domain.services import grade_year, has_remaining_capacity, is_sign_up_event, select_slot
from ..models import SignUp
from ..utils.time import utc_now
from .sign_ups import RetryPolicy, attach_order_if_ticketed

logger = logging.getLogger(__name__)


async def _attempt_promotion(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    orders: OrderService,
    *,
    event_id: int,
    now: datetime,
) -> SignUp | None:
    async with uow_factory() as uow:
        event = await uow.events.get(event_id)
        if event is None or not is_sign_up_event(event):
            return None
        if not has_remaining_capacity(event):
            return None

        slots = await uow.events.list_slots(event_id)
        waitlisted = await uow.sign_ups.list_waitlisted(event_id)
        known = await users.get_many([candidate.user_id for candidate in waitlisted])
        for candidate in waitlisted:
            user = known.get(candidate.user_id)
            if user is None:
                logger.warning("waitlisted user %s no longer exists, skipped", candidate.user_id)
                continue
            slot = select_slot(slots, grade_year(user.graduation_year, now))
            if slot is None:
                continue
            promoted = await uow.sign_ups.confirm_waitlisted(candidate, slot_id=slot.id)
            promoted = await attach_order_if_ticketed(uow, orders, event, promoted)
            await uow.promotion_jobs.enqueue_notification(event_id, promoted.user_id)
            return promoted
    return None


async def promote_from_waitlist(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    orders: OrderService,
    *,
    event_id: int,
    retry: RetryPolicy = RetryPolicy(),
    now: datetime | None = None,
) -> SignUp | None:
    """
    Confirm the longest-waiting active sign-up that has an eligible slot with
    capacity, and queue the promoted user's notification in the same
    transaction. Returns None when nobody can be promoted. Every attempt starts
    from a fresh read, so a re-delivered job never promotes the same row twice.
    """
    for attempt in range(retry.max_attempts):
        try:
            return await _attempt_promotion(
                uow_factory,
                users,
                orders,
                event_id=event_id,
                now=now or utc_now(),
            )
        except CapacityExhaustedError as exc:
            if exc.scope == CapacityScope.EVENT:
                return None
            logger.debug("slot %s filled during promotion for event %s, retrying", exc.entity_id, event_id)
        except VersionConflictError:
            logger.debug("waitlisted sign-up changed during promotion for event %s, retrying", event_id)
        await retry.backoff(attempt)

    raise VersionConflictError(f"promotion for event {event_id} kept conflicting")


async def handle_promotion_job(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    orders: OrderService,
    *,
    event_id: int,
    retry: RetryPolicy = RetryPolicy(),
    now: datetime | None = None,
) -> SignUp | None:
    promoted = await promote_from_waitlist(
        uow_factory,
        users,
        orders,
        event_id=event_id,
        retry=retry,
        now=now,
    )
    if promoted is None:
        logger.info("nothing to promote for event %s", event_id)
    return promoted


async def deliver_promotion_notice(notifier: Notifier, *, user_id: int, event_id: int) -> None:
    """Errors propagate so the worker reschedules the notification job on its own."""
    await notifier.notify(user_id, event_id)
    logger.info("notified user %s about promotion for event %s", user_id, event_id)
