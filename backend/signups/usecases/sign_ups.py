import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime

from ..config import Settings
from ..domain.errors import (
    AlreadySignedUpError,
    CapacityExhaustedError,
    CapacityScope,
    InvalidArgumentError,
    NotFoundError,
    PermissionDeniedError,
    SignUpRetriesExhaustedError,
    VersionConflictError,
)
from ..domain.repositories import (
    OrderService,
    PermissionService,
    UnitOfWork,
    UnitOfWorkFactory,
    UserInfo,
    UserService,
)
from ..domain.services import (
    AvailabilitySnapshot,
    compute_availability,
    ensure_sign_ups_open,
    grade_year,
    has_remaining_capacity,
    select_slot,
)
from ..models import Event, EventType, ParticipationStatus, Role, SignUp, SignUpAvailability
from ..utils.time import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded optimistic retry with full-jitter exponential backoff."""

    max_attempts: int = 20
    base_delay: float = 0.01
    max_delay: float = 0.2

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.sign_up_max_attempts,
            base_delay=settings.sign_up_retry_base_delay,
            max_delay=settings.sign_up_retry_max_delay,
        )

    async def backoff(self, attempt: int) -> None:
        ceiling = min(self.max_delay, self.base_delay * (2**attempt))
        await asyncio.sleep(random.uniform(0, ceiling))


async def _get_event(uow: UnitOfWork, event_id: int) -> Event:
    event = await uow.events.get(event_id)
    if event is None:
        raise NotFoundError(f"event {event_id} not found")
    return event


async def _ensure_acting_for(users: UserService, *, actor_id: int, user_id: int) -> None:
    if actor_id == user_id:
        return
    actor = await users.get(actor_id)
    if not actor.is_super_user:
        raise PermissionDeniedError("cannot act on behalf of another user")


async def ensure_organizer(
    users: UserService,
    permissions: PermissionService,
    *,
    actor_id: int,
    organization_id: int,
) -> None:
    if await permissions.has_role(actor_id, organization_id, Role.MEMBER):
        return
    actor = await users.get(actor_id)
    if not actor.is_super_user:
        raise PermissionDeniedError("organization membership required")


async def attach_order_if_ticketed(
    uow: UnitOfWork,
    orders: OrderService,
    event: Event,
    sign_up: SignUp,
) -> SignUp:
    """Create the order inside the confirming transaction so a failure releases the spot."""
    if event.type != EventType.TICKETS:
        return sign_up
    if not event.product_id:
        raise InvalidArgumentError("ticketed event has no product")
    order_id = await orders.create_order(sign_up.user_id, event.product_id)
    return await uow.sign_ups.attach_order(sign_up, order_id)


async def _attempt_sign_up(
    uow_factory: UnitOfWorkFactory,
    orders: OrderService,
    *,
    user: UserInfo,
    event_id: int,
    now: datetime,
) -> tuple[SignUp, bool]:
    async with uow_factory() as uow:
        event = await _get_event(uow, event_id)
        ensure_sign_ups_open(event, now=now)

        existing = await uow.sign_ups.get_active(user.id, event_id)
        if existing is not None:
            return existing, False

        if not has_remaining_capacity(event):
            return await uow.sign_ups.create_waitlisted(user_id=user.id, event_id=event_id), True

        slots = await uow.events.list_slots(event_id)
        slot = select_slot(slots, grade_year(user.graduation_year, now))
        if slot is None:
            return await uow.sign_ups.create_waitlisted(user_id=user.id, event_id=event_id), True

        sign_up = await uow.sign_ups.create_confirmed(user_id=user.id, event_id=event_id, slot_id=slot.id)
        sign_up = await attach_order_if_ticketed(uow, orders, event, sign_up)
        return sign_up, True


async def sign_up(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    orders: OrderService,
    *,
    actor_id: int,
    user_id: int,
    event_id: int,
    retry: RetryPolicy = RetryPolicy(),
    now: datetime | None = None,
) -> tuple[SignUp, bool]:
    """
    Sign a user up for an event: confirmed in a slot when capacity allows,
    otherwise on the waitlist. Returns the sign-up and whether it was created
    by this call; an existing active sign-up is returned unchanged.
    """
    await _ensure_acting_for(users, actor_id=actor_id, user_id=user_id)
    user = await users.get(user_id)

    for attempt in range(retry.max_attempts):
        try:
            return await _attempt_sign_up(
                uow_factory,
                orders,
                user=user,
                event_id=event_id,
                now=now or utc_now(),
            )
        except CapacityExhaustedError as exc:
            if exc.scope == CapacityScope.EVENT:
                # The next attempt re-reads the event and lands on the waitlist.
                continue
            logger.debug("slot %s filled during sign-up of user %s, retrying", exc.entity_id, user_id)
        except VersionConflictError:
            logger.debug("version conflict during sign-up of user %s for event %s, retrying", user_id, event_id)
        except AlreadySignedUpError:
            async with uow_factory() as uow:
                winner = await uow.sign_ups.get_active(user_id, event_id)
            if winner is not None:
                return winner, False
        await retry.backoff(attempt)

    logger.warning("sign-up of user %s for event %s gave up after %s attempts", user_id, event_id, retry.max_attempts)
    raise SignUpRetriesExhaustedError("too much contention, please try again later")


async def _deactivate(
    uow_factory: UnitOfWorkFactory,
    *,
    user_id: int,
    event_id: int,
    status: ParticipationStatus,
    retry: RetryPolicy,
) -> tuple[SignUp, ParticipationStatus | None]:
    for attempt in range(retry.max_attempts):
        try:
            async with uow_factory() as uow:
                await _get_event(uow, event_id)
                active = await uow.sign_ups.get_active(user_id, event_id)
                if active is None:
                    latest = await uow.sign_ups.get_latest(user_id, event_id)
                    if latest is None:
                        raise NotFoundError(f"user {user_id} has no sign-up for event {event_id}")
                    return latest, None

                status_from = active.participation_status
                updated = await uow.sign_ups.deactivate(active, status)
                if status_from == ParticipationStatus.CONFIRMED:
                    await uow.promotion_jobs.enqueue(event_id)
                return updated, status_from
        except VersionConflictError:
            logger.debug("sign-up of user %s for event %s changed concurrently, retrying", user_id, event_id)
        await retry.backoff(attempt)

    raise SignUpRetriesExhaustedError("too much contention, please try again later")


async def retract_sign_up(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    *,
    actor_id: int,
    user_id: int,
    event_id: int,
    retry: RetryPolicy = RetryPolicy(),
) -> tuple[SignUp, ParticipationStatus | None]:
    """
    User-initiated withdrawal. Returns the sign-up and the status it left, or
    None when it was already terminal.
    """
    await _ensure_acting_for(users, actor_id=actor_id, user_id=user_id)
    return await _deactivate(
        uow_factory,
        user_id=user_id,
        event_id=event_id,
        status=ParticipationStatus.RETRACTED,
        retry=retry,
    )


async def remove_sign_up(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    permissions: PermissionService,
    *,
    actor_id: int,
    user_id: int,
    event_id: int,
    retry: RetryPolicy = RetryPolicy(),
) -> tuple[SignUp, ParticipationStatus | None]:
    """Organizer-initiated removal; same semantics as retract_sign_up."""
    async with uow_factory() as uow:
        event = await _get_event(uow, event_id)
    await ensure_organizer(users, permissions, actor_id=actor_id, organization_id=event.organization_id)
    return await _deactivate(
        uow_factory,
        user_id=user_id,
        event_id=event_id,
        status=ParticipationStatus.REMOVED,
        retry=retry,
    )


async def get_sign_up_availability(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    *,
    user_id: int | None,
    event_id: int,
    now: datetime | None = None,
) -> SignUpAvailability:
    now = now or utc_now()
    user = await users.get(user_id) if user_id is not None else None
    async with uow_factory() as uow:
        event = await _get_event(uow, event_id)
        active = await uow.sign_ups.get_active(user.id, event_id) if user is not None else None
        slots = await uow.events.list_slots(event_id)
    snapshot = AvailabilitySnapshot(
        event=event,
        now=now,
        user_known=user is not None,
        active_sign_up=active,
        slots=slots,
        grade=grade_year(user.graduation_year, now) if user is not None else None,
    )
    return compute_availability(snapshot)


async def get_approximate_position_on_waiting_list(
    uow_factory: UnitOfWorkFactory,
    *,
    user_id: int,
    event_id: int,
) -> int:
    """
    1-based FIFO position among all active waitlisted sign-ups of the event.
    Grade-year restrictions are ignored, so the number is approximate.
    """
    async with uow_factory() as uow:
        await _get_event(uow, event_id)
        active = await uow.sign_ups.get_active(user_id, event_id)
        if active is None:
            raise NotFoundError(f"user {user_id} has no active sign-up for event {event_id}")
        if active.participation_status != ParticipationStatus.ON_WAITLIST:
            raise InvalidArgumentError("sign-up is not on the waitlist")
        ahead = await uow.sign_ups.count_waitlisted_before(active)
    return ahead + 1


async def can_sign_up_for_event(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    *,
    user_id: int,
    event_id: int,
    now: datetime | None = None,
) -> bool:
    availability = await get_sign_up_availability(
        uow_factory,
        users,
        user_id=user_id,
        event_id=event_id,
        now=now,
    )
    return availability == SignUpAvailability.AVAILABLE


async def find_many_sign_ups(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    permissions: PermissionService,
    *,
    actor_id: int,
    event_id: int,
    status: ParticipationStatus | None = None,
) -> tuple[list[SignUp], int]:
    async with uow_factory() as uow:
        event = await _get_event(uow, event_id)
    await ensure_organizer(users, permissions, actor_id=actor_id, organization_id=event.organization_id)
    async with uow_factory() as uow:
        return await uow.sign_ups.find_many(event_id, status)


async def find_many_sign_ups_for_user(
    uow_factory: UnitOfWorkFactory,
    *,
    user_id: int,
) -> list[SignUp]:
    async with uow_factory() as uow:
        return await uow.sign_ups.list_by_user(user_id)
