from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.errors import (
    AlreadySignedUpError,
    CapacityExhaustedError,
    CapacityScope,
    InternalStateError,
    InvalidCapacityError,
    NotFoundError,
    VersionConflictError,
)
from ..domain.repositories import (
    CapacityStore,
    EventRepository,
    NewSlot,
    PromotionJobRepository,
    SignUpRepository,
)
from ..domain.services import ensure_transition
from ..models import Event, JobKind, ParticipationStatus, PromotionJob, PromotionJobStatus, SignUp, Slot
from ..utils.time import utc_now

logger = logging.getLogger(__name__)

_COUNTERS: dict[CapacityScope, Any] = {
    CapacityScope.EVENT: Event,
    CapacityScope.SLOT: Slot,
}


def _current_row(stmt: Select) -> Select:
    # Under REPEATABLE READ a plain SELECT sees the transaction snapshot, not the
    # committed row the failed UPDATE was evaluated against.
    return stmt.with_for_update(read=True)


class SqlAlchemyCapacityStore(CapacityStore):
    """
    The only writer of remaining_capacity/version. Every change is a single
    conditional UPDATE, so concurrent writers can never push a counter outside
    [0, capacity].
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def decrement_if_available(
        self,
        scope: CapacityScope,
        entity_id: int,
        expected_version: int | None = None,
    ) -> None:
        model = _COUNTERS[scope]
        stmt = (
            update(model)
            .where(model.id == entity_id, model.remaining_capacity > 0)
            .values(
                remaining_capacity=model.remaining_capacity - 1,
                version=model.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if expected_version is not None:
            stmt = stmt.where(model.version == expected_version)
        result = await self.session.execute(stmt)
        if result.rowcount == 1:
            return

        row = (
            await self.session.execute(
                _current_row(select(model.remaining_capacity, model.version).where(model.id == entity_id))
            )
        ).first()
        if row is None:
            raise NotFoundError(f"{scope} {entity_id} not found")
        remaining, version = row
        if remaining is None:
            # Event capacity is not tracked.
            return
        if remaining <= 0:
            raise CapacityExhaustedError(scope, entity_id)
        raise VersionConflictError(f"{scope} {entity_id} is at version {version}, expected {expected_version}")

    async def increment_capacity(self, scope: CapacityScope, entity_id: int) -> None:
        model = _COUNTERS[scope]
        result = await self.session.execute(
            update(model)
            .where(model.id == entity_id, model.remaining_capacity < model.capacity)
            .values(
                remaining_capacity=model.remaining_capacity + 1,
                version=model.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        row = (
            await self.session.execute(_current_row(select(model.capacity).where(model.id == entity_id)))
        ).first()
        if row is None:
            raise NotFoundError(f"{scope} {entity_id} not found")
        if row[0] is not None:
            logger.warning("%s %s is already at full capacity, increment skipped", scope, entity_id)

    async def adjust_capacity(self, scope: CapacityScope, entity_id: int, new_capacity: int) -> int:
        model = _COUNTERS[scope]
        row = (
            await self.session.execute(
                select(model.capacity, model.remaining_capacity, model.version)
                .where(model.id == entity_id)
                .with_for_update()
            )
        ).first()
        if row is None:
            raise NotFoundError(f"{scope} {entity_id} not found")
        capacity, remaining, version = row
        if capacity is None:
            raise InvalidCapacityError(f"{scope} {entity_id} does not track capacity")
        delta = new_capacity - capacity
        if new_capacity < 0 or remaining + delta < 0:
            raise InvalidCapacityError("new capacity is lower than the number of confirmed sign-ups")

        result = await self.session.execute(
            update(model)
            .where(
                model.id == entity_id,
                model.version == version,
                model.remaining_capacity + delta >= 0,
            )
            .values(
                capacity=new_capacity,
                remaining_capacity=model.remaining_capacity + delta,
                version=model.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise VersionConflictError(f"{scope} {entity_id} changed while updating capacity")
        return delta


class SqlAlchemyEventRepository(EventRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, event_id: int) -> Event | None:
        stmt = select(Event).where(Event.id == event_id).execution_options(populate_existing=True)
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Event) else None

    async def get_slot(self, slot_id: int) -> Slot | None:
        stmt = select(Slot).where(Slot.id == slot_id).execution_options(populate_existing=True)
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Slot) else None

    async def list_slots(self, event_id: int) -> List[Slot]:
        stmt = (
            select(Slot)
            .where(Slot.event_id == event_id)
            .order_by(Slot.id)
            .execution_options(populate_existing=True)
        )
        return list((await self.session.scalars(stmt)).all())

    async def create(
        self,
        *,
        organization_id: int,
        name: str,
        type: str,
        starts_at: datetime,
        ends_at: datetime,
        sign_ups_enabled: bool,
        sign_ups_start_at: datetime | None,
        sign_ups_end_at: datetime | None,
        capacity: int | None,
        product_id: str | None,
        slots: Sequence[NewSlot],
    ) -> Tuple[Event, List[Slot]]:
        now = utc_now()
        event = Event(
            organization_id=organization_id,
            name=name,
            type=type,
            product_id=product_id,
            starts_at=starts_at,
            ends_at=ends_at,
            sign_ups_enabled=sign_ups_enabled,
            sign_ups_start_at=sign_ups_start_at,
            sign_ups_end_at=sign_ups_end_at,
            capacity=capacity,
            remaining_capacity=capacity,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(event)
        await self.session.flush()

        created: List[Slot] = []
        for new_slot in slots:
            slot = Slot(
                event_id=event.id,
                capacity=new_slot.capacity,
                remaining_capacity=new_slot.capacity,
                grade_years=list(new_slot.grade_years),
                version=0,
                created_at=now,
                updated_at=now,
            )
            self.session.add(slot)
            created.append(slot)
        await self.session.flush()
        return event, created


class SqlAlchemySignUpRepository(SignUpRepository):
    def __init__(self, session: AsyncSession, capacity: CapacityStore) -> None:
        self.session = session
        self.capacity = capacity

    async def get_active(self, user_id: int, event_id: int) -> SignUp | None:
        stmt = (
            select(SignUp)
            .where(SignUp.user_id == user_id, SignUp.event_id == event_id, SignUp.active.is_(True))
            .execution_options(populate_existing=True)
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, SignUp) else None

    async def get_latest(self, user_id: int, event_id: int) -> SignUp | None:
        stmt = (
            select(SignUp)
            .where(SignUp.user_id == user_id, SignUp.event_id == event_id)
            .order_by(SignUp.created_at.desc(), SignUp.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.session.scalar(stmt)
        return result if isinstance(result, SignUp) else None

    async def create_confirmed(self, *, user_id: int, event_id: int, slot_id: int) -> SignUp:
        if await self.get_active(user_id, event_id) is not None:
            raise AlreadySignedUpError(f"user {user_id} already has an active sign-up for event {event_id}")
        await self.capacity.decrement_if_available(CapacityScope.EVENT, event_id)
        await self.capacity.decrement_if_available(CapacityScope.SLOT, slot_id)
        return await self._insert(
            user_id=user_id,
            event_id=event_id,
            slot_id=slot_id,
            status=ParticipationStatus.CONFIRMED,
        )

    async def create_waitlisted(self, *, user_id: int, event_id: int) -> SignUp:
        if await self.get_active(user_id, event_id) is not None:
            raise AlreadySignedUpError(f"user {user_id} already has an active sign-up for event {event_id}")
        return await self._insert(
            user_id=user_id,
            event_id=event_id,
            slot_id=None,
            status=ParticipationStatus.ON_WAITLIST,
        )

    async def confirm_waitlisted(self, sign_up: SignUp, *, slot_id: int) -> SignUp:
        ensure_transition(sign_up.participation_status, ParticipationStatus.CONFIRMED)
        await self.capacity.decrement_if_available(CapacityScope.EVENT, sign_up.event_id)
        await self.capacity.decrement_if_available(CapacityScope.SLOT, slot_id)
        result = await self.session.execute(
            update(SignUp)
            .where(
                SignUp.id == sign_up.id,
                SignUp.version == sign_up.version,
                SignUp.active.is_(True),
                SignUp.participation_status == ParticipationStatus.ON_WAITLIST,
            )
            .values(
                participation_status=ParticipationStatus.CONFIRMED,
                slot_id=slot_id,
                version=SignUp.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise VersionConflictError(f"sign-up {sign_up.id} changed before it could be confirmed")
        return await self._reload(sign_up.id)

    async def deactivate(self, sign_up: SignUp, status: ParticipationStatus) -> SignUp:
        ensure_transition(sign_up.participation_status, status)
        result = await self.session.execute(
            update(SignUp)
            .where(
                SignUp.id == sign_up.id,
                SignUp.version == sign_up.version,
                SignUp.active.is_(True),
            )
            .values(
                participation_status=status,
                active=False,
                slot_id=None,
                version=SignUp.version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise VersionConflictError(f"sign-up {sign_up.id} changed before it could be deactivated")
        if sign_up.participation_status == ParticipationStatus.CONFIRMED:
            await self.capacity.increment_capacity(CapacityScope.EVENT, sign_up.event_id)
            if sign_up.slot_id is not None:
                await self.capacity.increment_capacity(CapacityScope.SLOT, sign_up.slot_id)
        return await self._reload(sign_up.id)

    async def attach_order(self, sign_up: SignUp, order_id: str) -> SignUp:
        await self.session.execute(
            update(SignUp)
            .where(SignUp.id == sign_up.id)
            .values(order_id=order_id, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        return await self._reload(sign_up.id)

    async def list_waitlisted(self, event_id: int) -> List[SignUp]:
        stmt = (
            select(SignUp)
            .where(
                SignUp.event_id == event_id,
                SignUp.active.is_(True),
                SignUp.participation_status == ParticipationStatus.ON_WAITLIST,
            )
            .order_by(SignUp.created_at, SignUp.id)
            .execution_options(populate_existing=True)
        )
        return list((await self.session.scalars(stmt)).all())

    async def count_waitlisted_before(self, sign_up: SignUp) -> int:
        stmt = select(func.count(SignUp.id)).where(
            SignUp.event_id == sign_up.event_id,
            SignUp.active.is_(True),
            SignUp.participation_status == ParticipationStatus.ON_WAITLIST,
            or_(
                SignUp.created_at < sign_up.created_at,
                and_(SignUp.created_at == sign_up.created_at, SignUp.id < sign_up.id),
            ),
        )
        return int(await self.session.scalar(stmt) or 0)

    async def find_many(
        self,
        event_id: int,
        status: ParticipationStatus | None = None,
    ) -> Tuple[List[SignUp], int]:
        conditions = [SignUp.event_id == event_id]
        if status is not None:
            conditions.append(SignUp.participation_status == status)
        total = int(await self.session.scalar(select(func.count(SignUp.id)).where(*conditions)) or 0)
        rows = await self.session.scalars(select(SignUp).where(*conditions).order_by(SignUp.created_at, SignUp.id))
        return list(rows.all()), total

    async def list_by_user(self, user_id: int) -> List[SignUp]:
        stmt = (
            select(SignUp)
            .where(SignUp.user_id == user_id)
            .order_by(SignUp.created_at.desc(), SignUp.id.desc())
        )
        return list((await self.session.scalars(stmt)).all())

    async def _insert(
        self,
        *,
        user_id: int,
        event_id: int,
        slot_id: Optional[int],
        status: ParticipationStatus,
    ) -> SignUp:
        now = utc_now()
        sign_up = SignUp(
            user_id=user_id,
            event_id=event_id,
            slot_id=slot_id,
            participation_status=status,
            active=True,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(sign_up)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            raise AlreadySignedUpError(
                f"user {user_id} already has an active sign-up for event {event_id}"
            ) from exc
        return sign_up

    async def _reload(self, sign_up_id: int) -> SignUp:
        stmt = select(SignUp).where(SignUp.id == sign_up_id).execution_options(populate_existing=True)
        result = await self.session.scalar(stmt)
        if not isinstance(result, SignUp):
            raise InternalStateError(f"sign-up {sign_up_id} disappeared inside its own transaction")
        return result


class SqlAlchemyPromotionJobRepository(PromotionJobRepository):
    """Outbox table drained by the promotion worker."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def enqueue(self, event_id: int, *, count: int = 1) -> None:
        self.session.add_all([self._new_job(event_id, JobKind.PROMOTE) for _ in range(count)])
        await self.session.flush()

    async def enqueue_notification(self, event_id: int, user_id: int) -> None:
        self.session.add(self._new_job(event_id, JobKind.NOTIFY_PROMOTION, user_id=user_id))
        await self.session.flush()

    @staticmethod
    def _new_job(event_id: int, kind: JobKind, *, user_id: int | None = None) -> PromotionJob:
        now = utc_now()
        return PromotionJob(
            event_id=event_id,
            kind=kind,
            user_id=user_id,
            status=PromotionJobStatus.PENDING,
            attempts=0,
            available_at=now,
            created_at=now,
            updated_at=now,
        )

    async def claim(self, *, now: datetime, lease_seconds: float) -> PromotionJob | None:
        claimable = or_(
            and_(PromotionJob.status == PromotionJobStatus.PENDING, PromotionJob.available_at <= now),
            and_(PromotionJob.status == PromotionJobStatus.RUNNING, PromotionJob.locked_until < now),
        )
        candidates = await self.session.scalars(
            select(PromotionJob.id).where(claimable).order_by(PromotionJob.available_at, PromotionJob.id).limit(10)
        )
        for job_id in candidates.all():
            result = await self.session.execute(
                update(PromotionJob)
                .where(PromotionJob.id == job_id, claimable)
                .values(
                    status=PromotionJobStatus.RUNNING,
                    attempts=PromotionJob.attempts + 1,
                    locked_until=now + timedelta(seconds=lease_seconds),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                stmt = select(PromotionJob).where(PromotionJob.id == job_id).execution_options(populate_existing=True)
                return await self.session.scalar(stmt)
        return None

    async def complete(self, job_id: int) -> None:
        await self.session.execute(
            update(PromotionJob)
            .where(PromotionJob.id == job_id)
            .values(status=PromotionJobStatus.DONE, locked_until=None, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )

    async def fail(self, job_id: int, *, error: str, retry_at: datetime | None) -> None:
        values: dict[str, Any] = {
            "last_error": error[:2000],
            "locked_until": None,
            "updated_at": utc_now(),
        }
        if retry_at is None:
            values["status"] = PromotionJobStatus.FAILED
        else:
            values["status"] = PromotionJobStatus.PENDING
            values["available_at"] = retry_at
        await self.session.execute(
            update(PromotionJob)
            .where(PromotionJob.id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
