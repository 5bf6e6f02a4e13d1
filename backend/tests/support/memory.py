"""
In-memory stand-ins for the unit of work and the collaborators.

Writes are applied immediately and undone in reverse order when the unit of
work exits with an exception. Capacity writes take a row lock that is held
until the unit of work ends, and capacity reads wait for it, so nobody sees a
decrement that may still roll back. Every repository call yields to the event
loop first, so concurrent coroutines interleave between reads and conditional
writes the way concurrent transactions do.
"""

import asyncio
import itertools
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from signups.domain.errors import (
    AlreadySignedUpError,
    CapacityExhaustedError,
    CapacityScope,
    InvalidCapacityError,
    NotFoundError,
    OrderCreationError,
    VersionConflictError,
)
from signups.domain.repositories import NewSlot, UserInfo
from signups.domain.services import ensure_transition
from signups.models import (
    Event,
    EventType,
    JobKind,
    ParticipationStatus,
    PromotionJob,
    PromotionJobStatus,
    Role,
    SignUp,
    Slot,
)
from signups.utils.time import utc_now

Undo = Callable[[], None]
RowKey = tuple[CapacityScope, int]


def clone(row: Any) -> Any:
    values = {}
    for name in row.__table__.columns.keys():
        value = getattr(row, name)
        values[name] = list(value) if isinstance(value, list) else value
    return type(row)(**values)


class FakeClock:
    """Strictly increasing timestamps so creation order is never ambiguous."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or utc_now()

    def __call__(self) -> datetime:
        self._now += timedelta(microseconds=1)
        return self._now


class InMemoryDatabase:
    def __init__(self) -> None:
        self.events: dict[int, Event] = {}
        self.slots: dict[int, Slot] = {}
        self.sign_ups: dict[int, SignUp] = {}
        self.jobs: dict[int, PromotionJob] = {}
        self.clock = FakeClock()
        self.commits = 0
        self.rollbacks = 0
        # The next N sign-up writes report a version conflict.
        self.forced_conflicts = 0
        self.row_locks: dict[RowKey, asyncio.Lock] = {}
        self.lock_owners: dict[RowKey, "InMemoryUnitOfWork"] = {}
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    def uow(self) -> "InMemoryUnitOfWork":
        return InMemoryUnitOfWork(self)

    def add_event(
        self,
        *,
        capacity: Optional[int] = 10,
        slots: Optional[Sequence[tuple[int, Sequence[int]]]] = None,
        type: EventType = EventType.SIGN_UPS,
        sign_ups_enabled: bool = True,
        sign_ups_start_at: Optional[datetime] = None,
        sign_ups_end_at: Optional[datetime] = None,
        organization_id: int = 1,
        product_id: Optional[str] = None,
    ) -> Event:
        now = utc_now()
        event = Event(
            id=self.next_id(),
            organization_id=organization_id,
            name="Event",
            type=type,
            product_id=product_id,
            starts_at=now + timedelta(days=40),
            ends_at=now + timedelta(days=40, hours=3),
            sign_ups_enabled=sign_ups_enabled,
            sign_ups_start_at=sign_ups_start_at or now - timedelta(days=1),
            sign_ups_end_at=sign_ups_end_at or now + timedelta(days=30),
            capacity=capacity,
            remaining_capacity=capacity,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.events[event.id] = event
        if slots is None:
            slots = [(capacity if capacity is not None else 10, ())]
        for slot_capacity, grade_years in slots:
            self.add_slot(event.id, capacity=slot_capacity, grade_years=grade_years)
        return event

    def add_slot(self, event_id: int, *, capacity: int, grade_years: Sequence[int] = ()) -> Slot:
        now = utc_now()
        slot = Slot(
            id=self.next_id(),
            event_id=event_id,
            capacity=capacity,
            remaining_capacity=capacity,
            grade_years=list(grade_years),
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.slots[slot.id] = slot
        return slot

    def slots_of(self, event_id: int) -> list[Slot]:
        return sorted((s for s in self.slots.values() if s.event_id == event_id), key=lambda s: s.id)

    def sign_ups_of(self, event_id: int, status: Optional[ParticipationStatus] = None) -> list[SignUp]:
        rows = [
            s
            for s in self.sign_ups.values()
            if s.event_id == event_id and (status is None or s.participation_status == status)
        ]
        return sorted(rows, key=lambda s: (s.created_at, s.id))

    def jobs_of(self, kind: JobKind) -> list[PromotionJob]:
        return [job for job in self.jobs.values() if job.kind == kind]

    def active_sign_up(self, user_id: int, event_id: int) -> Optional[SignUp]:
        for row in self.sign_ups.values():
            if row.user_id == user_id and row.event_id == event_id and row.active:
                return row
        return None


class _Repository:
    def __init__(self, db: InMemoryDatabase, uow: "InMemoryUnitOfWork") -> None:
        self.db = db
        self.uow = uow
        self.journal = uow.journal

    async def _lock(self, key: RowKey) -> None:
        """Row lock held until the unit of work ends, like a conditional UPDATE."""
        if self.db.lock_owners.get(key) is self.uow:
            return
        lock = self.db.row_locks.setdefault(key, asyncio.Lock())
        await lock.acquire()
        self.db.lock_owners[key] = self.uow
        self.uow.held_locks.append(key)

    async def _wait_unlocked(self, key: RowKey) -> None:
        # Reads never observe another unit of work's uncommitted counters.
        if self.db.lock_owners.get(key) is self.uow:
            return
        lock = self.db.row_locks.get(key)
        if lock is not None and lock.locked():
            async with lock:
                pass

    def _set(self, row: Any, **values: Any) -> None:
        previous = {name: getattr(row, name) for name in values}

        def undo() -> None:
            for name, value in previous.items():
                setattr(row, name, value)

        self.journal.append(undo)
        for name, value in values.items():
            setattr(row, name, value)

    def _insert(self, table: dict[int, Any], row: Any) -> None:
        table[row.id] = row
        self.journal.append(lambda: table.pop(row.id, None))


class InMemoryCapacityStore(_Repository):
    def _table(self, scope: CapacityScope) -> dict[int, Any]:
        return self.db.events if scope == CapacityScope.EVENT else self.db.slots

    async def decrement_if_available(
        self,
        scope: CapacityScope,
        entity_id: int,
        expected_version: Optional[int] = None,
    ) -> None:
        await asyncio.sleep(0)
        await self._lock((scope, entity_id))
        row = self._table(scope).get(entity_id)
        if row is None:
            raise NotFoundError(f"{scope} {entity_id} not found")
        if row.remaining_capacity is None:
            return
        if row.remaining_capacity <= 0:
            raise CapacityExhaustedError(scope, entity_id)
        if expected_version is not None and row.version != expected_version:
            raise VersionConflictError(f"{scope} {entity_id} is at version {row.version}")
        self._set(row, remaining_capacity=row.remaining_capacity - 1, version=row.version + 1)

    async def increment_capacity(self, scope: CapacityScope, entity_id: int) -> None:
        await asyncio.sleep(0)
        await self._lock((scope, entity_id))
        row = self._table(scope).get(entity_id)
        if row is None:
            raise NotFoundError(f"{scope} {entity_id} not found")
        if row.capacity is None or row.remaining_capacity >= row.capacity:
            return
        self._set(row, remaining_capacity=row.remaining_capacity + 1, version=row.version + 1)

    async def adjust_capacity(self, scope: CapacityScope, entity_id: int, new_capacity: int) -> int:
        await asyncio.sleep(0)
        await self._lock((scope, entity_id))
        row = self._table(scope).get(entity_id)
        if row is None:
            raise NotFoundError(f"{scope} {entity_id} not found")
        if row.capacity is None:
            raise InvalidCapacityError("capacity is not tracked")
        delta = new_capacity - row.capacity
        if new_capacity < 0 or row.remaining_capacity + delta < 0:
            raise InvalidCapacityError("new capacity is lower than the number of confirmed sign-ups")
        self._set(
            row,
            capacity=new_capacity,
            remaining_capacity=row.remaining_capacity + delta,
            version=row.version + 1,
        )
        return delta


class InMemoryEventRepository(_Repository):
    async def get(self, event_id: int) -> Optional[Event]:
        await asyncio.sleep(0)
        await self._wait_unlocked((CapacityScope.EVENT, event_id))
        row = self.db.events.get(event_id)
        return clone(row) if row is not None else None

    async def get_slot(self, slot_id: int) -> Optional[Slot]:
        await asyncio.sleep(0)
        await self._wait_unlocked((CapacityScope.SLOT, slot_id))
        row = self.db.slots.get(slot_id)
        return clone(row) if row is not None else None

    async def list_slots(self, event_id: int) -> list[Slot]:
        await asyncio.sleep(0)
        for slot in self.db.slots_of(event_id):
            await self._wait_unlocked((CapacityScope.SLOT, slot.id))
        return [clone(slot) for slot in self.db.slots_of(event_id)]

    async def create(
        self,
        *,
        organization_id: int,
        name: str,
        type: str,
        starts_at: datetime,
        ends_at: datetime,
        sign_ups_enabled: bool,
        sign_ups_start_at: Optional[datetime],
        sign_ups_end_at: Optional[datetime],
        capacity: Optional[int],
        product_id: Optional[str],
        slots: Sequence[NewSlot],
    ) -> tuple[Event, list[Slot]]:
        await asyncio.sleep(0)
        now = self.db.clock()
        event = Event(
            id=self.db.next_id(),
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
        self._insert(self.db.events, event)
        created = []
        for new_slot in slots:
            slot = Slot(
                id=self.db.next_id(),
                event_id=event.id,
                capacity=new_slot.capacity,
                remaining_capacity=new_slot.capacity,
                grade_years=list(new_slot.grade_years),
                version=0,
                created_at=now,
                updated_at=now,
            )
            self._insert(self.db.slots, slot)
            created.append(clone(slot))
        return clone(event), created


class InMemorySignUpRepository(_Repository):
    def __init__(self, db: InMemoryDatabase, uow: "InMemoryUnitOfWork", capacity: InMemoryCapacityStore) -> None:
        super().__init__(db, uow)
        self.capacity = capacity

    def _maybe_conflict(self) -> None:
        if self.db.forced_conflicts > 0:
            self.db.forced_conflicts -= 1
            raise VersionConflictError("forced conflict")

    async def get_active(self, user_id: int, event_id: int) -> Optional[SignUp]:
        await asyncio.sleep(0)
        row = self.db.active_sign_up(user_id, event_id)
        return clone(row) if row is not None else None

    async def get_latest(self, user_id: int, event_id: int) -> Optional[SignUp]:
        await asyncio.sleep(0)
        rows = [s for s in self.db.sign_ups.values() if s.user_id == user_id and s.event_id == event_id]
        if not rows:
            return None
        return clone(max(rows, key=lambda s: (s.created_at, s.id)))

    async def create_confirmed(self, *, user_id: int, event_id: int, slot_id: int) -> SignUp:
        if await self.get_active(user_id, event_id) is not None:
            raise AlreadySignedUpError("already signed up")
        self._maybe_conflict()
        await self.capacity.decrement_if_available(CapacityScope.EVENT, event_id)
        await self.capacity.decrement_if_available(CapacityScope.SLOT, slot_id)
        return self._new(user_id, event_id, slot_id, ParticipationStatus.CONFIRMED)

    async def create_waitlisted(self, *, user_id: int, event_id: int) -> SignUp:
        if await self.get_active(user_id, event_id) is not None:
            raise AlreadySignedUpError("already signed up")
        return self._new(user_id, event_id, None, ParticipationStatus.ON_WAITLIST)

    def _new(
        self,
        user_id: int,
        event_id: int,
        slot_id: Optional[int],
        status: ParticipationStatus,
    ) -> SignUp:
        # Unique active index.
        if self.db.active_sign_up(user_id, event_id) is not None:
            raise AlreadySignedUpError("already signed up")
        now = self.db.clock()
        row = SignUp(
            id=self.db.next_id(),
            user_id=user_id,
            event_id=event_id,
            slot_id=slot_id,
            order_id=None,
            participation_status=status,
            active=True,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self._insert(self.db.sign_ups, row)
        return clone(row)

    def _row(self, sign_up: SignUp) -> SignUp:
        row = self.db.sign_ups.get(sign_up.id)
        if row is None:
            raise NotFoundError(f"sign-up {sign_up.id} not found")
        return row

    async def confirm_waitlisted(self, sign_up: SignUp, *, slot_id: int) -> SignUp:
        ensure_transition(sign_up.participation_status, ParticipationStatus.CONFIRMED)
        self._maybe_conflict()
        await self.capacity.decrement_if_available(CapacityScope.EVENT, sign_up.event_id)
        await self.capacity.decrement_if_available(CapacityScope.SLOT, slot_id)
        row = self._row(sign_up)
        if (
            row.version != sign_up.version
            or not row.active
            or row.participation_status != ParticipationStatus.ON_WAITLIST
        ):
            raise VersionConflictError(f"sign-up {sign_up.id} changed")
        self._set(
            row,
            participation_status=ParticipationStatus.CONFIRMED,
            slot_id=slot_id,
            version=row.version + 1,
            updated_at=self.db.clock(),
        )
        return clone(row)

    async def deactivate(self, sign_up: SignUp, status: ParticipationStatus) -> SignUp:
        ensure_transition(sign_up.participation_status, status)
        await asyncio.sleep(0)
        self._maybe_conflict()
        row = self._row(sign_up)
        if row.version != sign_up.version or not row.active:
            raise VersionConflictError(f"sign-up {sign_up.id} changed")
        self._set(
            row,
            participation_status=status,
            active=False,
            slot_id=None,
            version=row.version + 1,
            updated_at=self.db.clock(),
        )
        if sign_up.participation_status == ParticipationStatus.CONFIRMED:
            await self.capacity.increment_capacity(CapacityScope.EVENT, sign_up.event_id)
            if sign_up.slot_id is not None:
                await self.capacity.increment_capacity(CapacityScope.SLOT, sign_up.slot_id)
        return clone(row)

    async def attach_order(self, sign_up: SignUp, order_id: str) -> SignUp:
        await asyncio.sleep(0)
        row = self._row(sign_up)
        self._set(row, order_id=order_id, updated_at=self.db.clock())
        return clone(row)

    async def list_waitlisted(self, event_id: int) -> list[SignUp]:
        await asyncio.sleep(0)
        return [
            clone(row)
            for row in self.db.sign_ups_of(event_id, ParticipationStatus.ON_WAITLIST)
            if row.active
        ]

    async def count_waitlisted_before(self, sign_up: SignUp) -> int:
        await asyncio.sleep(0)
        key = (sign_up.created_at, sign_up.id)
        return sum(
            1
            for row in self.db.sign_ups_of(sign_up.event_id, ParticipationStatus.ON_WAITLIST)
            if row.active and (row.created_at, row.id) < key
        )

    async def find_many(
        self,
        event_id: int,
        status: Optional[ParticipationStatus] = None,
    ) -> tuple[list[SignUp], int]:
        await asyncio.sleep(0)
        rows = [clone(row) for row in self.db.sign_ups_of(event_id, status)]
        return rows, len(rows)

    async def list_by_user(self, user_id: int) -> list[SignUp]:
        await asyncio.sleep(0)
        rows = [row for row in self.db.sign_ups.values() if row.user_id == user_id]
        return [clone(row) for row in sorted(rows, key=lambda s: (s.created_at, s.id), reverse=True)]


class InMemoryPromotionJobRepository(_Repository):
    async def enqueue(self, event_id: int, *, count: int = 1) -> None:
        await asyncio.sleep(0)
        for _ in range(count):
            self._add_job(event_id, JobKind.PROMOTE)

    async def enqueue_notification(self, event_id: int, user_id: int) -> None:
        await asyncio.sleep(0)
        self._add_job(event_id, JobKind.NOTIFY_PROMOTION, user_id=user_id)

    def _add_job(self, event_id: int, kind: JobKind, *, user_id: Optional[int] = None) -> None:
        now = self.db.clock()
        job = PromotionJob(
            id=self.db.next_id(),
            event_id=event_id,
            kind=kind,
            user_id=user_id,
            status=PromotionJobStatus.PENDING,
            attempts=0,
            available_at=now,
            locked_until=None,
            last_error=None,
            created_at=now,
            updated_at=now,
        )
        self._insert(self.db.jobs, job)

    async def claim(self, *, now: datetime, lease_seconds: float) -> Optional[PromotionJob]:
        await asyncio.sleep(0)
        claimable = [
            job
            for job in self.db.jobs.values()
            if (job.status == PromotionJobStatus.PENDING and job.available_at <= now)
            or (
                job.status == PromotionJobStatus.RUNNING
                and job.locked_until is not None
                and job.locked_until < now
            )
        ]
        if not claimable:
            return None
        job = min(claimable, key=lambda j: (j.available_at, j.id))
        self._set(
            job,
            status=PromotionJobStatus.RUNNING,
            attempts=job.attempts + 1,
            locked_until=now + timedelta(seconds=lease_seconds),
            updated_at=now,
        )
        return clone(job)

    async def complete(self, job_id: int) -> None:
        await asyncio.sleep(0)
        self._set(self.db.jobs[job_id], status=PromotionJobStatus.DONE, locked_until=None)

    async def fail(self, job_id: int, *, error: str, retry_at: Optional[datetime]) -> None:
        await asyncio.sleep(0)
        job = self.db.jobs[job_id]
        if retry_at is None:
            self._set(job, status=PromotionJobStatus.FAILED, last_error=error, locked_until=None)
        else:
            self._set(
                job,
                status=PromotionJobStatus.PENDING,
                last_error=error,
                locked_until=None,
                available_at=retry_at,
            )


class InMemoryUnitOfWork:
    def __init__(self, db: InMemoryDatabase) -> None:
        self.db = db
        self.journal: list[Undo] = []
        self.held_locks: list[RowKey] = []
        self.capacity = InMemoryCapacityStore(db, self)
        self.events = InMemoryEventRepository(db, self)
        self.sign_ups = InMemorySignUpRepository(db, self, self.capacity)
        self.promotion_jobs = InMemoryPromotionJobRepository(db, self)

    async def __aenter__(self) -> "InMemoryUnitOfWork":
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        if exc_type is None:
            self.db.commits += 1
        else:
            for undo in reversed(self.journal):
                undo()
            self.db.rollbacks += 1
        self.journal.clear()
        for key in self.held_locks:
            del self.db.lock_owners[key]
            self.db.row_locks[key].release()
        self.held_locks.clear()


class FakeUserService:
    def __init__(self) -> None:
        self.users: dict[int, UserInfo] = {}
        self.batch_lookups = 0

    def add(self, user_id: int, *, graduation_year: Optional[int] = None, is_super_user: bool = False) -> UserInfo:
        info = UserInfo(id=user_id, graduation_year=graduation_year, is_super_user=is_super_user)
        self.users[user_id] = info
        return info

    async def get(self, user_id: int) -> UserInfo:
        await asyncio.sleep(0)
        try:
            return self.users[user_id]
        except KeyError:
            raise NotFoundError(f"user {user_id} not found") from None

    async def get_many(self, user_ids: Sequence[int]) -> dict[int, UserInfo]:
        await asyncio.sleep(0)
        self.batch_lookups += 1
        return {user_id: self.users[user_id] for user_id in user_ids if user_id in self.users}


class FakePermissionService:
    def __init__(self) -> None:
        self.roles: set[tuple[int, int, Role]] = set()

    def grant(self, user_id: int, organization_id: int, role: Role = Role.MEMBER) -> None:
        self.roles.add((user_id, organization_id, role))

    async def has_role(self, user_id: int, organization_id: int, role: Role) -> bool:
        if (user_id, organization_id, Role.ADMIN) in self.roles:
            return True
        return (user_id, organization_id, role) in self.roles


class FakeOrderService:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.orders: list[tuple[int, str]] = []

    async def create_order(self, user_id: int, product_id: str) -> str:
        await asyncio.sleep(0)
        if self.fail:
            raise OrderCreationError("payment provider unavailable")
        self.orders.append((user_id, product_id))
        return f"order-{len(self.orders)}"


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[int, int]] = []

    async def notify(self, user_id: int, event_id: int) -> None:
        self.calls.append((user_id, event_id))
        if self.fail:
            raise ConnectionError("mail service down")
