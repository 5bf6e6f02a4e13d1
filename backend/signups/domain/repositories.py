from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import Callable, Protocol, Sequence

from ..models import Event, ParticipationStatus, PromotionJob, Role, SignUp, Slot
from .errors import CapacityScope


@dataclass(frozen=True)
class NewSlot:
    capacity: int
    grade_years: tuple[int, ...] = ()


@dataclass(frozen=True)
class UserInfo:
    id: int
    graduation_year: int | None
    is_super_user: bool = False


class CapacityStore(Protocol):
    async def decrement_if_available(
        self,
        scope: CapacityScope,
        entity_id: int,
        expected_version: int | None = None,
    ) -> None: ...

    async def increment_capacity(self, scope: CapacityScope, entity_id: int) -> None: ...

    async def adjust_capacity(self, scope: CapacityScope, entity_id: int, new_capacity: int) -> int: ...


class EventRepository(Protocol):
    async def get(self, event_id: int) -> Event | None: ...

    async def get_slot(self, slot_id: int) -> Slot | None: ...

    async def list_slots(self, event_id: int) -> list[Slot]: ...

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
    ) -> tuple[Event, list[Slot]]: ...


class SignUpRepository(Protocol):
    async def get_active(self, user_id: int, event_id: int) -> SignUp | None: ...

    async def get_latest(self, user_id: int, event_id: int) -> SignUp | None: ...

    async def create_confirmed(self, *, user_id: int, event_id: int, slot_id: int) -> SignUp: ...

    async def create_waitlisted(self, *, user_id: int, event_id: int) -> SignUp: ...

    async def confirm_waitlisted(self, sign_up: SignUp, *, slot_id: int) -> SignUp: ...

    async def deactivate(self, sign_up: SignUp, status: ParticipationStatus) -> SignUp: ...

    async def attach_order(self, sign_up: SignUp, order_id: str) -> SignUp: ...

    async def list_waitlisted(self, event_id: int) -> list[SignUp]: ...

    async def count_waitlisted_before(self, sign_up: SignUp) -> int: ...

    async def find_many(
        self,
        event_id: int,
        status: ParticipationStatus | None = None,
    ) -> tuple[list[SignUp], int]: ...

    async def list_by_user(self, user_id: int) -> list[SignUp]: ...


class PromotionJobRepository(Protocol):
    async def enqueue(self, event_id: int, *, count: int = 1) -> None: ...

    async def enqueue_notification(self, event_id: int, user_id: int) -> None: ...

    async def claim(self, *, now: datetime, lease_seconds: float) -> PromotionJob | None: ...

    async def complete(self, job_id: int) -> None: ...

    async def fail(self, job_id: int, *, error: str, retry_at: datetime | None) -> None: ...


class UnitOfWork(Protocol):
    """One short transaction: committed on clean exit, rolled back when the block raises."""

    capacity: CapacityStore
    events: EventRepository
    sign_ups: SignUpRepository
    promotion_jobs: PromotionJobRepository

    async def __aenter__(self) -> "UnitOfWork": ...

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]


class UserService(Protocol):
    async def get(self, user_id: int) -> UserInfo: ...

    async def get_many(self, user_ids: Sequence[int]) -> dict[int, UserInfo]:
        """Users keyed by id; unknown ids are left out."""
        ...


class PermissionService(Protocol):
    async def has_role(self, user_id: int, organization_id: int, role: Role) -> bool: ...


class OrderService(Protocol):
    async def create_order(self, user_id: int, product_id: str) -> str: ...


class Notifier(Protocol):
    async def notify(self, user_id: int, event_id: int) -> None: ...
