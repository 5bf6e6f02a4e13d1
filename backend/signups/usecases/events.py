import logging
from datetime import datetime
from typing import Sequence

from ..domain.errors import CapacityScope, NotFoundError
from ..domain.repositories import NewSlot, PermissionService, UnitOfWorkFactory, UserService
from ..domain.services import validate_event_details
from ..models import Event, EventType, Slot
from .sign_ups import ensure_organizer

logger = logging.getLogger(__name__)


async def create_event(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    permissions: PermissionService,
    *,
    actor_id: int,
    organization_id: int,
    name: str,
    type: EventType,
    starts_at: datetime,
    ends_at: datetime,
    sign_ups_enabled: bool = False,
    sign_ups_start_at: datetime | None = None,
    sign_ups_end_at: datetime | None = None,
    capacity: int | None = None,
    product_id: str | None = None,
    slots: Sequence[NewSlot] = (),
) -> tuple[Event, list[Slot]]:
    await ensure_organizer(users, permissions, actor_id=actor_id, organization_id=organization_id)
    validate_event_details(
        type=type,
        starts_at=starts_at,
        ends_at=ends_at,
        sign_ups_start_at=sign_ups_start_at,
        sign_ups_end_at=sign_ups_end_at,
        capacity=capacity,
        product_id=product_id,
        slots=slots,
    )
    async with uow_factory() as uow:
        return await uow.events.create(
            organization_id=organization_id,
            name=name,
            type=type,
            starts_at=starts_at,
            ends_at=ends_at,
            sign_ups_enabled=sign_ups_enabled and type != EventType.BASIC,
            sign_ups_start_at=sign_ups_start_at,
            sign_ups_end_at=sign_ups_end_at,
            capacity=capacity,
            product_id=product_id,
            slots=slots,
        )


async def update_event_capacity(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    permissions: PermissionService,
    *,
    actor_id: int,
    event_id: int,
    capacity: int,
) -> Event:
    """Change the event total. Every freed unit queues one promotion job."""
    async with uow_factory() as uow:
        event = await uow.events.get(event_id)
        if event is None:
            raise NotFoundError(f"event {event_id} not found")
    await ensure_organizer(users, permissions, actor_id=actor_id, organization_id=event.organization_id)

    async with uow_factory() as uow:
        delta = await uow.capacity.adjust_capacity(CapacityScope.EVENT, event_id, capacity)
        if delta > 0:
            await uow.promotion_jobs.enqueue(event_id, count=delta)
        updated = await uow.events.get(event_id)
    if updated is None:
        raise NotFoundError("capacity target disappeared during update")
    logger.info("event %s capacity changed by %s", event_id, delta)
    return updated


async def update_slot_capacity(
    uow_factory: UnitOfWorkFactory,
    users: UserService,
    permissions: PermissionService,
    *,
    actor_id: int,
    slot_id: int,
    capacity: int,
) -> Slot:
    async with uow_factory() as uow:
        slot = await uow.events.get_slot(slot_id)
        if slot is None:
            raise NotFoundError(f"slot {slot_id} not found")
        event = await uow.events.get(slot.event_id)
        if event is None:
            raise NotFoundError(f"event {slot.event_id} not found")
    await ensure_organizer(users, permissions, actor_id=actor_id, organization_id=event.organization_id)

    async with uow_factory() as uow:
        delta = await uow.capacity.adjust_capacity(CapacityScope.SLOT, slot_id, capacity)
        if delta > 0:
            await uow.promotion_jobs.enqueue(slot.event_id, count=delta)
        updated = await uow.events.get_slot(slot_id)
    if updated is None:
        raise NotFoundError("capacity target disappeared during update")
    logger.info("slot %s capacity changed by %s", slot_id, delta)
    return updated
