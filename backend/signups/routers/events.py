from fastapi import APIRouter, Depends, Path, status

from ..deps import get_current_user_id, get_permission_service, get_uow_factory, get_user_service
from ..domain.errors import DomainError, NotFoundError
from ..domain.repositories import NewSlot, PermissionService, UnitOfWorkFactory, UserService
from ..schemas import CapacityUpdate, EventCreate, EventRead, SlotRead
from ..usecases import events as event_usecase
from .errors import to_http_exception

router = APIRouter(prefix="", tags=["events"])


@router.post("/events", response_model=EventRead, status_code=status.HTTP_201_CREATED)
async def create_event(
    payload: EventCreate,
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    users: UserService = Depends(get_user_service),
    permissions: PermissionService = Depends(get_permission_service),
) -> EventRead:
    try:
        event, slots = await event_usecase.create_event(
            uow_factory,
            users,
            permissions,
            actor_id=user_id,
            organization_id=payload.organization_id,
            name=payload.name,
            type=payload.type,
            starts_at=payload.starts_at,
            ends_at=payload.ends_at,
            sign_ups_enabled=payload.sign_ups_enabled,
            sign_ups_start_at=payload.sign_ups_start_at,
            sign_ups_end_at=payload.sign_ups_end_at,
            capacity=payload.capacity,
            product_id=payload.product_id,
            slots=[NewSlot(capacity=slot.capacity, grade_years=tuple(slot.grade_years)) for slot in payload.slots],
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return EventRead.from_db(event=event, slots=slots)


@router.get("/events/{event_id}", response_model=EventRead)
async def get_event(
    event_id: int = Path(..., ge=1),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
) -> EventRead:
    async with uow_factory() as uow:
        event = await uow.events.get(event_id)
        if event is None:
            raise to_http_exception(NotFoundError(f"event {event_id} not found"))
        slots = await uow.events.list_slots(event_id)
    return EventRead.from_db(event=event, slots=slots)


@router.put("/events/{event_id}/capacity", response_model=EventRead)
async def update_event_capacity(
    payload: CapacityUpdate,
    event_id: int = Path(..., ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    users: UserService = Depends(get_user_service),
    permissions: PermissionService = Depends(get_permission_service),
) -> EventRead:
    try:
        event = await event_usecase.update_event_capacity(
            uow_factory,
            users,
            permissions,
            actor_id=user_id,
            event_id=event_id,
            capacity=payload.capacity,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return EventRead.from_db(event=event)


@router.put("/slots/{slot_id}/capacity", response_model=SlotRead)
async def update_slot_capacity(
    payload: CapacityUpdate,
    slot_id: int = Path(..., ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    users: UserService = Depends(get_user_service),
    permissions: PermissionService = Depends(get_permission_service),
) -> SlotRead:
    try:
        slot = await event_usecase.update_slot_capacity(
            uow_factory,
            users,
            permissions,
            actor_id=user_id,
            slot_id=slot_id,
            capacity=payload.capacity,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return SlotRead.from_db(slot=slot)
