from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Response, status

from ..deps import (
    get_current_user_id,
    get_optional_user_id,
    get_order_service,
    get_permission_service,
    get_retry_policy,
    get_uow_factory,
    get_user_service,
)
from ..domain.errors import DomainError
from ..domain.repositories import OrderService, PermissionService, UnitOfWorkFactory, UserService
from ..models import ParticipationStatus, SignUp
from ..schemas import AvailabilityRead, SignUpList, SignUpRead, WaitlistPositionRead
from ..usecases import sign_ups as sign_up_usecase
from ..usecases.sign_ups import RetryPolicy
from ..utils.audit_log import AuditAction, AuditInitiator, emit_audit_log
from .errors import to_http_exception

router = APIRouter(prefix="", tags=["sign-ups"])


def _audit(
    action: AuditAction,
    *,
    initiator: AuditInitiator,
    sign_up: SignUp,
    actor_id: int,
    status_from: Optional[ParticipationStatus],
) -> None:
    try:
        emit_audit_log(
            action=action,
            initiator=initiator,
            sign_up_id=sign_up.id,
            event_id=sign_up.event_id,
            slot_id=sign_up.slot_id,
            user_id=sign_up.user_id,
            actor_id=actor_id,
            status_from=status_from,
            status_to=sign_up.participation_status,
            version=sign_up.version,
        )
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="audit log failed") from exc


@router.post("/events/{event_id}/sign-ups", response_model=SignUpRead, status_code=status.HTTP_201_CREATED)
async def create_sign_up(
    response: Response,
    event_id: int = Path(..., ge=1),
    for_user_id: Optional[int] = Query(default=None, ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    users: UserService = Depends(get_user_service),
    orders: OrderService = Depends(get_order_service),
    retry: RetryPolicy = Depends(get_retry_policy),
) -> SignUpRead:
    try:
        sign_up, created = await sign_up_usecase.sign_up(
            uow_factory,
            users,
            orders,
            actor_id=user_id,
            user_id=for_user_id or user_id,
            event_id=event_id,
            retry=retry,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    if not created:
        response.status_code = status.HTTP_200_OK
    else:
        action: AuditAction = (
            "sign_up.confirmed"
            if sign_up.participation_status == ParticipationStatus.CONFIRMED
            else "sign_up.waitlisted"
        )
        _audit(action, initiator="user", sign_up=sign_up, actor_id=user_id, status_from=None)
    return SignUpRead.from_db(sign_up=sign_up)


@router.post("/events/{event_id}/sign-ups/retract", response_model=SignUpRead)
async def retract_sign_up(
    event_id: int = Path(..., ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    users: UserService = Depends(get_user_service),
    retry: RetryPolicy = Depends(get_retry_policy),
) -> SignUpRead:
    try:
        sign_up, status_from = await sign_up_usecase.retract_sign_up(
            uow_factory,
            users,
            actor_id=user_id,
            user_id=user_id,
            event_id=event_id,
            retry=retry,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    if status_from is not None:
        _audit("sign_up.retracted", initiator="user", sign_up=sign_up, actor_id=user_id, status_from=status_from)
    return SignUpRead.from_db(sign_up=sign_up)


@router.post("/events/{event_id}/sign-ups/{target_user_id}/remove", response_model=SignUpRead)
async def remove_sign_up(
    event_id: int = Path(..., ge=1),
    target_user_id: int = Path(..., ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    users: UserService = Depends(get_user_service),
    permissions: PermissionService = Depends(get_permission_service),
    retry: RetryPolicy = Depends(get_retry_policy),
) -> SignUpRead:
    try:
        sign_up, status_from = await sign_up_usecase.remove_sign_up(
            uow_factory,
            users,
            permissions,
            actor_id=user_id,
            user_id=target_user_id,
            event_id=event_id,
            retry=retry,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc

    if status_from is not None:
        _audit("sign_up.removed", initiator="organizer", sign_up=sign_up, actor_id=user_id, status_from=status_from)
    return SignUpRead.from_db(sign_up=sign_up)


@router.get("/events/{event_id}/availability", response_model=AvailabilityRead)
async def get_availability(
    event_id: int = Path(..., ge=1),
    user_id: Optional[int] = Depends(get_optional_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    users: UserService = Depends(get_user_service),
) -> AvailabilityRead:
    try:
        availability = await sign_up_usecase.get_sign_up_availability(
            uow_factory,
            users,
            user_id=user_id,
            event_id=event_id,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return AvailabilityRead(event_id=event_id, availability=availability)


@router.get("/events/{event_id}/waitlist-position", response_model=WaitlistPositionRead)
async def get_waitlist_position(
    event_id: int = Path(..., ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
) -> WaitlistPositionRead:
    try:
        position = await sign_up_usecase.get_approximate_position_on_waiting_list(
            uow_factory,
            user_id=user_id,
            event_id=event_id,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return WaitlistPositionRead(event_id=event_id, position=position)


@router.get("/events/{event_id}/sign-ups", response_model=SignUpList)
async def list_event_sign_ups(
    event_id: int = Path(..., ge=1),
    participation_status: Optional[ParticipationStatus] = Query(default=None, alias="status"),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    users: UserService = Depends(get_user_service),
    permissions: PermissionService = Depends(get_permission_service),
) -> SignUpList:
    try:
        rows, total = await sign_up_usecase.find_many_sign_ups(
            uow_factory,
            users,
            permissions,
            actor_id=user_id,
            event_id=event_id,
            status=participation_status,
        )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    return SignUpList(items=[SignUpRead.from_db(sign_up=row) for row in rows], total=total)


@router.get("/me/sign-ups", response_model=List[SignUpRead])
async def list_my_sign_ups(
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
) -> list[SignUpRead]:
    rows = await sign_up_usecase.find_many_sign_ups_for_user(uow_factory, user_id=user_id)
    return [SignUpRead.from_db(sign_up=row) for row in rows]
