import logging
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import async_session
from .domain.repositories import OrderService, PermissionService, UnitOfWorkFactory, UserService
from .infrastructure.collaborators import (
    SqlAlchemyPermissionService,
    SqlAlchemyUserService,
    UnconfiguredOrderService,
)
from .infrastructure.unit_of_work import sqlalchemy_uow_factory
from .models import User
from .usecases.sign_ups import RetryPolicy
from .utils.auth import decode_access_token

logger = logging.getLogger(__name__)

_BEARER_CHALLENGE = {"WWW-Authenticate": "Bearer"}


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail, headers=_BEARER_CHALLENGE)


async def get_current_user_id(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int:
    if authorization is None:
        raise _unauthorized("Authorization header required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _unauthorized("Bearer token required")

    settings = get_settings()
    try:
        user_id = decode_access_token(
            token.strip(),
            secret=settings.auth_secret,
            algorithms=[settings.auth_algorithm],
        )
    except ValueError as exc:
        raise _unauthorized("invalid or expired token") from exc

    try:
        found = await session.scalar(select(User.id).where(User.id == user_id))
    except ProgrammingError as exc:
        await session.rollback()
        logger.exception("user lookup failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="user lookup failed") from exc
    if found is None:
        raise _unauthorized("user not found")
    return user_id


async def get_optional_user_id(
    authorization: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int | None:
    if authorization is None:
        return None
    return await get_current_user_id(authorization=authorization, session=session)


def get_uow_factory() -> UnitOfWorkFactory:
    return sqlalchemy_uow_factory(async_session)


def get_user_service() -> UserService:
    return SqlAlchemyUserService(async_session)


def get_permission_service() -> PermissionService:
    return SqlAlchemyPermissionService(async_session)


def get_order_service() -> OrderService:
    return UnconfiguredOrderService()


def get_retry_policy() -> RetryPolicy:
    return RetryPolicy.from_settings(get_settings())
