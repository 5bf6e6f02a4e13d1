import logging
from typing import Sequence

from sqlalchemy import Row, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.errors import NotFoundError, OrderCreationError
from ..domain.repositories import UserInfo
from ..models import OrganizationMember, Role, User

logger = logging.getLogger(__name__)


def _user_info(row: Row) -> UserInfo:
    return UserInfo(id=row.id, graduation_year=row.graduation_year, is_super_user=bool(row.is_super_user))


class SqlAlchemyUserService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: int) -> UserInfo:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(User.id, User.graduation_year, User.is_super_user).where(User.id == user_id)
                )
            ).first()
        if row is None:
            raise NotFoundError(f"user {user_id} not found")
        return _user_info(row)

    async def get_many(self, user_ids: Sequence[int]) -> dict[int, UserInfo]:
        if not user_ids:
            return {}
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(User.id, User.graduation_year, User.is_super_user).where(User.id.in_(set(user_ids)))
                )
            ).all()
        return {row.id: _user_info(row) for row in rows}


class SqlAlchemyPermissionService:
    """Membership lookup. Admins hold every member permission."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def has_role(self, user_id: int, organization_id: int, role: Role) -> bool:
        roles = [Role.ADMIN] if role == Role.ADMIN else [Role.MEMBER, Role.ADMIN]
        async with self._session_factory() as session:
            found = await session.scalar(
                select(OrganizationMember.id).where(
                    OrganizationMember.user_id == user_id,
                    OrganizationMember.organization_id == organization_id,
                    OrganizationMember.role.in_(roles),
                )
            )
        return found is not None


class UnconfiguredOrderService:
    """Placeholder until a payment provider is wired in; ticketed sign-ups fail cleanly."""

    async def create_order(self, user_id: int, product_id: str) -> str:
        raise OrderCreationError(f"no order provider configured for product {product_id}")


class LoggingNotifier:
    async def notify(self, user_id: int, event_id: int) -> None:
        logger.info("user %s promoted from the waitlist of event %s", user_id, event_id)
