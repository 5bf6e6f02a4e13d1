from __future__ import annotations

from contextlib import AsyncExitStack
from types import TracebackType

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .repositories import (
    SqlAlchemyCapacityStore,
    SqlAlchemyEventRepository,
    SqlAlchemyPromotionJobRepository,
    SqlAlchemySignUpRepository,
)


class SqlAlchemyUnitOfWork:
    """
    One session and one transaction per `async with` block. Retries open a new
    unit of work so every attempt reads a fresh snapshot.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._stack: AsyncExitStack | None = None

    async def __aenter__(self) -> "SqlAlchemyUnitOfWork":
        stack = AsyncExitStack()
        session = await stack.enter_async_context(self._session_factory())
        await stack.enter_async_context(session.begin())
        self._stack = stack
        self.session = session
        self.capacity = SqlAlchemyCapacityStore(session)
        self.events = SqlAlchemyEventRepository(session)
        self.sign_ups = SqlAlchemySignUpRepository(session, self.capacity)
        self.promotion_jobs = SqlAlchemyPromotionJobRepository(session)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        stack, self._stack = self._stack, None
        if stack is not None:
            # session.begin() commits on a clean exit and rolls back otherwise.
            await stack.__aexit__(exc_type, exc, tb)


def sqlalchemy_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    def factory() -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork(session_factory)

    return factory
