"""
Unit of Work over a SQLAlchemy ``AsyncSession``.

Every statement of one insert plan runs inside one unit of work: a clean exit
commits, any exception (``asyncio.CancelledError`` included) rolls back all
of it.
"""

from __future__ import annotations

import contextlib
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from ..exceptions import SessionManagementError, UnitOfWorkError
from .executor import SQLAlchemyStatementExecutor

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable
    from types import TracebackType

    from sqlalchemy.ext.asyncio import AsyncSession

    AsyncSessionFactory = Callable[[], AsyncSession]

logger = logging.getLogger("relgraph.uow")


class UnitOfWork(ABC):
    """Transaction scope shared by every statement of one operation."""

    @abstractmethod
    def executor(
        self, *, cancel: asyncio.Event | None = None
    ) -> SQLAlchemyStatementExecutor:
        """Return the statement executor bound to this transaction."""
        ...

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...

    async def __aenter__(self) -> UnitOfWork:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if exc_type is None:
            await self.commit()
        else:
            logger.info("Rolling back unit of work after %s", exc_type.__name__)
            await self.rollback()


class SQLAlchemyUnitOfWork(UnitOfWork):
    """
    Unit of Work using a SQLAlchemy ``AsyncSession``.

    Either the caller owns the session::

        async with SQLAlchemyUnitOfWork(session=session) as uow:
            ...

    or the unit of work creates and closes one::

        factory = async_sessionmaker(engine, expire_on_commit=False)
        async with SQLAlchemyUnitOfWork(session_factory=factory) as uow:
            ...

    Exactly one of ``session`` or ``session_factory`` must be provided.
    """

    def __init__(
        self,
        session: AsyncSession | None = None,
        session_factory: AsyncSessionFactory | None = None,
    ) -> None:
        if session is not None and session_factory is not None:
            raise SessionManagementError(
                "Cannot provide both 'session' and 'session_factory'."
            )
        if session is None and session_factory is None:
            raise SessionManagementError(
                "Must provide either 'session' or 'session_factory'."
            )

        self._session: AsyncSession | None = session
        self._session_factory = session_factory
        self._owns_session = session_factory is not None

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise UnitOfWorkError(
                "Session not yet created. Ensure __aenter__ was called."
            )
        return self._session

    def executor(
        self, *, cancel: asyncio.Event | None = None
    ) -> SQLAlchemyStatementExecutor:
        return SQLAlchemyStatementExecutor(self.session, cancel=cancel)

    async def __aenter__(self) -> SQLAlchemyUnitOfWork:
        try:
            if self._owns_session and self._session_factory:
                self._session = self._session_factory()

            if not self.session.in_transaction():
                await self.session.begin()

            return self
        except Exception as e:  # noqa: BLE001
            if isinstance(e, UnitOfWorkError):
                raise
            raise SessionManagementError(f"Failed to initialize UoW: {e}") from e

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        try:
            await super().__aexit__(exc_type, exc_val, exc_tb)
        finally:
            if self._owns_session and self._session is not None:
                try:
                    await self._session.close()
                except Exception as e:  # noqa: BLE001
                    raise SessionManagementError(f"Failed to close session: {e}") from e
                finally:
                    self._session = None

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except Exception as e:  # noqa: BLE001
            with contextlib.suppress(Exception):
                await self.rollback()
            raise UnitOfWorkError(f"Failed to commit transaction: {e}") from e

    async def rollback(self) -> None:
        try:
            if self.session.in_transaction():
                await self.session.rollback()
        except Exception as e:  # noqa: BLE001
            raise UnitOfWorkError(f"Failed to rollback transaction: {e}") from e
