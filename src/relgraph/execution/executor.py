"""
Statement executor boundary.

The planners and the compiler only build statements; everything that talks
to the database goes through a :class:`StatementExecutor`. The SQLAlchemy
implementation runs statements on the ``AsyncSession`` of the current unit
of work, one at a time, and translates driver errors into the package
taxonomy.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError

from ..exceptions import OperationCancelledError, StatementError, UniqueViolationError

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from sqlalchemy import Executable
    from sqlalchemy.engine import CursorResult, Dialect
    from sqlalchemy.ext.asyncio import AsyncSession

    from ..compiler.insert import CompiledInsert

logger = logging.getLogger("relgraph.executor")

_UNIQUE_SQLSTATES = {"23505"}
_UNIQUE_MARKERS = ("unique constraint", "duplicate entry", "duplicate key")


@runtime_checkable
class StatementExecutor(Protocol):
    """Executes compiled statements inside one transaction."""

    @property
    def dialect(self) -> Dialect: ...

    async def fetch_all(self, statement: Executable) -> list[dict[str, Any]]: ...

    async def fetch_one(self, statement: Executable) -> dict[str, Any] | None: ...

    async def execute(self, statement: Executable) -> int: ...

    async def run_insert(self, compiled: CompiledInsert) -> list[dict[str, Any]]: ...


def is_unique_violation(error: IntegrityError) -> bool:
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _UNIQUE_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _UNIQUE_MARKERS)


class SQLAlchemyStatementExecutor:
    """:class:`StatementExecutor` over a SQLAlchemy ``AsyncSession``.

    ``cancel`` is an optional caller-owned event: once set, the statement in
    flight is abandoned and no further statement is issued; the enclosing
    unit of work then rolls back.
    """

    def __init__(
        self, session: AsyncSession, *, cancel: asyncio.Event | None = None
    ) -> None:
        self._session = session
        self._cancel = cancel
        self.statements = 0

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def dialect(self) -> Dialect:
        return self._session.get_bind().dialect

    async def fetch_all(self, statement: Executable) -> list[dict[str, Any]]:
        result = await self._run(statement)
        return [dict(row) for row in result.mappings().all()]

    async def fetch_one(self, statement: Executable) -> dict[str, Any] | None:
        result = await self._run(statement)
        row = result.mappings().first()
        return dict(row) if row is not None else None

    async def execute(self, statement: Executable) -> int:
        result = await self._run(statement)
        return int(result.rowcount)

    async def run_insert(self, compiled: CompiledInsert) -> list[dict[str, Any]]:
        """Run *compiled* and return the rows it touched."""
        if compiled.contract.returning:
            return await self.fetch_all(compiled.statement)

        rows: list[dict[str, Any]] = []
        for single in compiled.per_row():
            result = await self._run(single.statement)
            if result.rowcount == 0:
                logger.debug("Insert into %s suppressed by conflict", single.table.name)
                continue
            row = await self._refetch(single, result)
            if row is not None:
                rows.append(row)
        return rows

    async def _refetch(
        self, compiled: CompiledInsert, result: CursorResult[Any]
    ) -> dict[str, Any] | None:
        table = compiled.table
        values = compiled.rows[0]
        pk_columns = list(table.primary_key.columns)
        inserted = result.inserted_primary_key or ()
        criteria = []
        for position, column in enumerate(pk_columns):
            value = values.get(column.key)
            if value is None and position < len(inserted):
                value = inserted[position]
            criteria.append(column == value)
        return await self.fetch_one(select(table).where(*criteria))

    # -- internals ----------------------------------------------------------

    async def _run(self, statement: Executable) -> Any:
        if self._cancel is not None and self._cancel.is_set():
            raise OperationCancelledError("Operation cancelled before statement")
        self.statements += 1
        try:
            return await self._race(self._session.execute(statement))
        except IntegrityError as e:
            if is_unique_violation(e):
                raise UniqueViolationError(str(e.orig)) from e
            raise StatementError(str(e.orig)) from e
        except DBAPIError as e:
            raise StatementError(str(e.orig)) from e

    async def _race(self, awaitable: Awaitable[Any]) -> Any:
        if self._cancel is None:
            return await awaitable
        statement = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {statement, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not statement.done():
                statement.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await statement
        if statement in done:
            return statement.result()
        raise OperationCancelledError("Operation cancelled while statement in flight")
