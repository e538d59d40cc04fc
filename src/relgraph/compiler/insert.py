"""
Conflict-aware insert compilation.

``compile_insert`` turns one insert (one or many rows into one table) plus an
optional :class:`ConflictPolicy` into a dialect-correct SQLAlchemy ``Insert``
and a :class:`ReturnContract`:

==============  ====================================  ==========================
dialect         ``Ignore``                            ``Merge``
==============  ====================================  ==========================
postgresql      ``ON CONFLICT (cols) DO NOTHING``     ``ON CONFLICT (cols) DO
                                                      UPDATE SET c = excluded.c``
sqlite          ``ON CONFLICT (cols) DO NOTHING``     same as postgresql
mysql/mariadb   ``INSERT IGNORE``                     ``ON DUPLICATE KEY UPDATE``
==============  ====================================  ==========================

Return contract
---------------
The statement always asks for the inserted row back (``RETURNING`` when the
dialect has it). When an ``Ignore`` policy suppresses a row, no row comes
back. The two call shapes surface that differently and must stay that way:

- :meth:`ReturnContract.one` (single-row call) yields ``None``;
- :meth:`ReturnContract.many` (multi-row call) yields ``[]``.

Without a policy a missing row is a contract violation.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy import insert
from sqlalchemy.dialects import mysql, postgresql, sqlite

from ..exceptions import ReturnContractError, StatementError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import Insert, Table
    from sqlalchemy.engine import Dialect

logger = logging.getLogger("relgraph.compiler")

_ON_CONFLICT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}
_DUPLICATE_KEY_DIALECTS = {"mysql", "mariadb"}


class ConflictAction(str, enum.Enum):
    IGNORE = "ignore"
    MERGE = "merge"


class ConflictPolicy(BaseModel):
    """How to resolve a unique-key collision on insert.

    ``columns=None`` targets the table's natural key (its primary key).
    ``merge`` limits the columns a ``MERGE`` overwrites; by default every
    inserted column outside the conflict target is overwritten.
    """

    model_config = ConfigDict(frozen=True)

    columns: tuple[str, ...] | None = None
    action: ConflictAction = ConflictAction.IGNORE
    merge: tuple[str, ...] | None = None

    @classmethod
    def ignore(cls, *columns: str) -> ConflictPolicy:
        return cls(columns=columns or None, action=ConflictAction.IGNORE)

    @classmethod
    def merge_on(
        cls, *columns: str, update: Sequence[str] | None = None
    ) -> ConflictPolicy:
        return cls(
            columns=columns or None,
            action=ConflictAction.MERGE,
            merge=tuple(update) if update is not None else None,
        )

    def target_columns(self, table: Table) -> list[str]:
        if self.columns:
            missing = [c for c in self.columns if c not in table.c]
            if missing:
                raise StatementError(
                    f"Conflict columns {missing} do not exist on {table.name!r}"
                )
            return list(self.columns)
        return [c.key for c in table.primary_key.columns]


@dataclass(frozen=True)
class ReturnContract:
    """What an executed insert hands back to its caller."""

    returning: bool
    may_suppress: bool

    def one(self, rows: Sequence[Mapping[str, Any]]) -> dict[str, Any] | None:
        """Single-row shape: the row, or ``None`` when the insert was ignored."""
        if rows:
            return dict(rows[0])
        if self.may_suppress:
            return None
        raise ReturnContractError("Insert completed without returning its row")

    def many(self, rows: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Multi-row shape: the touched rows, ``[]`` when all were ignored."""
        return [dict(r) for r in rows]


@dataclass(frozen=True)
class CompiledInsert:
    statement: Insert
    table: Table
    rows: tuple[dict[str, Any], ...]
    policy: ConflictPolicy | None
    contract: ReturnContract
    dialect: str

    def per_row(self) -> list[CompiledInsert]:
        """Split into single-row inserts (for drivers without ``RETURNING``)."""
        if len(self.rows) == 1:
            return [self]
        return [
            _compile(self.table, [row], self.dialect, self.policy, returning=False)
            for row in self.rows
        ]

    def sql(self, dialect: Dialect) -> str:
        return str(self.statement.compile(dialect=dialect))


def compile_insert(
    table: Table,
    values: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    *,
    dialect: Dialect,
    policy: ConflictPolicy | None = None,
    returning: bool | None = None,
) -> CompiledInsert:
    """Compile an insert of *values* into *table* for *dialect*.

    Args:
        table: Target table.
        values: One row, or a sequence of rows for a multi-row insert.
        dialect: Dialect of the executing connection.
        policy: Optional conflict policy.
        returning: Force (or disable) ``RETURNING``; ``None`` detects it
            from ``dialect.insert_returning``.
    """
    if isinstance(values, Mapping):
        rows = [dict(values)]
    else:
        rows = [dict(v) for v in values]
    if not rows:
        raise StatementError(f"Nothing to insert into {table.name!r}")
    use_returning = (
        bool(getattr(dialect, "insert_returning", False))
        if returning is None
        else returning
    )
    return _compile(table, rows, dialect.name, policy, returning=use_returning)


def _compile(
    table: Table,
    rows: list[dict[str, Any]],
    dialect_name: str,
    policy: ConflictPolicy | None,
    *,
    returning: bool,
) -> CompiledInsert:
    unknown = {k for row in rows for k in row if k not in table.c}
    if unknown:
        raise StatementError(f"Unknown columns for {table.name!r}: {sorted(unknown)}")

    if policy is None:
        stmt: Any = insert(table).values(_values(rows))
    elif dialect_name in _ON_CONFLICT_DIALECTS:
        stmt = _on_conflict(table, rows, dialect_name, policy)
    elif dialect_name in _DUPLICATE_KEY_DIALECTS:
        stmt = _duplicate_key(table, rows, policy)
    else:
        raise StatementError(
            f"Dialect {dialect_name!r} does not support conflict clauses"
        )

    if returning:
        stmt = stmt.returning(*table.c)

    contract = ReturnContract(
        returning=returning,
        may_suppress=policy is not None and policy.action is ConflictAction.IGNORE,
    )
    logger.debug(
        "Compiled insert into %s (%d rows, dialect=%s, policy=%s)",
        table.name,
        len(rows),
        dialect_name,
        policy.action.value if policy else None,
    )
    return CompiledInsert(stmt, table, tuple(rows), policy, contract, dialect_name)


def _values(rows: list[dict[str, Any]]) -> Any:
    if len(rows) == 1:
        return rows[0]
    keys = set(rows[0])
    if any(set(row) != keys for row in rows[1:]):
        raise StatementError("Multi-row inserts need the same columns in every row")
    return rows


def _merge_columns(
    table: Table, rows: list[dict[str, Any]], policy: ConflictPolicy, target: list[str]
) -> list[str]:
    if policy.merge is not None:
        return list(policy.merge)
    inserted = [c.key for c in table.columns if any(c.key in row for row in rows)]
    merged = [c for c in inserted if c not in target]
    # nothing else to overwrite: a self-assignment still returns the row
    return merged or target


def _on_conflict(
    table: Table,
    rows: list[dict[str, Any]],
    dialect_name: str,
    policy: ConflictPolicy,
) -> Any:
    target = policy.target_columns(table)
    stmt = _ON_CONFLICT_DIALECTS[dialect_name](table).values(_values(rows))
    if policy.action is ConflictAction.IGNORE:
        return stmt.on_conflict_do_nothing(index_elements=target)
    columns = _merge_columns(table, rows, policy, target)
    return stmt.on_conflict_do_update(
        index_elements=target,
        set_={c: stmt.excluded[c] for c in columns},
    )


def _duplicate_key(
    table: Table, rows: list[dict[str, Any]], policy: ConflictPolicy
) -> Any:
    # MySQL resolves against whichever unique key collides; the target
    # columns only select what MERGE leaves untouched.
    target = policy.target_columns(table)
    stmt = mysql.insert(table).values(_values(rows))
    if policy.action is ConflictAction.IGNORE:
        return stmt.prefix_with("IGNORE")
    columns = _merge_columns(table, rows, policy, target)
    return stmt.on_duplicate_key_update({c: stmt.inserted[c] for c in columns})
