"""
Select filters: small ``Select -> Select`` transformers.

Root queries and eager levels accept any callable of that shape. The helpers
here cover the common cases and, like the list endpoints they serve, skip a
condition whose value is ``None``::

    chain(
        where("age", ">=", min_age),     # dropped when min_age is None
        where("species", "dog"),         # two-argument form means "="
        order_by("firstName", "-age"),
    )
"""

from __future__ import annotations

import operator
from typing import TYPE_CHECKING, Any

from sqlalchemy import asc, desc

from ..exceptions import SchemaError

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy import ColumnElement, Select

    SelectFilter = Callable[[Select[Any]], Select[Any]]

_MISSING: Any = object()

_OPERATORS: dict[str, Callable[[Any, Any], ColumnElement[bool]]] = {
    "=": operator.eq,
    "eq": operator.eq,
    "!=": operator.ne,
    "ne": operator.ne,
    ">": operator.gt,
    "gt": operator.gt,
    ">=": operator.ge,
    "gte": operator.ge,
    "<": operator.lt,
    "lt": operator.lt,
    "<=": operator.le,
    "lte": operator.le,
    "like": lambda col, val: col.like(val),
    "ilike": lambda col, val: col.ilike(val),
    "in": lambda col, val: col.in_(val),
    "not_in": lambda col, val: col.not_in(val),
}


def _column(stmt: Select[Any], name: str) -> Any:
    try:
        return stmt.selected_columns[name]
    except KeyError:
        raise SchemaError(f"Query does not select a column named {name!r}") from None


def where(
    column: str, op_or_value: Any, value: Any = _MISSING, *, skip_none: bool = True
) -> SelectFilter:
    """Filter on *column*; ``where(col, value)`` is ``where(col, "=", value)``."""
    if value is _MISSING:
        op, value = "=", op_or_value
    else:
        op = str(op_or_value).lower()
    if op not in _OPERATORS:
        raise SchemaError(f"Unsupported filter operator {op!r}")
    compare = _OPERATORS[op]

    def apply(stmt: Select[Any]) -> Select[Any]:
        if value is None and skip_none:
            return stmt
        return stmt.where(compare(_column(stmt, column), value))

    return apply


def order_by(*columns: str) -> SelectFilter:
    """Order by *columns*; prefix with ``-`` for descending."""

    def apply(stmt: Select[Any]) -> Select[Any]:
        clauses = []
        for name in columns:
            if name.startswith("-"):
                clauses.append(desc(_column(stmt, name[1:])))
            else:
                clauses.append(asc(_column(stmt, name)))
        return stmt.order_by(*clauses)

    return apply


def chain(*filters: SelectFilter | None) -> SelectFilter:
    """Compose filters left to right; ``None`` entries are skipped."""
    active = [f for f in filters if f is not None]

    def apply(stmt: Select[Any]) -> Select[Any]:
        for fn in active:
            stmt = fn(stmt)
        return stmt

    return apply
