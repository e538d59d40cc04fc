"""Statement compilation: conflict-aware inserts and select filters."""

from __future__ import annotations

from .filters import chain, order_by, where
from .insert import (
    CompiledInsert,
    ConflictAction,
    ConflictPolicy,
    ReturnContract,
    compile_insert,
)

__all__ = [
    "CompiledInsert",
    "ConflictAction",
    "ConflictPolicy",
    "ReturnContract",
    "chain",
    "compile_insert",
    "order_by",
    "where",
]
