"""Relation schema: entity types, relations and the registry."""

from __future__ import annotations

from .registry import RelationRegistry
from .types import (
    ColumnRef,
    EntityType,
    Relation,
    RelationKind,
    ThroughTable,
    belongs_to_one,
    has_many,
    many_to_many,
)

__all__ = [
    "ColumnRef",
    "EntityType",
    "Relation",
    "RelationKind",
    "RelationRegistry",
    "ThroughTable",
    "belongs_to_one",
    "has_many",
    "many_to_many",
]
