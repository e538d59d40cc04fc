"""
Relation schema primitives.

An :class:`EntityType` wraps one ``sqlalchemy.Table`` and the relations
declared on it. A :class:`Relation` is a tagged variant over
:class:`RelationKind`; join columns are written the way the DDL names them
(``"Person.id"``), and resolved against the table metadata at registration.

Join semantics per kind (``source`` is the entity declaring the relation):

- ``HAS_MANY``: ``source.<from>`` is referenced by ``target.<to>``
  (e.g. ``Person.id`` -> ``Animal.ownerId``).
- ``BELONGS_TO_ONE``: ``source.<from>`` references ``target.<to>``
  (e.g. ``Person.parentId`` -> ``Person.id``).
- ``MANY_TO_MANY``: ``source.<from>`` -> ``through.<src>``,
  ``through.<dst>`` -> ``target.<to>``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..exceptions import SchemaError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy import Column, Table


class RelationKind(str, enum.Enum):
    HAS_MANY = "HasMany"
    BELONGS_TO_ONE = "BelongsToOne"
    MANY_TO_MANY = "ManyToMany"

    @property
    def is_collection(self) -> bool:
        return self is not RelationKind.BELONGS_TO_ONE


@dataclass(frozen=True)
class ColumnRef:
    """A qualified ``table.column`` reference."""

    table: str
    column: str

    @classmethod
    def parse(cls, ref: str) -> ColumnRef:
        table, sep, column = ref.rpartition(".")
        if not sep or not table or not column:
            raise SchemaError(f"Join column must be written as 'Table.column': {ref!r}")
        return cls(table, column)

    def __str__(self) -> str:
        return f"{self.table}.{self.column}"


@dataclass(frozen=True)
class ThroughTable:
    """Join table of a many-to-many relation."""

    source: ColumnRef
    target: ColumnRef

    @property
    def table(self) -> str:
        return self.source.table


@dataclass(frozen=True)
class Relation:
    """A named, directional, typed edge between two entity types."""

    kind: RelationKind
    target: str
    source_key: ColumnRef
    target_key: ColumnRef
    through: ThroughTable | None = None
    name: str = ""

    @property
    def is_collection(self) -> bool:
        return self.kind.is_collection

    def named(self, name: str) -> Relation:
        return Relation(
            kind=self.kind,
            target=self.target,
            source_key=self.source_key,
            target_key=self.target_key,
            through=self.through,
            name=name,
        )


def has_many(target: str, from_: str, to: str) -> Relation:
    return Relation(
        RelationKind.HAS_MANY, target, ColumnRef.parse(from_), ColumnRef.parse(to)
    )


def belongs_to_one(target: str, from_: str, to: str) -> Relation:
    return Relation(
        RelationKind.BELONGS_TO_ONE,
        target,
        ColumnRef.parse(from_),
        ColumnRef.parse(to),
    )


def many_to_many(
    target: str,
    from_: str,
    through: tuple[str, str] | None,
    to: str,
) -> Relation:
    """Declare a many-to-many relation.

    ``through`` is ``("Join.source_fk", "Join.target_fk")``; passing ``None``
    is accepted here and rejected at registration.
    """
    through_table = None
    if through is not None:
        through_table = ThroughTable(
            ColumnRef.parse(through[0]), ColumnRef.parse(through[1])
        )
    return Relation(
        RelationKind.MANY_TO_MANY,
        target,
        ColumnRef.parse(from_),
        ColumnRef.parse(to),
        through=through_table,
    )


@dataclass(frozen=True)
class EntityType:
    """A registered record shape: table, primary key and relations."""

    name: str
    table: Table
    relations: Mapping[str, Relation] = field(default_factory=dict)

    @property
    def primary_key(self) -> Column[Any]:
        cols = list(self.table.primary_key.columns)
        if len(cols) != 1:
            raise SchemaError(
                f"{self.name} must have exactly one primary key column, "
                f"found {len(cols)}"
            )
        return cols[0]

    def has_column(self, name: str) -> bool:
        return name in self.table.c

    def split_record(
        self, record: Mapping[str, Any]
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split a payload record into ``(column values, relation entries)``."""
        values: dict[str, Any] = {}
        related: dict[str, Any] = {}
        for key, value in record.items():
            if key in self.table.c:
                values[key] = value
            else:
                related[key] = value
        return values, related
