"""
Graph insert planning.

:class:`GraphInsertPlanner` walks a nested payload against the relation
registry and produces an :class:`InsertPlan`: an ordered list of single-row
inserts where every operation comes after the operations whose generated
keys it needs.

Ordering rules, applied per payload node:

1. ``BelongsToOne`` children are planned first; the node's foreign key is
   backfilled from the child's returned row.
2. The node itself.
3. ``HasMany`` children, each backfilled with the node's key.
4. ``ManyToMany`` targets, each followed by one through-table row that is
   backfilled from both endpoints.

The walk follows the literal nesting of the payload, so self-referential
relations (``Person.parent`` / ``Person.children``) cannot loop; a payload
that literally contains itself is rejected with :class:`CyclicPayloadError`.
Planning issues no statements.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..config import DEFAULT_CONFIG
from ..exceptions import CyclicPayloadError, PayloadError, ReturnContractError
from ..expressions.allow import AllowList
from ..schema.types import RelationKind

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from sqlalchemy import Table

    from ..compiler.insert import ConflictPolicy
    from ..config import EngineConfig
    from ..expressions.tree import RelationTree
    from ..schema.registry import RelationRegistry
    from ..schema.types import EntityType, Relation

logger = logging.getLogger("relgraph.insert_planner")


class OperationKind(str, enum.Enum):
    ENTITY = "entity"
    THROUGH = "through"


@dataclass(frozen=True)
class Backfill:
    """Copy ``source_column`` of an earlier operation's row into ``column``."""

    column: str
    source_op: int
    source_column: str


@dataclass(frozen=True)
class InsertOperation:
    index: int
    kind: OperationKind
    table: Table
    values: Mapping[str, Any]
    backfills: tuple[Backfill, ...] = ()
    entity: str | None = None
    path: str = ""
    conflict: ConflictPolicy | None = None

    @property
    def depends_on(self) -> frozenset[int]:
        return frozenset(b.source_op for b in self.backfills)


@dataclass(frozen=True)
class Attachment:
    """Where a returned row goes in the output graph."""

    parent_op: int
    key: str
    many: bool
    children: tuple[int, ...]


@dataclass
class InsertPlan:
    operations: list[InsertOperation] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    roots: list[int] = field(default_factory=list)
    many: bool = False

    def __iter__(self) -> Iterator[InsertOperation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def dependents(self, op: InsertOperation) -> list[InsertOperation]:
        return [o for o in self.operations if op.index in o.depends_on]

    def levels(self) -> list[list[InsertOperation]]:
        """Group operations into batches whose dependencies are all earlier.

        Operations inside one batch are independent of each other and may be
        issued concurrently where the connection allows it.
        """
        level_of: dict[int, int] = {}
        batches: list[list[InsertOperation]] = []
        for op in self.operations:
            level = max((level_of[d] + 1 for d in op.depends_on), default=0)
            level_of[op.index] = level
            if level == len(batches):
                batches.append([])
            batches[level].append(op)
        return batches

    def resolve_values(
        self, op: InsertOperation, rows: Mapping[int, Mapping[str, Any] | None]
    ) -> dict[str, Any]:
        """Values of *op* with every backfill applied from executed rows."""
        values = dict(op.values)
        for backfill in op.backfills:
            source = rows.get(backfill.source_op)
            if source is None:
                raise ReturnContractError(
                    f"Cannot backfill {op.table.name}.{backfill.column}: "
                    f"operation {backfill.source_op} returned no row"
                )
            values[backfill.column] = source[backfill.source_column]
        return values

    def assemble(
        self, rows: Mapping[int, Mapping[str, Any] | None]
    ) -> dict[str, Any] | list[dict[str, Any] | None] | None:
        """Nest executed rows back into the payload's shape."""
        output: dict[int, dict[str, Any] | None] = {}
        for op in self.operations:
            if op.kind is OperationKind.ENTITY:
                row = rows.get(op.index)
                output[op.index] = dict(row) if row is not None else None
        for attachment in self.attachments:
            parent = output.get(attachment.parent_op)
            if parent is None:
                continue
            children = [output[c] for c in attachment.children]
            if attachment.many:
                parent[attachment.key] = [c for c in children if c is not None]
            else:
                parent[attachment.key] = children[0] if children else None
        results = [output[r] for r in self.roots]
        if self.many:
            return results
        return results[0] if results else None


class GraphInsertPlanner:
    """Turns a graph payload into an :class:`InsertPlan`."""

    def __init__(
        self, registry: RelationRegistry, config: EngineConfig | None = None
    ) -> None:
        registry.require_frozen()
        self._registry = registry
        self._config = config or DEFAULT_CONFIG

    def plan(
        self,
        entity: str,
        payload: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        *,
        allow: str | RelationTree | AllowList | None = None,
        on_conflict: ConflictPolicy | None = None,
    ) -> InsertPlan:
        """Plan the insert of *payload* rooted at *entity*.

        Args:
            entity: Registered entity name of the root record(s).
            payload: One record or a list of records.
            allow: Relation paths the payload may nest; ``None`` allows all.
            on_conflict: Conflict policy for the root records.
        """
        allow_list = allow if isinstance(allow, AllowList) else AllowList(allow)
        root_type = self._registry.entity(entity)
        many = not isinstance(payload, Mapping)
        records = list(payload) if many else [payload]  # type: ignore[list-item]

        walk = _Walk(self._registry, allow_list, self._config.max_payload_depth)
        plan = walk.plan
        plan.many = many
        for record in records:
            plan.roots.append(walk.node(root_type, record, "", (), [], on_conflict))

        logger.debug(
            "Planned graph insert of %s: %d operations in %d levels",
            entity,
            len(plan),
            len(plan.levels()),
        )
        return plan


class _Walk:
    """One depth-first walk over a payload."""

    def __init__(
        self, registry: RelationRegistry, allow: AllowList, max_depth: int
    ) -> None:
        self.registry = registry
        self.allow = allow
        self.max_depth = max_depth
        self.plan = InsertPlan()

    def _append(self, **kwargs: Any) -> int:
        index = len(self.plan.operations)
        self.plan.operations.append(InsertOperation(index=index, **kwargs))
        return index

    def _check_identity(
        self,
        entity: EntityType,
        record: Any,
        path: str,
        ancestors: tuple[tuple[int, tuple[str, Any] | None], ...],
    ) -> tuple[int, tuple[str, Any] | None]:
        if not isinstance(record, Mapping):
            raise PayloadError(
                f"Expected an object for {entity.name} at {path or '<root>'!r}, "
                f"got {type(record).__name__}"
            )
        if len(ancestors) >= self.max_depth:
            raise CyclicPayloadError(
                path, f"Graph payload nests deeper than {self.max_depth} at {path!r}"
            )
        pk = entity.primary_key.key
        key = (entity.name, record[pk]) if record.get(pk) is not None else None
        for obj_id, ancestor_key in ancestors:
            if obj_id == id(record) or (key is not None and key == ancestor_key):
                raise CyclicPayloadError(path)
        return id(record), key

    def node(
        self,
        entity: EntityType,
        record: Any,
        path: str,
        ancestors: tuple[tuple[int, tuple[str, Any] | None], ...],
        inbound: list[Backfill],
        conflict: ConflictPolicy | None = None,
    ) -> int:
        identity = self._check_identity(entity, record, path, ancestors)
        lineage = (*ancestors, identity)
        values, related = entity.split_record(record)

        entries: list[tuple[str, Relation, str, Any]] = []
        for key, value in related.items():
            relation = self.registry.resolve(entity.name, key)
            rel_path = f"{path}.{key}" if path else key
            self.allow.check_path(rel_path)
            entries.append((key, relation, rel_path, value))

        children: dict[str, tuple[bool, list[int]]] = {}
        backfills = list(inbound)

        for key, relation, rel_path, value in entries:
            if relation.kind is not RelationKind.BELONGS_TO_ONE:
                continue
            if value is None:
                children[key] = (False, [])
                continue
            if not isinstance(value, Mapping):
                raise PayloadError(f"{rel_path!r} expects a single object")
            target = self.registry.entity(relation.target)
            child = self.node(target, value, rel_path, lineage, [])
            backfills.append(
                Backfill(relation.source_key.column, child, relation.target_key.column)
            )
            values.pop(relation.source_key.column, None)
            children[key] = (False, [child])

        index = self._append(
            kind=OperationKind.ENTITY,
            table=entity.table,
            values=values,
            backfills=tuple(backfills),
            entity=entity.name,
            path=path,
            conflict=conflict,
        )

        for key, relation, rel_path, value in entries:
            if relation.kind is RelationKind.BELONGS_TO_ONE:
                continue
            items = _as_list(value, rel_path)
            target = self.registry.entity(relation.target)
            planned: list[int] = []
            for item in items:
                if relation.kind is RelationKind.HAS_MANY:
                    link = Backfill(
                        relation.target_key.column, index, relation.source_key.column
                    )
                    planned.append(self.node(target, item, rel_path, lineage, [link]))
                else:
                    child = self.node(target, item, rel_path, lineage, [])
                    self._through_row(relation, index, child, rel_path)
                    planned.append(child)
            children[key] = (True, planned)

        for key in related:
            many, planned = children[key]
            self.plan.attachments.append(Attachment(index, key, many, tuple(planned)))
        return index

    def _through_row(
        self, relation: Relation, owner: int, target: int, path: str
    ) -> None:
        through = relation.through
        assert through is not None  # enforced at registration
        self._append(
            kind=OperationKind.THROUGH,
            table=self.registry.table(through.table),
            values={},
            backfills=(
                Backfill(through.source.column, owner, relation.source_key.column),
                Backfill(through.target.column, target, relation.target_key.column),
            ),
            path=path,
        )


def _as_list(value: Any, path: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, Mapping):
        return [value]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise PayloadError(f"{path!r} expects an object or a list of objects")
