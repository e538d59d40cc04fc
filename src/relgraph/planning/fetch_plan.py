"""
Eager fetch planning.

A :class:`FetchPlan` is one root query plus one :class:`FetchLevel` per node
of the requested relation tree, in breadth-first order. Each level selects
every related row for *all* of its parent rows at once (``WHERE key IN
(...)``), so the number of queries depends on the shape of the expression,
never on the number of rows.

After a level runs, :meth:`FetchLevel.attach` groups its rows by the
correlating key and nests them into the parent rows: lists for ``HasMany`` /
``ManyToMany``, a single object or ``None`` for ``BelongsToOne``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from ..config import DEFAULT_CONFIG
from ..exceptions import NotAllowedError
from ..expressions.allow import AllowList
from ..expressions.parser import parse_relation_expression
from ..schema.types import RelationKind

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping, Sequence

    from sqlalchemy import Select

    from ..config import EngineConfig
    from ..expressions.tree import RelationNode, RelationTree
    from ..schema.registry import RelationRegistry
    from ..schema.types import EntityType, Relation

    SelectFilter = Callable[[Select[Any]], Select[Any]]

logger = logging.getLogger("relgraph.fetch_planner")


@dataclass(frozen=True)
class FetchLevel:
    """One relation level: how to query it and how to correlate its rows.

    ``owner_column`` is read from the parent rows to build the key set;
    ``match_column`` is read from this level's rows to find their parent.
    """

    index: int
    parent: int
    path: str
    relation: Relation
    entity: EntityType
    owner_column: str
    match_column: str
    statement: Select[Any]
    key_column: Any
    filter: SelectFilter | None = None
    hidden: tuple[str, ...] = ()

    def keys(self, parent_rows: Iterable[Mapping[str, Any]]) -> list[Any]:
        """Distinct non-null correlation keys of *parent_rows*, in row order."""
        seen: dict[Any, None] = {}
        for row in parent_rows:
            value = row.get(self.owner_column)
            if value is not None:
                seen.setdefault(value, None)
        return list(seen)

    def build(self, keys: Sequence[Any]) -> Select[Any]:
        stmt = self.statement.where(self.key_column.in_(list(keys)))
        if self.filter is not None:
            stmt = self.filter(stmt)
        return stmt

    def attach(
        self,
        parent_rows: Iterable[dict[str, Any]],
        rows: Sequence[dict[str, Any]],
    ) -> None:
        """Nest *rows* into *parent_rows* under the relation name."""
        grouped: dict[Any, list[dict[str, Any]]] = defaultdict(list)
        for row in rows:
            grouped[row[self.match_column]].append(row)
        for row in rows:
            for name in self.hidden:
                row.pop(name, None)

        name = self.relation.name
        for parent in parent_rows:
            matches = grouped.get(parent.get(self.owner_column), [])
            if self.relation.is_collection:
                parent[name] = list(matches)
            else:
                parent[name] = matches[0] if matches else None


@dataclass
class FetchPlan:
    entity: EntityType
    root: Select[Any]
    levels: list[FetchLevel] = field(default_factory=list)

    def __len__(self) -> int:
        """Number of queries the plan issues at most."""
        return 1 + len(self.levels)

    def depth_groups(self) -> list[list[FetchLevel]]:
        """Levels grouped by tree depth; groups must run in order."""
        depth: dict[int, int] = {0: 0}
        groups: list[list[FetchLevel]] = []
        for level in self.levels:
            d = depth[level.parent] + 1
            depth[level.index] = d
            if d > len(groups):
                groups.append([])
            groups[d - 1].append(level)
        return groups


class EagerFetchPlanner:
    """Builds a :class:`FetchPlan` for a root query and a relation tree."""

    def __init__(
        self, registry: RelationRegistry, config: EngineConfig | None = None
    ) -> None:
        registry.require_frozen()
        self._registry = registry
        self._config = config or DEFAULT_CONFIG

    def plan(
        self,
        entity: str,
        *,
        where: SelectFilter | None = None,
        eager: str | RelationTree | None = None,
        allow: str | RelationTree | AllowList | None = None,
        filters: Mapping[str, SelectFilter] | None = None,
    ) -> FetchPlan:
        """Plan a filtered fetch of *entity* with eager relations.

        Args:
            entity: Registered root entity.
            where: Filter for the root query.
            eager: Relation expression to load.
            allow: Allow-list the expression must fit in; ``None`` allows all.
            filters: Per-relation filters keyed by exact path
                (``"children.pets"``); keys that match nothing are ignored.
        """
        entity_type = self._registry.entity(entity)
        tree = parse_relation_expression(eager)
        allow_list = allow if isinstance(allow, AllowList) else AllowList(allow)
        allow_list.check(tree)
        self._registry.resolve_tree(entity, tree)

        if filters:
            tree = tree.copy()
            unmatched = tree.attach_filters(filters)
            if unmatched and self._config.strict_eager_filters:
                raise NotAllowedError(
                    unmatched[0], f"Eager filter {unmatched[0]!r} matches no relation"
                )

        root = select(entity_type.table)
        if where is not None:
            root = where(root)
        plan = FetchPlan(entity_type, root)
        self._add_levels(plan, tree, entity_type)
        logger.debug(
            "Planned fetch of %s with %d relation levels", entity, len(plan.levels)
        )
        return plan

    def _add_levels(
        self, plan: FetchPlan, tree: RelationTree, root: EntityType
    ) -> None:
        # level index 0 is the root query
        owners: dict[int, EntityType] = {0: root}
        pending: list[tuple[RelationNode, int]] = [
            (node, 0) for node in tree.children.values()
        ]
        while pending:
            node, parent = pending.pop(0)
            relation = self._registry.resolve(owners[parent].name, node.name)
            level = self.level_for(
                relation, node.path, parent, len(plan.levels) + 1, node.filter
            )
            plan.levels.append(level)
            owners[level.index] = level.entity
            pending.extend((child, level.index) for child in node.children.values())

    def level_for(
        self,
        relation: Relation,
        path: str,
        parent: int = 0,
        index: int = 1,
        filter: SelectFilter | None = None,
    ) -> FetchLevel:
        """Build the level that loads *relation* for a set of owner keys."""
        target = self._registry.entity(relation.target)
        table = target.table
        common: dict[str, Any] = {
            "index": index,
            "parent": parent,
            "path": path,
            "relation": relation,
            "entity": target,
            "owner_column": relation.source_key.column,
            "filter": filter,
        }
        if relation.kind is RelationKind.MANY_TO_MANY:
            through_ref = relation.through
            assert through_ref is not None  # enforced at registration
            through = self._registry.table(through_ref.table)
            label = self._config.correlation_label
            owner_fk = through.c[through_ref.source.column]
            stmt = select(*table.c, owner_fk.label(label)).join_from(
                table,
                through,
                through.c[through_ref.target.column]
                == table.c[relation.target_key.column],
            )
            return FetchLevel(
                **common,
                match_column=label,
                statement=stmt,
                key_column=owner_fk,
                hidden=(label,),
            )
        key_column = table.c[relation.target_key.column]
        return FetchLevel(
            **common,
            match_column=relation.target_key.column,
            statement=select(table),
            key_column=key_column,
        )
