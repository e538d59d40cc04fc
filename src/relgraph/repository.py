"""
GraphRepository: high-level operations for one entity type.

Every method takes an optional ``uow``. When given, statements join the
caller's transaction and the caller commits; otherwise the repository opens
a unit of work from its ``uow_factory`` and commits it on success::

    people = GraphRepository(registry, "Person", uow_factory=factory)

    person = await people.insert_graph(
        payload, allow="[pets, children.[pets, movies], movies, parent]"
    )
    adults = await people.fetch(
        chain(where("age", ">=", 18), order_by("firstName")),
        eager="[pets, children.pets]",
        filters={"children.pets": where("species", "dog")},
    )

Id-scoped calls return ``None`` when the row does not exist; they never
raise for a missing id.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update

from .compiler.insert import compile_insert
from .config import DEFAULT_CONFIG
from .exceptions import PayloadError, ReturnContractError, UnitOfWorkError
from .planning.fetch_plan import EagerFetchPlanner
from .planning.insert_plan import GraphInsertPlanner
from .schema.types import RelationKind

if TYPE_CHECKING:
    import asyncio
    from collections.abc import AsyncIterator, Callable, Mapping, Sequence

    from sqlalchemy import Select, Table

    from .compiler.insert import ConflictPolicy
    from .config import EngineConfig
    from .execution.executor import StatementExecutor
    from .execution.uow import UnitOfWork
    from .expressions.allow import AllowList
    from .expressions.tree import RelationTree
    from .planning.fetch_plan import FetchPlan
    from .planning.insert_plan import InsertPlan
    from .schema.registry import RelationRegistry
    from .schema.types import EntityType, Relation

    SelectFilter = Callable[[Select[Any]], Select[Any]]
    UnitOfWorkFactory = Callable[[], UnitOfWork]
    AllowInput = str | RelationTree | AllowList | None

logger = logging.getLogger("relgraph.repository")


class GraphRepository:
    """Graph insert, eager fetch and id-scoped operations on one entity."""

    def __init__(
        self,
        registry: RelationRegistry,
        entity: str,
        uow_factory: UnitOfWorkFactory | None = None,
        *,
        config: EngineConfig | None = None,
    ) -> None:
        self.registry = registry
        self.entity: EntityType = registry.entity(entity)
        self.config = config or DEFAULT_CONFIG
        self._uow_factory = uow_factory
        self.insert_planner = GraphInsertPlanner(registry, self.config)
        self.fetch_planner = EagerFetchPlanner(registry, self.config)

    # -- UoW helpers --------------------------------------------------------

    @asynccontextmanager
    async def unit(self, uow: UnitOfWork | None = None) -> AsyncIterator[UnitOfWork]:
        """Yield *uow*, or a fresh unit of work that commits on exit."""
        if uow is not None:
            yield uow
            return
        if self._uow_factory is None:
            raise UnitOfWorkError("No UnitOfWork provided or configured.")
        async with self._uow_factory() as active:
            yield active

    # -- graph insert -------------------------------------------------------

    async def insert_graph(
        self,
        payload: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        *,
        allow: AllowInput = None,
        on_conflict: ConflictPolicy | None = None,
        uow: UnitOfWork | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Any:
        """Insert a nested payload in one transaction; return it with keys.

        Returns a dict for a single record and a list for a list of records.
        With ``on_conflict`` the root records may be suppressed; a suppressed
        root comes back as ``None``.
        """
        plan = self.insert_planner.plan(
            self.entity.name, payload, allow=allow, on_conflict=on_conflict
        )
        async with self.unit(uow) as active:
            executor = active.executor(cancel=cancel)
            rows = await self.execute_insert_plan(plan, executor)
        return plan.assemble(rows)

    async def execute_insert_plan(
        self, plan: InsertPlan, executor: StatementExecutor
    ) -> dict[int, dict[str, Any] | None]:
        """Run *plan* statement by statement; return rows by operation index."""
        rows: dict[int, dict[str, Any] | None] = {}
        for op in plan:
            values = plan.resolve_values(op, rows)
            compiled = compile_insert(
                op.table,
                values,
                dialect=executor.dialect,
                policy=op.conflict,
                returning=self.config.use_returning,
            )
            row = compiled.contract.one(await executor.run_insert(compiled))
            if row is None and plan.dependents(op):
                raise ReturnContractError(
                    f"Insert into {op.table.name} was suppressed but nested "
                    f"rows depend on its key"
                )
            rows[op.index] = row
        logger.debug(
            "Executed graph insert of %s: %d statements", self.entity.name, len(plan)
        )
        return rows

    # -- flat inserts -------------------------------------------------------

    async def insert(
        self,
        values: Mapping[str, Any],
        *,
        on_conflict: ConflictPolicy | None = None,
        uow: UnitOfWork | None = None,
    ) -> dict[str, Any] | None:
        """Insert one row and return it.

        Returns ``None`` when an ``Ignore`` policy suppressed the row.
        """
        row_values = self._column_values(self.entity, values)
        async with self.unit(uow) as active:
            executor = active.executor()
            compiled = compile_insert(
                self.entity.table,
                row_values,
                dialect=executor.dialect,
                policy=on_conflict,
                returning=self.config.use_returning,
            )
            return compiled.contract.one(await executor.run_insert(compiled))

    async def insert_returning(
        self,
        rows: Sequence[Mapping[str, Any]],
        *,
        on_conflict: ConflictPolicy | None = None,
        uow: UnitOfWork | None = None,
    ) -> list[dict[str, Any]]:
        """Insert many rows in one statement; return the rows touched.

        Returns ``[]`` when an ``Ignore`` policy suppressed every row.
        """
        if not rows:
            return []
        row_values = [self._column_values(self.entity, r) for r in rows]
        async with self.unit(uow) as active:
            executor = active.executor()
            compiled = compile_insert(
                self.entity.table,
                row_values,
                dialect=executor.dialect,
                policy=on_conflict,
                returning=self.config.use_returning,
            )
            return compiled.contract.many(await executor.run_insert(compiled))

    # -- fetch --------------------------------------------------------------

    async def fetch(
        self,
        where: SelectFilter | None = None,
        *,
        eager: str | RelationTree | None = None,
        allow: AllowInput = None,
        filters: Mapping[str, SelectFilter] | None = None,
        uow: UnitOfWork | None = None,
        cancel: asyncio.Event | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch rows matching *where* with the *eager* relations nested in."""
        plan = self.fetch_planner.plan(
            self.entity.name, where=where, eager=eager, allow=allow, filters=filters
        )
        async with self.unit(uow) as active:
            return await self.execute_fetch_plan(plan, active.executor(cancel=cancel))

    async def execute_fetch_plan(
        self, plan: FetchPlan, executor: StatementExecutor
    ) -> list[dict[str, Any]]:
        """Run the root query, then each relation level after its parent."""
        results: dict[int, list[dict[str, Any]]] = {
            0: await executor.fetch_all(plan.root)
        }
        for group in plan.depth_groups():
            for level in group:
                parents = results[level.parent]
                keys = level.keys(parents)
                rows = await executor.fetch_all(level.build(keys)) if keys else []
                level.attach(parents, rows)
                results[level.index] = rows
        return results[0]

    async def find_by_id(
        self,
        entity_id: Any,
        *,
        eager: str | RelationTree | None = None,
        allow: AllowInput = None,
        filters: Mapping[str, SelectFilter] | None = None,
        uow: UnitOfWork | None = None,
    ) -> dict[str, Any] | None:
        if entity_id is None:
            return None
        rows = await self.fetch(
            self._by_id(self.entity, entity_id),
            eager=eager,
            allow=allow,
            filters=filters,
            uow=uow,
        )
        return rows[0] if rows else None

    # -- patch / delete -----------------------------------------------------

    async def patch_and_fetch_by_id(
        self,
        entity_id: Any,
        patch: Mapping[str, Any],
        *,
        uow: UnitOfWork | None = None,
    ) -> dict[str, Any] | None:
        """Update the given columns of one row and return the updated row."""
        values = self._column_values(self.entity, patch)
        table = self.entity.table
        pk = self.entity.primary_key
        async with self.unit(uow) as active:
            executor = active.executor()
            if values:
                count = await executor.execute(
                    update(table).where(pk == entity_id).values(values)
                )
                if count == 0:
                    return None
            new_id = values.get(pk.key, entity_id)
            return await executor.fetch_one(select(table).where(pk == new_id))

    async def delete_by_id(
        self, entity_id: Any, *, uow: UnitOfWork | None = None
    ) -> int:
        """Delete one row; return the number of rows deleted (0 or 1)."""
        table = self.entity.table
        async with self.unit(uow) as active:
            return await active.executor().execute(
                delete(table).where(self.entity.primary_key == entity_id)
            )

    # -- related ------------------------------------------------------------

    def related(self, owner_id: Any, relation: str) -> RelatedQuery:
        """Query handle for the rows *relation* links to one owner row."""
        resolved = self.registry.resolve(self.entity.name, relation)
        return RelatedQuery(self, owner_id, resolved)

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _by_id(entity: EntityType, entity_id: Any) -> SelectFilter:
        pk = entity.primary_key

        def apply(stmt: Select[Any]) -> Select[Any]:
            return stmt.where(pk == entity_id)

        return apply

    @staticmethod
    def _column_values(
        entity: EntityType, values: Mapping[str, Any]
    ) -> dict[str, Any]:
        unknown = [k for k in values if not entity.has_column(k)]
        if unknown:
            raise PayloadError(f"{entity.name} has no columns named {unknown}")
        return dict(values)

    async def insert_row(
        self,
        executor: StatementExecutor,
        table: Table,
        values: Mapping[str, Any],
    ) -> dict[str, Any]:
        compiled = compile_insert(
            table,
            values,
            dialect=executor.dialect,
            returning=self.config.use_returning,
        )
        row = compiled.contract.one(await executor.run_insert(compiled))
        assert row is not None  # no conflict policy: a missing row already raised
        return row


class RelatedQuery:
    """Operations on the rows one relation links to a single owner row.

    Every operation returns ``None`` when the owner row does not exist.
    """

    def __init__(
        self, repository: GraphRepository, owner_id: Any, relation: Relation
    ) -> None:
        self._repo = repository
        self.owner_id = owner_id
        self.relation = relation
        self.target: EntityType = repository.registry.entity(relation.target)

    async def _load(
        self, executor: StatementExecutor, entity: EntityType, entity_id: Any
    ) -> dict[str, Any] | None:
        if entity_id is None:
            return None
        return await executor.fetch_one(
            select(entity.table).where(entity.primary_key == entity_id)
        )

    async def fetch(
        self,
        where: SelectFilter | None = None,
        *,
        uow: UnitOfWork | None = None,
    ) -> list[dict[str, Any]] | None:
        """Related rows of the owner, narrowed by *where*."""
        relation = self.relation
        async with self._repo.unit(uow) as active:
            executor = active.executor()
            owner = await self._load(executor, self._repo.entity, self.owner_id)
            if owner is None:
                return None
            key = owner.get(relation.source_key.column)
            if key is None:
                return []
            level = self._repo.fetch_planner.level_for(
                relation, relation.name, filter=where
            )
            rows = await executor.fetch_all(level.build([key]))
        for row in rows:
            for name in level.hidden:
                row.pop(name, None)
        return rows

    async def insert(
        self, values: Mapping[str, Any], *, uow: UnitOfWork | None = None
    ) -> dict[str, Any] | None:
        """Insert a related row and link it to the owner."""
        relation = self.relation
        row_values = GraphRepository._column_values(self.target, values)
        async with self._repo.unit(uow) as active:
            executor = active.executor()
            owner = await self._load(executor, self._repo.entity, self.owner_id)
            if owner is None:
                return None
            owner_key = owner[relation.source_key.column]

            if relation.kind is RelationKind.HAS_MANY:
                row_values[relation.target_key.column] = owner_key
                return await self._repo.insert_row(
                    executor, self.target.table, row_values
                )

            row = await self._repo.insert_row(executor, self.target.table, row_values)
            await self._link(executor, owner, row)
            return row

    async def relate(
        self, target_id: Any, *, uow: UnitOfWork | None = None
    ) -> dict[str, Any] | None:
        """Link an existing target row to the owner; return the target row."""
        relation = self.relation
        async with self._repo.unit(uow) as active:
            executor = active.executor()
            owner = await self._load(executor, self._repo.entity, self.owner_id)
            if owner is None:
                return None
            target = await self._load(executor, self.target, target_id)
            if target is None:
                return None

            if relation.kind is RelationKind.HAS_MANY:
                column = relation.target_key.column
                await executor.execute(
                    update(self.target.table)
                    .where(self.target.primary_key == target_id)
                    .values({column: owner[relation.source_key.column]})
                )
                return await self._load(executor, self.target, target_id)

            await self._link(executor, owner, target)
            return target

    async def _link(
        self,
        executor: StatementExecutor,
        owner: Mapping[str, Any],
        target: Mapping[str, Any],
    ) -> None:
        relation = self.relation
        owner_entity = self._repo.entity
        if relation.kind is RelationKind.BELONGS_TO_ONE:
            await executor.execute(
                update(owner_entity.table)
                .where(owner_entity.primary_key == self.owner_id)
                .values(
                    {relation.source_key.column: target[relation.target_key.column]}
                )
            )
            return
        through = relation.through
        assert through is not None  # enforced at registration
        await self._repo.insert_row(
            executor,
            self._repo.registry.table(through.table),
            {
                through.source.column: owner[relation.source_key.column],
                through.target.column: target[relation.target_key.column],
            },
        )
