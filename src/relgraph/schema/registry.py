"""RelationRegistry: process-wide, read-only relation schema."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from ..exceptions import SchemaError, UnknownRelationError
from .types import EntityType, Relation, RelationKind

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from sqlalchemy import Column, MetaData, Table

    from ..expressions.tree import RelationNode, RelationTree
    from .types import ColumnRef

logger = logging.getLogger("relgraph.registry")


class RelationRegistry:
    """
    Holds the declared relations of every entity type.

    Entity types are backed by the tables of one ``MetaData``; the declared
    join columns must mirror that DDL or registration fails::

        registry = RelationRegistry(metadata)
        registry.register("Person", {
            "pets": has_many("Animal", "Person.id", "Animal.ownerId"),
        })
        registry.register("Animal", {})
        registry.freeze()

    After :meth:`freeze` the registry is immutable and needs no locking.
    """

    def __init__(self, metadata: MetaData) -> None:
        self._metadata = metadata
        self._entities: dict[str, EntityType] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, entity: object) -> bool:
        return entity in self._entities

    def __iter__(self) -> Iterator[EntityType]:
        return iter(self._entities.values())

    # -- registration -------------------------------------------------------

    def register(self, entity: str, relations: Mapping[str, Relation]) -> EntityType:
        """Validate and store the relation set of *entity*."""
        if self._frozen:
            raise SchemaError(f"Registry is frozen; cannot register {entity!r}")
        if entity in self._entities:
            raise SchemaError(f"Entity {entity!r} is already registered")

        table = self._table(entity, "entity")
        named: dict[str, Relation] = {}
        for name, relation in relations.items():
            if not name or not name.isidentifier():
                raise SchemaError(f"{entity}: invalid relation name {name!r}")
            if name in table.c:
                raise SchemaError(f"{entity}: relation {name!r} shadows a column")
            self._validate_relation(entity, name, relation)
            named[name] = relation.named(name)

        entity_type = EntityType(entity, table, MappingProxyType(named))
        # the primary key is required by every planner
        _ = entity_type.primary_key
        self._entities[entity] = entity_type
        logger.debug("Registered %s with relations %s", entity, sorted(named))
        return entity_type

    def freeze(self) -> None:
        """Finish startup: every relation target must be registered."""
        for entity_type in self._entities.values():
            for relation in entity_type.relations.values():
                if relation.target not in self._entities:
                    raise SchemaError(
                        f"{entity_type.name}.{relation.name} targets unregistered "
                        f"entity {relation.target!r}"
                    )
        self._frozen = True
        logger.info("Relation registry frozen with %d entities", len(self._entities))

    def require_frozen(self) -> None:
        """Raise :class:`SchemaError` unless :meth:`freeze` has run."""
        if not self._frozen:
            raise SchemaError(
                "Registry is not frozen; call freeze() after registering every entity"
            )

    # -- lookup -------------------------------------------------------------

    def entity(self, name: str) -> EntityType:
        try:
            return self._entities[name]
        except KeyError:
            raise SchemaError(f"Entity {name!r} is not registered") from None

    def table(self, name: str) -> Table:
        """Return any table of the schema (entity or through table)."""
        return self._table(name, "schema")

    def resolve(self, entity: str, relation_name: str) -> Relation:
        """Return the relation *relation_name* of *entity*."""
        relations = self.entity(entity).relations
        try:
            return relations[relation_name]
        except KeyError:
            raise UnknownRelationError(entity, relation_name) from None

    def resolve_tree(self, entity: str, tree: RelationTree) -> None:
        """Check every node of *tree* against the schema, rooted at *entity*."""
        self.entity(entity)
        for node in tree.children.values():
            self._resolve_node(entity, node)

    def _resolve_node(self, entity: str, node: RelationNode) -> None:
        relation = self.resolve(entity, node.name)
        self.entity(relation.target)
        for child in node.children.values():
            self._resolve_node(relation.target, child)

    # -- validation ---------------------------------------------------------

    def _table(self, name: str, role: str) -> Table:
        table = self._metadata.tables.get(name)
        if table is None:
            raise SchemaError(f"Unknown {role} table {name!r}")
        return table

    def _column(self, ref: ColumnRef, expected_table: str, where: str) -> Column[Any]:
        if ref.table != expected_table:
            raise SchemaError(
                f"{where}: join column {ref} must belong to table {expected_table!r}"
            )
        table = self._table(ref.table, "join")
        if ref.column not in table.c:
            raise SchemaError(
                f"{where}: table {ref.table!r} has no column {ref.column!r}"
            )
        return table.c[ref.column]

    def _validate_relation(self, entity: str, name: str, relation: Relation) -> None:
        where = f"{entity}.{name}"
        self._table(relation.target, "target entity")
        source = self._column(relation.source_key, entity, where)
        target = self._column(relation.target_key, relation.target, where)

        if relation.kind is RelationKind.HAS_MANY:
            _check_foreign_key(target, source, where)
        elif relation.kind is RelationKind.BELONGS_TO_ONE:
            _check_foreign_key(source, target, where)
        else:
            through = relation.through
            if through is None:
                raise SchemaError(f"{where}: ManyToMany relation needs a through table")
            if through.source.table != through.target.table:
                raise SchemaError(
                    f"{where}: through columns {through.source} and "
                    f"{through.target} must share one table"
                )
            through_source = self._column(through.source, through.table, where)
            through_target = self._column(through.target, through.table, where)
            _check_foreign_key(through_source, source, where)
            _check_foreign_key(through_target, target, where)


def _check_foreign_key(
    referencing: Column[Any], referenced: Column[Any], where: str
) -> None:
    """A declared foreign key must point at the declared counterpart column."""
    if not referencing.foreign_keys:
        return
    if not any(fk.column is referenced for fk in referencing.foreign_keys):
        raise SchemaError(
            f"{where}: {referencing.table.name}.{referencing.key} does not "
            f"reference {referenced.table.name}.{referenced.key}"
        )
