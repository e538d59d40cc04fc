"""
Entity router: HTTP routes over one :class:`GraphRepository`.

For a repository of ``Person`` mounted at ``/persons``:

- ``POST /persons``: graph insert, limited by ``allow_insert``
- ``GET /persons``: list; ``?eager=`` relations, ``?order=`` columns, column
  parameters filter (``age__gte=18``, ``firstName__like=Jen%``), see
  :func:`query_filters`
- ``PATCH /persons/{id}``: patch and fetch
- ``DELETE /persons/{id}``: delete
- ``POST /persons/{id}/{relation}``: insert a related row
- ``GET /persons/{id}/{relation}``: list related rows
- ``POST /persons/{id}/{relation}/relate``: link an existing row given as
  ``{"id": ...}``

Missing rows answer 404.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Body, HTTPException, Request

from ...compiler.filters import chain, order_by, where
from ...expressions.allow import AllowList

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from sqlalchemy import Select

    from ...expressions.tree import RelationTree
    from ...repository import GraphRepository
    from ...schema.types import EntityType

    SelectFilter = Callable[[Select[Any]], Select[Any]]

_RESERVED_PARAMS = frozenset({"eager", "order"})
_QUERY_OPERATORS = frozenset({"eq", "ne", "gt", "gte", "lt", "lte", "like", "ilike"})
_PATTERN_OPERATORS = frozenset({"like", "ilike"})
_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{what} not found")


def _coerce_value(entity: EntityType, name: str, raw: str) -> Any:
    """Convert a query-string value to the Python type of column *name*."""
    try:
        python_type = entity.table.c[name].type.python_type
    except NotImplementedError:
        return raw
    if python_type is bool:
        lowered = raw.lower()
        if lowered in _TRUE or lowered in _FALSE:
            return lowered in _TRUE
    elif python_type in (int, float, str):
        try:
            return python_type(raw)
        except ValueError:
            pass
    else:
        return raw
    raise HTTPException(
        status_code=400,
        detail=f"Invalid value {raw!r} for {entity.name}.{name}",
    )


def query_filters(
    entity: EntityType, params: Iterable[tuple[str, str]]
) -> list[SelectFilter]:
    """Column filters from query parameters.

    ``name=value`` compares for equality; ``name__op=value`` applies one of
    ``eq``, ``ne``, ``gt``, ``gte``, ``lt``, ``lte``, ``like`` or ``ilike``
    (``age__gte=18``, ``firstName__like=Jen%``). Values are converted to the
    column's type. Parameters naming no column are ignored.
    """
    conditions: list[SelectFilter] = []
    for key, raw in params:
        if key in _RESERVED_PARAMS:
            continue
        name, _, op = key.partition("__")
        op = op or "eq"
        if op not in _QUERY_OPERATORS or not entity.has_column(name):
            continue
        value = raw if op in _PATTERN_OPERATORS else _coerce_value(entity, name, raw)
        conditions.append(where(name, op, value))
    return conditions


def _coerce_id(entity: EntityType, raw: Any) -> Any:
    """Convert a path/body id to the primary key's Python type, or 404."""
    try:
        python_type = entity.primary_key.type.python_type
    except NotImplementedError:
        return raw
    if isinstance(raw, python_type):
        return raw
    try:
        return python_type(raw)
    except (TypeError, ValueError) as err:
        raise _not_found(entity.name) from err


def build_entity_router(
    repository: GraphRepository,
    *,
    allow_insert: str | RelationTree | None = None,
    allow_eager: str | RelationTree | None = None,
    eager_filters: Mapping[str, SelectFilter] | None = None,
) -> APIRouter:
    """Build the routes for *repository*'s entity.

    Args:
        repository: Repository with a unit-of-work factory.
        allow_insert: Relation paths a graph insert may nest.
        allow_eager: Relation paths a list call may eager-load.
        eager_filters: Filters for eager relations, keyed by path.
    """
    router = APIRouter()
    entity = repository.entity
    insert_allow = AllowList(allow_insert)
    eager_allow = AllowList(allow_eager)

    def related_entity(relation: str) -> EntityType:
        target = repository.registry.resolve(entity.name, relation).target
        return repository.registry.entity(target)

    @router.post("")
    async def create(payload: Any = Body(...)) -> Any:
        return await repository.insert_graph(payload, allow=insert_allow)

    @router.get("")
    async def list_entities(
        request: Request, eager: str | None = None, order: str | None = None
    ) -> list[dict[str, Any]]:
        conditions = query_filters(entity, request.query_params.multi_items())
        if order:
            conditions.append(order_by(*(c.strip() for c in order.split(","))))
        return await repository.fetch(
            chain(*conditions),
            eager=eager,
            allow=eager_allow,
            filters=eager_filters,
        )

    @router.patch("/{entity_id}")
    async def patch_entity(
        entity_id: str, patch: dict[str, Any] = Body(...)
    ) -> dict[str, Any]:
        row = await repository.patch_and_fetch_by_id(
            _coerce_id(entity, entity_id), patch
        )
        if row is None:
            raise _not_found(entity.name)
        return row

    @router.delete("/{entity_id}")
    async def delete_entity(entity_id: str) -> dict[str, Any]:
        deleted = await repository.delete_by_id(_coerce_id(entity, entity_id))
        if not deleted:
            raise _not_found(entity.name)
        return {}

    @router.post("/{entity_id}/{relation}")
    async def create_related(
        entity_id: str, relation: str, values: dict[str, Any] = Body(...)
    ) -> dict[str, Any]:
        insert_allow.check_path(relation)
        row = await repository.related(
            _coerce_id(entity, entity_id), relation
        ).insert(values)
        if row is None:
            raise _not_found(entity.name)
        return row

    @router.get("/{entity_id}/{relation}")
    async def list_related(
        request: Request, entity_id: str, relation: str, order: str | None = None
    ) -> list[dict[str, Any]]:
        eager_allow.check_path(relation)
        target = related_entity(relation)
        conditions = query_filters(target, request.query_params.multi_items())
        if order:
            conditions.append(order_by(*(c.strip() for c in order.split(","))))
        rows = await repository.related(
            _coerce_id(entity, entity_id), relation
        ).fetch(chain(*conditions))
        if rows is None:
            raise _not_found(entity.name)
        return rows

    @router.post("/{entity_id}/{relation}/relate")
    async def relate(
        entity_id: str, relation: str, body: dict[str, Any] = Body(...)
    ) -> dict[str, Any]:
        insert_allow.check_path(relation)
        target = related_entity(relation)
        if "id" not in body:
            raise HTTPException(status_code=400, detail="Body must carry an 'id'")
        row = await repository.related(
            _coerce_id(entity, entity_id), relation
        ).relate(_coerce_id(target, body["id"]))
        if row is None:
            raise _not_found(target.name)
        return row

    return router
