"""
Integration tests for GraphRepository on in-memory SQLite.

Covers:
- Graph insert returning the inserted graph with generated keys
- All-or-nothing transactions (mid-plan failure, cancellation)
- Eager fetch: one query per relation level, grouping, filters
- Conflict policies and the single-row / multi-row return shapes
- Id-scoped operations and not-found results
- Related-query handles (insert, relate, fetch)
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from conftest import EAGER_ALLOW, INSERT_ALLOW, metadata
from sqlalchemy import event, func, select

from relgraph import (
    ConflictPolicy,
    CyclicPayloadError,
    GraphRepository,
    NotAllowedError,
    OperationCancelledError,
    PayloadError,
    ReturnContractError,
    SQLAlchemyUnitOfWork,
    UniqueViolationError,
    UnitOfWorkError,
    order_by,
    parse_relation_expression,
    where,
)

JENNIFER = {
    "firstName": "Jennifer",
    "lastName": "Lawrence",
    "age": 24,
    "address": {"street": "Somestreet 10", "zipCode": "123456", "city": "Tampere"},
    "pets": [
        {"name": "Fluffy", "species": "dog"},
        {"name": "Balto", "species": "cat"},
    ],
    "movies": [{"name": "Silver Linings Playbook"}],
    "children": [
        {
            "firstName": "Kid",
            "age": 2,
            "pets": [
                {"name": "Rex", "species": "dog"},
                {"name": "Tom", "species": "cat"},
            ],
            "movies": [{"name": "Kids Movie"}],
        }
    ],
}


async def _count(session, table_name: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(metadata.tables[table_name])
    )
    return int(result.scalar_one())


@pytest.fixture
def selects(engine) -> list[str]:
    """SELECT statements issued on the engine after the fixture is requested."""
    seen: list[str] = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith("SELECT"):
            seen.append(statement)

    event.listen(engine.sync_engine, "before_cursor_execute", record)
    yield seen
    event.remove(engine.sync_engine, "before_cursor_execute", record)


# ---------------------------------------------------------------------------
# Graph insert
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_insert_graph_returns_graph_with_keys(people, session):
    person = await people.insert_graph(JENNIFER, allow=INSERT_ALLOW)

    assert isinstance(person["id"], int)
    assert person["firstName"] == "Jennifer"
    assert person["address"]["city"] == "Tampere"
    assert [p["name"] for p in person["pets"]] == ["Fluffy", "Balto"]
    assert all(p["ownerId"] == person["id"] for p in person["pets"])
    assert person["movies"][0]["name"] == "Silver Linings Playbook"

    kid = person["children"][0]
    assert kid["parentId"] == person["id"]
    assert all(p["ownerId"] == kid["id"] for p in kid["pets"])

    assert await _count(session, "Person") == 2
    assert await _count(session, "Animal") == 4
    assert await _count(session, "Movie") == 2
    assert await _count(session, "Person_Movie") == 2


@pytest.mark.asyncio
async def test_insert_graph_belongs_to_one(people):
    person = await people.insert_graph(
        {"firstName": "Jennifer", "parent": {"firstName": "Gary"}},
        allow=INSERT_ALLOW,
    )
    assert person["parent"]["firstName"] == "Gary"
    assert person["parentId"] == person["parent"]["id"]


@pytest.mark.asyncio
async def test_insert_graph_list_payload(people):
    result = await people.insert_graph(
        [{"firstName": "A"}, {"firstName": "B", "pets": [{"name": "x"}]}]
    )
    assert isinstance(result, list)
    assert [p["firstName"] for p in result] == ["A", "B"]
    assert result[1]["pets"][0]["ownerId"] == result[1]["id"]


@pytest.mark.asyncio
async def test_disallowed_graph_issues_no_statements(people, session):
    with pytest.raises(NotAllowedError) as exc_info:
        await people.insert_graph(
            {"firstName": "x", "children": [{"children": [{"firstName": "y"}]}]},
            allow=INSERT_ALLOW,
        )
    assert exc_info.value.path == "children.children"
    assert await _count(session, "Person") == 0


@pytest.mark.asyncio
async def test_cyclic_payload_inserts_nothing(people, session):
    record: dict[str, Any] = {"firstName": "Loop"}
    record["children"] = [record]
    with pytest.raises(CyclicPayloadError):
        await people.insert_graph(record)
    assert await _count(session, "Person") == 0


@pytest.mark.asyncio
async def test_mid_plan_failure_rolls_back_everything(people, session):
    await people.insert({"id": 100, "firstName": "Existing"})

    with pytest.raises(UniqueViolationError):
        await people.insert_graph(
            {
                "firstName": "New",
                "pets": [{"name": "Fluffy"}],
                "children": [{"id": 100, "firstName": "Duplicate"}],
            }
        )

    assert await _count(session, "Person") == 1
    assert await _count(session, "Animal") == 0


@pytest.mark.asyncio
async def test_cancelled_insert_rolls_back(people, session):
    cancel = asyncio.Event()
    cancel.set()
    with pytest.raises(OperationCancelledError):
        await people.insert_graph(JENNIFER, cancel=cancel)
    assert await _count(session, "Person") == 0


@pytest.mark.asyncio
async def test_caller_owned_unit_of_work(people, movies, session):
    async with SQLAlchemyUnitOfWork(session=session) as uow:
        await people.insert({"id": 1, "firstName": "A"}, uow=uow)
        await movies.insert({"id": 1, "name": "M"}, uow=uow)
    assert await _count(session, "Person") == 1
    assert await _count(session, "Movie") == 1

    with pytest.raises(RuntimeError):
        async with SQLAlchemyUnitOfWork(session=session) as uow:
            await people.insert({"id": 2, "firstName": "B"}, uow=uow)
            raise RuntimeError("abort")
    assert await _count(session, "Person") == 1


@pytest.mark.asyncio
async def test_repository_without_unit_of_work(registry):
    repo = GraphRepository(registry, "Person")
    with pytest.raises(UnitOfWorkError):
        await repo.fetch()


# ---------------------------------------------------------------------------
# Eager fetch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_eager_fetch_nests_every_level(people, selects):
    await people.insert_graph(JENNIFER)
    await people.insert_graph({"firstName": "Lonely"})
    selects.clear()

    rows = await people.fetch(
        where("parentId", None, skip_none=False),
        eager="[pets, children.[pets, movies], movies]",
        allow=EAGER_ALLOW,
        filters={
            "pets": order_by("name"),
            "children.pets": where("species", "dog"),
        },
    )

    # root + pets + children + movies + children.pets + children.movies
    assert len(selects) == 6

    by_name = {r["firstName"]: r for r in rows}
    assert set(by_name) == {"Jennifer", "Lonely"}

    jennifer = by_name["Jennifer"]
    assert [p["name"] for p in jennifer["pets"]] == ["Balto", "Fluffy"]
    assert [m["name"] for m in jennifer["movies"]] == ["Silver Linings Playbook"]
    kid = jennifer["children"][0]
    assert [p["name"] for p in kid["pets"]] == ["Rex"]
    assert [m["name"] for m in kid["movies"]] == ["Kids Movie"]
    assert all("_rg_owner" not in m for m in kid["movies"])

    lonely = by_name["Lonely"]
    assert lonely["pets"] == []
    assert lonely["children"] == []
    assert lonely["movies"] == []


@pytest.mark.asyncio
async def test_parsed_tree_is_reusable_across_fetches(people):
    await people.insert_graph(JENNIFER)
    eager = parse_relation_expression("children.pets")
    jennifer = where("firstName", "Jennifer")

    filtered = await people.fetch(
        jennifer, eager=eager, filters={"children.pets": where("species", "dog")}
    )
    assert [p["name"] for p in filtered[0]["children"][0]["pets"]] == ["Rex"]

    rows = await people.fetch(jennifer, eager=eager)
    pets = rows[0]["children"][0]["pets"]
    assert sorted(p["name"] for p in pets) == ["Rex", "Tom"]


@pytest.mark.asyncio
async def test_query_count_does_not_grow_with_rows(people, selects):
    for i in range(5):
        await people.insert_graph(
            {"firstName": f"P{i}", "pets": [{"name": f"pet{i}"}]}
        )
    selects.clear()

    rows = await people.fetch(eager="pets")
    assert len(rows) == 5
    assert len(selects) == 2


@pytest.mark.asyncio
async def test_eager_belongs_to_one(people, animals):
    owner = await people.insert_graph({"firstName": "Owner", "pets": [{"name": "a"}]})
    await animals.insert({"name": "stray"})

    rows = await animals.fetch(eager="owner", filters=None)
    by_name = {r["name"]: r for r in rows}
    assert by_name["a"]["owner"]["id"] == owner["id"]
    assert by_name["stray"]["owner"] is None


@pytest.mark.asyncio
async def test_eager_fetch_skips_levels_without_keys(people, selects):
    selects.clear()
    rows = await people.fetch(eager="[pets, children.pets]")
    assert rows == []
    assert len(selects) == 1


@pytest.mark.asyncio
async def test_eager_fetch_rejects_disallowed(people, selects):
    selects.clear()
    with pytest.raises(NotAllowedError):
        await people.fetch(eager="parent", allow=EAGER_ALLOW)
    assert selects == []


@pytest.mark.asyncio
async def test_find_by_id(people):
    person = await people.insert_graph(JENNIFER)
    found = await people.find_by_id(person["id"], eager="children.pets")
    assert found is not None
    assert found["children"][0]["pets"][0]["name"] == "Rex"
    assert await people.find_by_id(9999) is None
    assert await people.find_by_id(None) is None


# ---------------------------------------------------------------------------
# Conflict policies
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ignore_conflict_return_shapes(movies):
    first = await movies.insert({"id": 1, "name": "Initial name"})
    assert first == {"id": 1, "name": "Initial name"}

    ignored = await movies.insert(
        {"id": 1, "name": "Another name"}, on_conflict=ConflictPolicy.ignore()
    )
    assert ignored is None

    none_returned = await movies.insert_returning(
        [{"id": 1, "name": "Another name"}], on_conflict=ConflictPolicy.ignore()
    )
    assert none_returned == []

    stored = await movies.find_by_id(1)
    assert stored == {"id": 1, "name": "Initial name"}


@pytest.mark.asyncio
async def test_ignore_conflict_returns_only_new_rows(movies):
    await movies.insert({"id": 1, "name": "Initial name"})
    rows = await movies.insert_returning(
        [{"id": 1, "name": "dup"}, {"id": 2, "name": "fresh"}],
        on_conflict=ConflictPolicy.ignore(),
    )
    assert rows == [{"id": 2, "name": "fresh"}]


@pytest.mark.asyncio
async def test_merge_conflict_overwrites(movies):
    await movies.insert({"id": 1, "name": "Initial name"})
    merged = await movies.insert(
        {"id": 1, "name": "Another name"}, on_conflict=ConflictPolicy.merge_on()
    )
    assert merged == {"id": 1, "name": "Another name"}
    assert await movies.find_by_id(1) == {"id": 1, "name": "Another name"}


@pytest.mark.asyncio
async def test_plain_duplicate_is_unique_violation(movies):
    await movies.insert({"id": 1, "name": "Initial name"})
    with pytest.raises(UniqueViolationError):
        await movies.insert({"id": 1, "name": "Another name"})
    assert await movies.find_by_id(1) == {"id": 1, "name": "Initial name"}


@pytest.mark.asyncio
async def test_suppressed_graph_root(people):
    await people.insert({"id": 7, "firstName": "Seven"})

    result = await people.insert_graph(
        {"id": 7, "firstName": "Again"}, on_conflict=ConflictPolicy.ignore()
    )
    assert result is None

    with pytest.raises(ReturnContractError):
        await people.insert_graph(
            {"id": 7, "pets": [{"name": "orphan"}]},
            on_conflict=ConflictPolicy.ignore(),
        )


@pytest.mark.asyncio
async def test_flat_insert_rejects_relation_keys(people):
    with pytest.raises(PayloadError):
        await people.insert({"firstName": "x", "pets": []})


# ---------------------------------------------------------------------------
# Patch / delete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_patch_and_fetch(people):
    person = await people.insert({"firstName": "Jen", "age": 23})
    patched = await people.patch_and_fetch_by_id(person["id"], {"age": 24})
    assert patched == {**person, "age": 24}

    assert await people.patch_and_fetch_by_id(9999, {"age": 1}) is None
    with pytest.raises(PayloadError):
        await people.patch_and_fetch_by_id(person["id"], {"pets": []})


@pytest.mark.asyncio
async def test_delete_by_id(people):
    person = await people.insert({"firstName": "Gone"})
    assert await people.delete_by_id(person["id"]) == 1
    assert await people.delete_by_id(person["id"]) == 0
    assert await people.find_by_id(person["id"]) is None


# ---------------------------------------------------------------------------
# Related queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_related_has_many(people):
    person = await people.insert({"firstName": "Owner"})
    pets = people.related(person["id"], "pets")

    pet = await pets.insert({"name": "Rex", "species": "dog"})
    await pets.insert({"name": "Tom", "species": "cat"})
    assert pet["ownerId"] == person["id"]

    dogs = await pets.fetch(where("species", "dog"))
    assert [p["name"] for p in dogs] == ["Rex"]


@pytest.mark.asyncio
async def test_related_many_to_many(people, movies):
    person = await people.insert({"firstName": "Actor"})
    movie = await people.related(person["id"], "movies").insert({"name": "Joy"})
    assert movie["name"] == "Joy"

    other = await movies.insert({"name": "Passengers"})
    actor = await movies.related(other["id"], "actors").relate(person["id"])
    assert actor["id"] == person["id"]

    films = await people.related(person["id"], "movies").fetch(order_by("name"))
    assert films == [
        {"id": movie["id"], "name": "Joy"},
        {"id": other["id"], "name": "Passengers"},
    ]


@pytest.mark.asyncio
async def test_related_relate_has_many(people, animals):
    person = await people.insert({"firstName": "Adopter"})
    stray = await animals.insert({"name": "Stray"})

    adopted = await people.related(person["id"], "pets").relate(stray["id"])
    assert adopted["ownerId"] == person["id"]


@pytest.mark.asyncio
async def test_related_belongs_to_one(people):
    child = await people.insert({"firstName": "Kid"})
    parent = await people.related(child["id"], "parent").insert({"firstName": "Mom"})
    assert (await people.find_by_id(child["id"]))["parentId"] == parent["id"]
    assert await people.related(child["id"], "parent").fetch() == [parent]

    dad = await people.insert({"firstName": "Dad"})
    await people.related(child["id"], "parent").relate(dad["id"])
    assert (await people.find_by_id(child["id"]))["parentId"] == dad["id"]


@pytest.mark.asyncio
async def test_related_missing_owner_or_target(people):
    assert await people.related(404, "pets").fetch() is None
    assert await people.related(404, "pets").insert({"name": "x"}) is None
    assert await people.related(404, "movies").relate(1) is None

    person = await people.insert({"firstName": "Real"})
    assert await people.related(person["id"], "movies").relate(404) is None
    assert await people.related(person["id"], "parent").fetch() == []
