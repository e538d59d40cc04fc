"""Shared fixtures: the Person / Animal / Movie schema on in-memory SQLite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy import JSON, Column, ForeignKey, Integer, MetaData, String, Table
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from relgraph import (
    GraphRepository,
    RelationRegistry,
    SQLAlchemyUnitOfWork,
    belongs_to_one,
    has_many,
    many_to_many,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

person_table = Table(
    "Person",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("parentId", Integer, ForeignKey("Person.id", ondelete="SET NULL")),
    Column("firstName", String(255)),
    Column("lastName", String(255)),
    Column("age", Integer),
    Column("address", JSON),
)

animal_table = Table(
    "Animal",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("ownerId", Integer, ForeignKey("Person.id", ondelete="SET NULL")),
    Column("name", String(255)),
    Column("species", String(255)),
)

movie_table = Table(
    "Movie",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255)),
)

person_movie_table = Table(
    "Person_Movie",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("personId", Integer, ForeignKey("Person.id", ondelete="CASCADE")),
    Column("movieId", Integer, ForeignKey("Movie.id", ondelete="CASCADE")),
)


PERSON_RELATIONS = {
    "pets": has_many("Animal", "Person.id", "Animal.ownerId"),
    "movies": many_to_many(
        "Movie",
        "Person.id",
        ("Person_Movie.personId", "Person_Movie.movieId"),
        "Movie.id",
    ),
    "children": has_many("Person", "Person.id", "Person.parentId"),
    "parent": belongs_to_one("Person", "Person.parentId", "Person.id"),
}

ANIMAL_RELATIONS = {
    "owner": belongs_to_one("Person", "Animal.ownerId", "Person.id"),
}

MOVIE_RELATIONS = {
    "actors": many_to_many(
        "Person",
        "Movie.id",
        ("Person_Movie.movieId", "Person_Movie.personId"),
        "Person.id",
    ),
}

INSERT_ALLOW = "[pets, children.[pets, movies], movies, parent]"
EAGER_ALLOW = "[pets, children.[pets, movies], movies]"


def build_registry() -> RelationRegistry:
    registry = RelationRegistry(metadata)
    registry.register("Person", PERSON_RELATIONS)
    registry.register("Animal", ANIMAL_RELATIONS)
    registry.register("Movie", MOVIE_RELATIONS)
    registry.freeze()
    return registry


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def registry() -> RelationRegistry:
    return build_registry()


@pytest.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with eng.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as sess:
        yield sess


@pytest.fixture
def uow_factory(session):
    return lambda: SQLAlchemyUnitOfWork(session=session)


@pytest.fixture
def people(registry, uow_factory) -> GraphRepository:
    return GraphRepository(registry, "Person", uow_factory=uow_factory)


@pytest.fixture
def movies(registry, uow_factory) -> GraphRepository:
    return GraphRepository(registry, "Movie", uow_factory=uow_factory)


@pytest.fixture
def animals(registry, uow_factory) -> GraphRepository:
    return GraphRepository(registry, "Animal", uow_factory=uow_factory)
