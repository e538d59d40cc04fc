import pytest

pytest.importorskip("pytest_archon")

from pytest_archon import archrule  # noqa: E402


def test_schema_independence() -> None:
    """
    The relation schema is the foundation: it must not reach up into the
    planners, the executor or the repository.
    """
    (
        archrule("schema_is_independent")
        .match("relgraph.schema*")
        .should_not_import("relgraph.planning*")
        .should_not_import("relgraph.execution*")
        .should_not_import("relgraph.repository")
        .should_not_import("relgraph.contrib*")
        .check("relgraph", only_direct_imports=True)
    )


def test_expressions_are_pure() -> None:
    """
    Relation expressions are plain text and trees; they know nothing of
    tables or statements.
    """
    (
        archrule("expressions_are_pure")
        .match("relgraph.expressions*")
        .should_not_import("relgraph.schema*")
        .should_not_import("relgraph.compiler*")
        .should_not_import("relgraph.execution*")
        .check("relgraph", only_direct_imports=True, skip_type_checking=True)
    )


def test_planning_issues_no_statements() -> None:
    """
    Planners build plans only; running them is the repository's job.
    """
    (
        archrule("planning_issues_no_statements")
        .match("relgraph.planning*")
        .should_not_import("relgraph.execution*")
        .should_not_import("relgraph.repository")
        .should_not_import("relgraph.contrib*")
        .check("relgraph", only_direct_imports=True)
    )


def test_compiler_layering() -> None:
    """
    The insert compiler turns one insert into one statement; it must not
    depend on planning or execution.
    """
    (
        archrule("compiler_layering")
        .match("relgraph.compiler*")
        .should_not_import("relgraph.planning*")
        .should_not_import("relgraph.execution*")
        .should_not_import("relgraph.repository")
        .check("relgraph", only_direct_imports=True)
    )


def test_web_framework_stays_in_contrib() -> None:
    """
    Only the contrib package may import FastAPI; the engine must install
    without it.
    """
    (
        archrule("web_framework_in_contrib")
        .match("relgraph*")
        .exclude("relgraph.contrib*")
        .should_not_import("fastapi*")
        .should_not_import("starlette*")
        .check("relgraph", only_direct_imports=True)
    )
