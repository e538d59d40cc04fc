"""relgraph: relation-graph inserts and eager fetches over SQLAlchemy Core."""

from __future__ import annotations

from .compiler import (
    CompiledInsert,
    ConflictAction,
    ConflictPolicy,
    ReturnContract,
    chain,
    compile_insert,
    order_by,
    where,
)
from .config import DEFAULT_CONFIG, EngineConfig
from .exceptions import (
    CyclicPayloadError,
    ExpressionSyntaxError,
    NotAllowedError,
    OperationCancelledError,
    PayloadError,
    RelGraphError,
    ReturnContractError,
    SchemaError,
    SessionManagementError,
    StatementError,
    UniqueViolationError,
    UnitOfWorkError,
    UnknownRelationError,
)
from .execution import (
    SQLAlchemyStatementExecutor,
    SQLAlchemyUnitOfWork,
    StatementExecutor,
    UnitOfWork,
)
from .expressions import AllowList, RelationTree, parse_relation_expression
from .planning import (
    EagerFetchPlanner,
    FetchPlan,
    GraphInsertPlanner,
    InsertPlan,
)
from .repository import GraphRepository, RelatedQuery
from .schema import (
    EntityType,
    Relation,
    RelationKind,
    RelationRegistry,
    belongs_to_one,
    has_many,
    many_to_many,
)

__version__ = "0.1.0"

__all__ = [
    # Schema
    "EntityType",
    "Relation",
    "RelationKind",
    "RelationRegistry",
    "belongs_to_one",
    "has_many",
    "many_to_many",
    # Expressions
    "AllowList",
    "RelationTree",
    "parse_relation_expression",
    # Planning
    "EagerFetchPlanner",
    "FetchPlan",
    "GraphInsertPlanner",
    "InsertPlan",
    # Compilation
    "CompiledInsert",
    "ConflictAction",
    "ConflictPolicy",
    "ReturnContract",
    "chain",
    "compile_insert",
    "order_by",
    "where",
    # Execution
    "SQLAlchemyStatementExecutor",
    "SQLAlchemyUnitOfWork",
    "StatementExecutor",
    "UnitOfWork",
    "GraphRepository",
    "RelatedQuery",
    # Configuration
    "DEFAULT_CONFIG",
    "EngineConfig",
    # Exceptions
    "CyclicPayloadError",
    "ExpressionSyntaxError",
    "NotAllowedError",
    "OperationCancelledError",
    "PayloadError",
    "RelGraphError",
    "ReturnContractError",
    "SchemaError",
    "SessionManagementError",
    "StatementError",
    "UniqueViolationError",
    "UnitOfWorkError",
    "UnknownRelationError",
]
