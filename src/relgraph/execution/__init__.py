"""Statement execution: executor boundary and unit of work."""

from __future__ import annotations

from .executor import (
    SQLAlchemyStatementExecutor,
    StatementExecutor,
    is_unique_violation,
)
from .uow import SQLAlchemyUnitOfWork, UnitOfWork

__all__ = [
    "SQLAlchemyStatementExecutor",
    "SQLAlchemyUnitOfWork",
    "StatementExecutor",
    "UnitOfWork",
    "is_unique_violation",
]
