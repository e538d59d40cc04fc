"""Exception taxonomy for the relation-graph engine."""

from __future__ import annotations


class RelGraphError(Exception):
    """Root exception for the relgraph package.

    ``code`` is the taxonomy name surfaced at the boundary layer.
    """

    code = "RelGraphError"


# ── Planning-time errors (raised before any statement runs) ──────────


class SchemaError(RelGraphError):
    """Raised when the relation schema is invalid or used before it is ready."""

    code = "SchemaError"


class ExpressionSyntaxError(RelGraphError):
    """Raised when a relation expression is malformed."""

    code = "SyntaxError"

    def __init__(self, expression: str, position: int, reason: str) -> None:
        self.expression = expression
        self.position = position
        self.reason = reason
        super().__init__(
            f"Invalid relation expression {expression!r} at position "
            f"{position}: {reason}"
        )


class NotAllowedError(RelGraphError):
    """Raised when a relation path is outside the caller's allow-list."""

    code = "NotAllowedError"

    def __init__(self, path: str, message: str | None = None) -> None:
        self.path = path
        super().__init__(message or f"Relation path {path!r} is not allowed")


class UnknownRelationError(RelGraphError):
    """Raised when a path references a relation the entity does not declare."""

    code = "UnknownRelationError"

    def __init__(self, entity: str, relation: str) -> None:
        self.entity = entity
        self.relation = relation
        super().__init__(f"{entity} has no relation named {relation!r}")


class PayloadError(RelGraphError):
    """Raised when a payload has the wrong shape for its entity or relation."""

    code = "PayloadError"


class CyclicPayloadError(RelGraphError):
    """Raised when a graph payload nests itself (or nests too deeply)."""

    code = "CyclicPayloadError"

    def __init__(self, path: str, message: str | None = None) -> None:
        self.path = path
        super().__init__(
            message or f"Graph payload node reappears as its own descendant at {path!r}"
        )


# ── Execution-time errors ────────────────────────────────────────────


class StatementError(RelGraphError):
    """Raised when the executor fails to run a statement."""

    code = "StatementError"


class UniqueViolationError(StatementError):
    """Raised when a plain insert collides with an existing key."""

    code = "UniqueViolation"


class ReturnContractError(StatementError):
    """Raised when an insert without a conflict policy returned no row."""

    code = "ReturnContractError"


class OperationCancelledError(RelGraphError):
    """Raised when a caller-supplied cancellation token fires mid-plan."""

    code = "OperationCancelled"


class UnitOfWorkError(RelGraphError):
    """Raised when Unit of Work operations fail."""

    code = "UnitOfWorkError"


class SessionManagementError(UnitOfWorkError):
    """Raised when session creation or management fails."""

    code = "SessionManagementError"


__all__: list[str] = [
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
