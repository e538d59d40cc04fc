"""Insert and fetch planners."""

from __future__ import annotations

from .fetch_plan import EagerFetchPlanner, FetchLevel, FetchPlan
from .insert_plan import (
    Attachment,
    Backfill,
    GraphInsertPlanner,
    InsertOperation,
    InsertPlan,
    OperationKind,
)

__all__ = [
    "Attachment",
    "Backfill",
    "EagerFetchPlanner",
    "FetchLevel",
    "FetchPlan",
    "GraphInsertPlanner",
    "InsertOperation",
    "InsertPlan",
    "OperationKind",
]
