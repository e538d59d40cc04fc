"""FastAPI integration for relgraph."""

from .handlers import register_exception_handlers, relgraph_error_handler, status_for
from .router import build_entity_router, query_filters

__all__: list[str] = [
    # Error handling
    "register_exception_handlers",
    "relgraph_error_handler",
    "status_for",
    # Routes
    "build_entity_router",
    "query_filters",
]
