"""Exception handlers translating the relgraph taxonomy into HTTP responses."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse

from ...exceptions import (
    CyclicPayloadError,
    ExpressionSyntaxError,
    NotAllowedError,
    PayloadError,
    RelGraphError,
    UniqueViolationError,
    UnknownRelationError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request

logger = logging.getLogger("relgraph.contrib.fastapi")

_STATUS: tuple[tuple[type[RelGraphError], int], ...] = (
    (NotAllowedError, 400),
    (ExpressionSyntaxError, 400),
    (UnknownRelationError, 400),
    (CyclicPayloadError, 400),
    (PayloadError, 400),
    (UniqueViolationError, 409),
)


def status_for(error: RelGraphError) -> int:
    for error_type, status in _STATUS:
        if isinstance(error, error_type):
            return status
    return 500


async def relgraph_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RelGraphError)
    status = status_for(exc)
    if status >= 500:
        logger.error("Unhandled %s on %s: %s", exc.code, request.url.path, exc)
    return JSONResponse(
        status_code=status, content={"error": exc.code, "detail": str(exc)}
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handler for every :class:`RelGraphError` on *app*.

    Example:
        ```python
        app = FastAPI()
        register_exception_handlers(app)
        app.include_router(build_entity_router(people), prefix="/persons")
        ```
    """
    app.add_exception_handler(RelGraphError, relgraph_error_handler)
