"""API error handling: consistent ``{"error": {"code", "message"}}`` responses.

Status code mapping:
- ``MalformedNotificationError`` → 400 Bad Request
- Any other unhandled ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from calsync.api.models import ErrorDetail, ErrorResponse
from calsync.sync.errors import MalformedNotificationError

logger = logging.getLogger(__name__)


async def _handle_malformed_notification(
    request: Request,
    exc: MalformedNotificationError,
) -> JSONResponse:
    logger.info("Rejected malformed notification on %s: %s", request.url.path, exc)
    body = ErrorResponse(error=ErrorDetail(code="MALFORMED_NOTIFICATION", message=str(exc)))
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Converts any exception that escapes the handlers into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(code="INTERNAL_ERROR", message="Internal server error")
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach exception handlers; call from ``create_app()``."""
    app.add_exception_handler(
        MalformedNotificationError,
        _handle_malformed_notification,  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
