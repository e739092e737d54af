"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "...", "needs_auth": ...}}``
JSON responses.

Status code mapping:
- ``UnauthenticatedError`` → 401
- ``NotConnectedError`` / ``TokenRefreshError`` → 401 with ``needs_auth: true``
- ``TaskNotFoundError`` / ``ExternalNotFoundError`` → 404
- ``ExternalConflictError`` → 409
- ``MalformedMappingError`` → 422
- ``ExternalTransientError`` / ``TokenExchangeError`` → 502 Bad Gateway
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from parallel_task.api.models import ErrorDetail, ErrorResponse
from parallel_task.calendar.errors import (
    CalendarSyncError,
    ExternalConflictError,
    ExternalNotFoundError,
    ExternalTransientError,
    MalformedMappingError,
    NotConnectedError,
    TaskNotFoundError,
    TokenExchangeError,
    TokenRefreshError,
    UnauthenticatedError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[CalendarSyncError], int] = {
    UnauthenticatedError: 401,
    NotConnectedError: 401,
    TokenRefreshError: 401,
    TaskNotFoundError: 404,
    ExternalNotFoundError: 404,
    ExternalConflictError: 409,
    MalformedMappingError: 422,
    ExternalTransientError: 502,
    TokenExchangeError: 502,
}

_NEEDS_AUTH = (NotConnectedError, TokenRefreshError)


def status_for(exc: CalendarSyncError) -> int:
    """HTTP status for a sync error, resolved along its class hierarchy."""
    for cls in type(exc).__mro__:
        status = _STATUS_BY_ERROR.get(cls)
        if status is not None:
            return status
    return 500


def error_detail(exc: CalendarSyncError) -> ErrorDetail:
    return ErrorDetail(
        code=exc.code,
        message=str(exc),
        needs_auth=isinstance(exc, _NEEDS_AUTH),
        details=exc.details(),
    )


async def _handle_calendar_sync_error(
    request: Request,
    exc: CalendarSyncError,
) -> JSONResponse:
    """Map a ``CalendarSyncError`` onto its status code and error envelope."""
    status = status_for(exc)
    if status >= 500:
        logger.warning(
            "Calendar error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc
        )
    else:
        logger.info("Calendar error on %s %s: %s", request.method, request.url.path, exc)
    body = ErrorResponse(error=error_detail(exc))
    return JSONResponse(status_code=status, content=body.model_dump())


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Exceptions not caught by ``add_exception_handler`` still come back in the
    standard error envelope rather than as a plain-text 500.
    """

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
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(CalendarSyncError, _handle_calendar_sync_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
