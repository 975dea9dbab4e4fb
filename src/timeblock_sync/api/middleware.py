"""API error handling: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``NoConnectionError`` / ``TokenRefreshError`` / other auth errors → 401
- ``CalendarNotSelectedError`` → 409
- ``SyncInProgressError`` → 409
- ``CalendarSyncTokenExpiredError`` → 503
- ``CalendarRequestError`` → 502
- ``HTTPException`` → its own status
- ``ValueError`` → 400
- Any other ``Exception`` → 500
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from timeblock_sync.api.models import ErrorDetail, ErrorResponse
from timeblock_sync.errors import (
    CalendarAuthError,
    CalendarNotSelectedError,
    CalendarRequestError,
    CalendarSyncTokenExpiredError,
    sanitize_error_message,
)
from timeblock_sync.service import SyncInProgressError

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, details=details))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_auth_error(request: Request, exc: CalendarAuthError) -> JSONResponse:
    if isinstance(exc, CalendarNotSelectedError):
        return _error(409, "CALENDAR_NOT_SELECTED", str(exc))
    logger.info("Calendar auth error on %s: %s", request.url.path, type(exc).__name__)
    return _error(401, "RECONNECT_REQUIRED", sanitize_error_message(exc))


async def _handle_sync_in_progress(request: Request, exc: SyncInProgressError) -> JSONResponse:
    return _error(409, "SYNC_IN_PROGRESS", str(exc))


async def _handle_cursor_expired(
    request: Request, exc: CalendarSyncTokenExpiredError
) -> JSONResponse:
    logger.warning("Full resync failed after cursor invalidation: %s", exc)
    return _error(503, "SYNC_RETRY_EXHAUSTED", str(exc))


async def _handle_provider_error(request: Request, exc: CalendarRequestError) -> JSONResponse:
    logger.warning("Google Calendar request failed (%d)", exc.status_code)
    return _error(
        502,
        "PROVIDER_ERROR",
        sanitize_error_message(exc.message),
        details={"provider_status": exc.status_code},
    )


async def _handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    return _error(exc.status_code, "HTTP_ERROR", str(exc.detail))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500."""

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
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(CalendarAuthError, _handle_auth_error)  # type: ignore[arg-type]
    app.add_exception_handler(SyncInProgressError, _handle_sync_in_progress)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarSyncTokenExpiredError, _handle_cursor_expired)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarRequestError, _handle_provider_error)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _handle_http_exception)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
