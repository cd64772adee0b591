"""
Exception handlers for the control surface.

Service errors map to their status codes with the message exposed;
anything unexpected is logged with its traceback and returned as a
generic 500.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from lanlink.errors import LanLinkError

logger = logging.getLogger(__name__)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": True, "status_code": status_code, "message": message},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register global error handlers on the app."""

    @app.exception_handler(LanLinkError)
    async def lanlink_error_handler(request: Request, exc: LanLinkError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "%s: %s | path=%s", type(exc).__name__, exc.message, request.url.path,
                exc_info=exc,
            )
        else:
            logger.warning(
                "%s: %s | path=%s", type(exc).__name__, exc.message, request.url.path
            )
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        logger.warning("HTTP %d: %s | path=%s", exc.status_code, exc.detail, request.url.path)
        message = exc.detail if exc.status_code < 500 else "An internal error occurred"
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(
            "Unhandled exception | path=%s | type=%s", request.url.path, type(exc).__name__
        )
        return _error_response(500, "An unexpected error occurred")
