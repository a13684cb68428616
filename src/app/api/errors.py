"""Exception handlers rendering every error as ``{"status": "error", "message": ...}``.

- AppError subclasses: their own status_code (400 / 404 / 502)
- HTTPException: its status code and detail
- Request validation: 400 with a flattened message
- Anything else: 500, logged with traceback
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from src.app.core.errors import AppError, UpstreamError

logger = structlog.get_logger(__name__)


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    """Build the error envelope."""
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "message": message, **extra},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle application exceptions by their declared status code."""
    log_method = logger.error if isinstance(exc, UpstreamError) else logger.info
    log_method(
        "api.app_error",
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        path=request.url.path,
        message=exc.message,
    )
    return error_response(exc.status_code, exc.message)


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail))


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Flatten FastAPI validation errors into one readable message."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))

    logger.info("api.validation_error", path=request.url.path, errors=problems)
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        "; ".join(problems) or "Invalid request",
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("api.unhandled_error", path=request.url.path, error=str(exc))
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all handlers to ``app``."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
