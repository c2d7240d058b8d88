"""Error handling and consistent error response format."""

import logging
import uuid
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import DBAPIError

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Error response envelope.

    Format: {error_code, message, details, request_id}
    """

    error_code: str
    message: str
    details: Any | None = None
    request_id: str | None = None


def get_request_id(request: Request) -> str:
    """Get request ID from request state or generate new one."""
    if hasattr(request.state, "request_id"):
        return request.state.request_id
    return str(uuid.uuid4())


def _error_response(request: Request, status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error_code=code,
            message=message,
            details=details,
            request_id=get_request_id(request),
        ).model_dump(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors (422)."""
    details = [
        {
            "field": ".".join(str(loc) for loc in error.get("loc", [])),
            "issue": error.get("msg", "Validation error"),
            "type": error.get("type", "validation_error"),
        }
        for error in exc.errors()
    ]
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "VALIDATION_ERROR",
        "Invalid request data",
        details,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions."""
    from app.core.app_exceptions import AppError

    if isinstance(exc, AppError):
        return _error_response(request, exc.status_code, exc.code, exc.message, exc.details)

    code = "HTTP_ERROR"
    details = None
    if isinstance(exc.detail, dict):
        code = exc.detail.get("code", code)
        message = exc.detail.get("message", "An error occurred")
        details = exc.detail.get("details")
    else:
        message = str(exc.detail)

    return _error_response(request, exc.status_code, code, message, details)


async def store_unavailable_handler(request: Request, exc: DBAPIError) -> JSONResponse:
    """Store connectivity failures abort the whole operation (503)."""
    logger.error(
        "Store unavailable",
        extra={"request_id": get_request_id(request), "path": request.url.path},
        exc_info=exc,
    )
    return _error_response(
        request,
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "STORE_UNAVAILABLE",
        "The job store is unavailable",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions (500)."""
    from app.core.config import settings

    logger.error(
        "Unhandled exception",
        extra={"request_id": get_request_id(request), "path": request.url.path},
        exc_info=exc,
    )

    # In production, don't expose internal error details
    if settings.ENV == "prod":
        message = "An internal server error occurred"
        details = None
    else:
        message = str(exc)
        details = {"type": type(exc).__name__}

    return _error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "INTERNAL_ERROR",
        message,
        details,
    )
