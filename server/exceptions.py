"""
API Error Handling Module
=========================

Every error leaving the test-runner API has the same body:

    {"error_code": "VALIDATION_ERROR", "message": "...", "details": {...}}

``details`` is omitted when there is nothing to add.

Error Codes:
- VALIDATION_ERROR: Request body or continuation state is invalid (422)
- NOT_FOUND: Unknown test report (404)
- INTERNAL_ERROR: A backing service failed, e.g. the test count scan (500)
- BAD_REQUEST: Malformed identifier or request (400)
- FORBIDDEN: Non-local client while remote access is off (403)
"""

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

_logger = logging.getLogger(__name__)


class ErrorCode:
    """Machine-readable codes carried in ``error_code``."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    FORBIDDEN = "FORBIDDEN"


# HTTPException status -> error code; anything unlisted is INTERNAL_ERROR
_STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: ErrorCode.BAD_REQUEST,
    status.HTTP_403_FORBIDDEN: ErrorCode.FORBIDDEN,
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    status.HTTP_422_UNPROCESSABLE_ENTITY: ErrorCode.VALIDATION_ERROR,
}


# =============================================================================
# Exception Classes
# =============================================================================


class APIError(Exception):
    """Base class for errors the routers raise on purpose."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or None
        super().__init__(message)


class NotFoundError(APIError):
    """
    A named resource does not exist.

    Example:
        raise NotFoundError("test report", "test-1712345678901-a1b2c3")
        # -> "Test Report 'test-1712345678901-a1b2c3' not found"
    """

    status_code = status.HTTP_404_NOT_FOUND
    error_code = ErrorCode.NOT_FOUND

    def __init__(self, resource: str, identifier: Any = None):
        details = {"resource": resource}
        if identifier is None:
            message = f"{resource.title()} not found"
        else:
            message = f"{resource.title()} '{identifier}' not found"
            details["id"] = identifier
        super().__init__(message, details)


class ValidationError(APIError):
    """Input rejected after Pydantic accepted its shape (e.g. a bad ``fromState``)."""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    error_code = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details: dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]
        super().__init__(message, details)


class ServiceError(APIError):
    """
    A backing service failed.

    The cause is logged server-side; the client only gets ``message`` and
    the name of the failed operation.
    """

    def __init__(self, message: str = "An internal error occurred", operation: str | None = None):
        super().__init__(message, {"operation": operation} if operation else None)


class BadRequestError(APIError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = ErrorCode.BAD_REQUEST


class ForbiddenError(APIError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = ErrorCode.FORBIDDEN


# =============================================================================
# Responses and Handlers
# =============================================================================


def create_error_response(
    error_code: str,
    message: str,
    details: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Build the standard error body."""
    response: dict[str, Any] = {"error_code": error_code, "message": message}
    if details:
        response["details"] = details
    return response


def error_json_response(exc: APIError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.error_code, exc.message, exc.details),
    )


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    if exc.status_code >= 500:
        _logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_json_response(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """One ``details.errors`` entry per failing field, with the ``body`` prefix dropped."""
    errors = []
    for error in exc.errors():
        parts = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors.append({
            "field": ".".join(parts) or "unknown",
            "message": error.get("msg", "Validation error"),
            "type": error.get("type", "value_error"),
        })

    if len(errors) == 1:
        message = f"Validation error on field '{errors[0]['field']}': {errors[0]['message']}"
    else:
        message = f"Validation failed with {len(errors)} errors"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=create_error_response(ErrorCode.VALIDATION_ERROR, message, {"errors": errors}),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Routing errors (unknown path, wrong method) keep their status code."""
    error_code = _STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = str(exc.detail) if exc.detail else "An error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(error_code, message),
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
