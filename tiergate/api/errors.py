"""
Consistent HTTP error handling for the entitlement API.

All API errors use the shape:

    {"error": {"code": "...", "message": "...", "details": {...}}}

Stack traces are NEVER returned to clients.

Status codes:
- 400: Bad Request (malformed webhook body, missing userId/reportId)
- 401: Unauthorized (bad webhook signature)
- 403: Forbidden (admin secret missing or wrong)
- 500: Internal Server Error (persistence failures; the webhook provider retries)
- 503: Service Unavailable (no entitlement service attached to the app)

Quota denials are not errors and never pass through here.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from tiergate import errors as core_errors

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class AppError(Exception):
    """Base API error with the consistent error shape."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppError):
    """Validation error (400)."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class AuthenticationError(AppError):
    """Authentication failure (401)."""

    def __init__(self, message: str = "Authentication required", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="AUTHENTICATION_ERROR",
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class PermissionDeniedError(AppError):
    """Permission denied (403)."""

    def __init__(self, message: str = "Permission denied", details: Optional[dict[str, Any]] = None):
        super().__init__(
            code="PERMISSION_DENIED",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class PersistenceFailureError(AppError):
    """Entitlement store unavailable (500)."""

    def __init__(self, message: str = "Entitlement store unavailable"):
        super().__init__(
            code="PERSISTENCE_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class ServiceUnavailableError(AppError):
    """Service unavailable (503)."""

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(
            code="SERVICE_UNAVAILABLE",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )


def to_app_error(exc: core_errors.EntitlementError) -> AppError:
    """Translate a core exception into its HTTP counterpart."""
    if isinstance(exc, core_errors.ValidationError):
        details = {"field": exc.field} if exc.field else None
        return ValidationError(exc.message, details=details)
    if isinstance(exc, core_errors.AuthError):
        if exc.status_code == status.HTTP_403_FORBIDDEN:
            return PermissionDeniedError(exc.message)
        return AuthenticationError(exc.message)
    if isinstance(exc, core_errors.PersistenceError):
        return PersistenceFailureError()
    return AppError(code=exc.error_code, message=exc.message)


def generate_correlation_id() -> str:
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """Header first (upstream proxy), then request state, then a fresh id."""
    correlation_id = request.headers.get(CORRELATION_HEADER)
    if correlation_id:
        return correlation_id
    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id
    return generate_correlation_id()


def _error_response(request: Request, error: AppError) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    log = logger.error if error.status_code >= 500 else logger.warning
    log(
        "Application error",
        extra={
            "correlation_id": correlation_id,
            "error_code": error.code,
            "status_code": error.status_code,
            "path": request.url.path,
            "method": request.method,
        },
    )
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_dict(),
        headers={CORRELATION_HEADER: correlation_id},
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return _error_response(request, exc)


async def entitlement_error_handler(request: Request, exc: core_errors.EntitlementError) -> JSONResponse:
    return _error_response(request, to_app_error(exc))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in err.get("loc", ()) if part != "body") for err in exc.errors()]
    return _error_response(
        request,
        ValidationError("Invalid request body", details={"fields": [f for f in fields if f]}),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": "HTTP_ERROR",
                "message": str(exc.detail),
                "details": {},
            }
        },
        headers={CORRELATION_HEADER: correlation_id},
    )


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """
    Assigns correlation ids and turns anything unhandled into a generic 500.

    IMPORTANT: Stack traces are NEVER returned to clients.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = get_correlation_id(request)
        request.state.correlation_id = correlation_id

        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response

        except Exception as e:
            logger.exception(
                "Unhandled exception",
                extra={
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": {
                        "code": "INTERNAL_ERROR",
                        "message": "An unexpected error occurred",
                        "details": {"correlation_id": correlation_id},
                    }
                },
                headers={CORRELATION_HEADER: correlation_id},
            )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(core_errors.EntitlementError, entitlement_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_middleware(ErrorHandlerMiddleware)
