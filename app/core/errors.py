"""
Error Handling
==============

Standardized error codes, HTTP-facing exceptions, domain exceptions for the
reconciliation engine, and the FastAPI exception handlers.
"""

import logging
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCodes:
    """Standardized error codes."""

    # Authentication
    AUTH_TOKEN_MISSING = "AUTH_002"
    AUTH_INVALID_TOKEN = "AUTH_005"
    AUTH_INVALID_WEBHOOK_SECRET = "AUTH_006"

    # Authorization
    FORBIDDEN = "FORBIDDEN"

    # Sync
    SYNC_MISSING_IDENTIFIER = "SYNC_001"
    SUB_NOT_FOUND = "SUB_004"

    # Webhook
    WEBHOOK_INVALID_PAYLOAD = "WEBHOOK_001"
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_002"

    # General
    CONFIG_ERROR = "CONFIG_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"


# =============================================================================
# HTTP Exceptions
# =============================================================================

class AppException(HTTPException):
    """Base application exception with structured error response."""

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        field: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        **extra,
    ):
        self.code = code
        self.field = field
        self.extra = extra

        detail = {
            "code": code,
            "message": message,
        }

        if field:
            detail["field"] = field

        detail.update(extra)

        super().__init__(status_code=status_code, detail=detail, headers=headers)


class AuthenticationError(AppException):
    """Missing or invalid webhook secret / user token."""

    def __init__(
        self,
        code: str = ErrorCodes.AUTH_INVALID_TOKEN,
        message: str = "Authentication failed",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            code=code,
            message=message,
            **extra,
        )


class ForbiddenError(AppException):
    """Caller is authenticated but may not act on this subscriber."""

    def __init__(
        self,
        code: str = ErrorCodes.FORBIDDEN,
        message: str = "Access denied",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            code=code,
            message=message,
            **extra,
        )


class NotFoundError(AppException):
    """Resource not found errors."""

    def __init__(
        self,
        code: str = ErrorCodes.NOT_FOUND,
        message: str = "Resource not found",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            code=code,
            message=message,
            **extra,
        )


class ValidationError(AppException):
    """Validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: str = ErrorCodes.VALIDATION_ERROR,
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=message,
            field=field,
            **extra,
        )


class ConfigurationError(AppException):
    """A required secret or credential is not configured for this deployment."""

    def __init__(
        self,
        message: str = "Configuration error",
        **extra,
    ):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            code=ErrorCodes.CONFIG_ERROR,
            message=message,
            **extra,
        )


# =============================================================================
# Domain Exceptions
# =============================================================================

class ReconciliationError(Exception):
    """Base class for errors raised inside the reconciliation engine."""


class IdentityResolutionFailure(ReconciliationError):
    """A subscriber id maps to no local user and is not UUID-shaped."""

    def __init__(self, subscriber_id: str):
        self.subscriber_id = subscriber_id
        super().__init__(f"Cannot resolve local user for subscriber {subscriber_id}")


class PersistenceConflict(ReconciliationError):
    """
    The upsert was rejected in a way a later sync can repair.

    ``kind`` is ``"foreign_key"`` when the optimistic user id does not exist,
    or ``"other_user"`` when the subscriber id already belongs to another user.
    """

    FOREIGN_KEY = "foreign_key"
    OTHER_USER = "other_user"

    def __init__(self, kind: str, subscriber_id: str, user_id: Optional[str] = None):
        self.kind = kind
        self.subscriber_id = subscriber_id
        self.user_id = user_id
        super().__init__(
            f"Persistence conflict ({kind}) for subscriber={subscriber_id} user={user_id}"
        )


class UpstreamFetchFailure(ReconciliationError):
    """RevenueCat REST call timed out, errored, or returned non-2xx."""

    def __init__(self, subscriber_id: str, reason: str, status_code: Optional[int] = None):
        self.subscriber_id = subscriber_id
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"RevenueCat fetch failed for {subscriber_id}: {reason}")


# =============================================================================
# Exception Handlers
# =============================================================================

async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.detail,
        },
        headers=exc.headers,
    )


async def http_exception_handler(
    request: Request,
    exc: HTTPException,
) -> JSONResponse:
    """Handler for standard HTTPException."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        error = exc.detail
    else:
        error = {
            "code": "HTTP_ERROR",
            "message": str(exc.detail),
        }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": error,
        },
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for request validation errors."""
    errors = exc.errors() if hasattr(exc, "errors") else []
    if errors:
        first_error = errors[0]
        field = ".".join(str(loc) for loc in first_error.get("loc", []))
        message = first_error.get("msg", "Validation error")
    else:
        field = None
        message = str(exc) or "Validation error"

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.VALIDATION_ERROR,
                "message": message,
                "field": field,
            },
        },
    )


async def global_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception(
        "Unhandled error on %s %s: %s",
        request.method,
        request.url.path,
        type(exc).__name__,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": {
                "code": ErrorCodes.INTERNAL_ERROR,
                "message": "An unexpected error occurred",
            },
        },
    )


def setup_exception_handlers(app):
    """
    Register exception handlers with FastAPI app.

    Usage:
        from app.core.errors import setup_exception_handlers
        setup_exception_handlers(app)
    """
    from fastapi.exceptions import RequestValidationError

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
