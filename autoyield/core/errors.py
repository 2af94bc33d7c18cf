"""
Centralized error handling and sanitization.

Provides:
- Standard error codes and the AppError base type
- Domain exceptions for sessions, relay submission, oracles and rate limits
- Error sanitization for production environments
"""

import logging
from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, status

from .config import get_settings

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """Standard error codes for the application"""

    # Authentication
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"
    AUTH_INVALID_CRON_SECRET = "AUTH_INVALID_CRON_SECRET"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    RATE_LIMITED = "RATE_LIMITED"

    # Sessions
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_INVALID = "SESSION_INVALID"
    SESSION_REGISTRATION_REQUIRED = "SESSION_REGISTRATION_REQUIRED"

    # External services
    RELAY_ERROR = "RELAY_ERROR"
    ORACLE_ERROR = "ORACLE_ERROR"
    REDIS_UNAVAILABLE = "REDIS_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"

    # Business logic
    EXECUTION_FAILED = "EXECUTION_FAILED"

    # General
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


class AppError(Exception):
    """
    An error with a stable ``code`` for clients and a ``message`` that is
    safe to show them. ``internal_message`` is for logs only.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
        internal_message: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.internal_message = internal_message
        super().__init__(message)


# ==================== Session Errors ====================


class SessionError(AppError):
    """Base class for session authorization failures"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.SESSION_INVALID):
        super().__init__(code, message, status_code=status.HTTP_400_BAD_REQUEST)


class SessionNotFound(SessionError):
    def __init__(self, message: str = "No active session"):
        super().__init__(message, ErrorCode.SESSION_NOT_FOUND)


class SessionInvalid(SessionError):
    pass


class MissingApprovedVaults(SessionError):
    """Agent session without an approved-vault list; the user must re-register."""

    def __init__(self, message: str = "No approved vaults on session, re-registration required"):
        super().__init__(message, ErrorCode.SESSION_REGISTRATION_REQUIRED)


# ==================== Relay Errors ====================


class RelayError(Exception):
    """Base class for sponsored-relay failures. ``kind`` is a stable label."""

    kind = "relay_error"


class RelayUnavailable(RelayError):
    kind = "relay_unavailable"


class SponsorBudgetExhausted(RelayError):
    kind = "sponsor_budget_exhausted"


class OperationReverted(RelayError):
    kind = "reverted"


class DeploymentRequired(RelayError):
    kind = "deployment_required"


class ReceiptTimeout(RelayError):
    kind = "receipt_timeout"


# ==================== Other Domain Errors ====================


class OracleReadError(Exception):
    """Raised when a price or uptime feed cannot be read"""


class RateLimitExceeded(AppError):
    def __init__(self, message: str, reset_time: Optional[float] = None):
        super().__init__(
            ErrorCode.RATE_LIMITED,
            message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"reset_time": reset_time} if reset_time else None,
        )
        self.reset_time = reset_time


def sanitize_error_message(
    error: Exception,
    user_message: str = "An unexpected error occurred",
    include_type: bool = False,
) -> str:
    """The raw error text outside production; ``user_message`` in production."""
    settings = get_settings()

    if settings.environment == "production":
        return user_message

    error_str = str(error)
    if include_type:
        return f"{type(error).__name__}: {error_str}"
    return error_str


def create_http_exception(
    code: ErrorCode,
    user_message: str,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    internal_error: Optional[Exception] = None,
    log_error: bool = True,
) -> HTTPException:
    """
    HTTPException whose detail includes ``internal_error`` only outside
    production. The internal error is logged with its traceback.
    """
    if log_error:
        suffix = f": {internal_error}" if internal_error else ""
        logger.error(f"[{code.value}] {user_message}{suffix}", exc_info=internal_error)

    detail = user_message
    if internal_error is not None:
        detail = sanitize_error_message(internal_error, user_message)
        if detail != user_message:
            detail = f"{user_message}: {detail}"
    return HTTPException(status_code=status_code, detail=detail)


def app_error_to_http(error: AppError) -> HTTPException:
    """Convert an AppError to an HTTPException with a structured detail"""
    detail: dict[str, Any] = {"code": error.code.value, "message": error.message}
    if error.details:
        detail.update(error.details)
    return HTTPException(status_code=error.status_code, detail=detail)


def internal_error(error: Exception, context: str = "") -> HTTPException:
    ctx = f" ({context})" if context else ""
    return create_http_exception(
        code=ErrorCode.INTERNAL_ERROR,
        user_message=f"An internal error occurred{ctx}. Please try again later.",
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        internal_error=error,
    )


def database_unavailable_error(error: Exception) -> HTTPException:
    """503 used when the scheduler cannot reach the database."""
    return create_http_exception(
        code=ErrorCode.DATABASE_ERROR,
        user_message="Database temporarily unavailable",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        internal_error=error,
    )


def auth_error(
    code: ErrorCode,
    status_code: int = status.HTTP_401_UNAUTHORIZED,
    headers: Optional[dict[str, str]] = None,
    **extra_data: Any,
) -> HTTPException:
    """401/403 with a ``{"code": ..., **extra}`` detail."""
    return HTTPException(
        status_code=status_code, detail={"code": code.value, **extra_data}, headers=headers
    )
