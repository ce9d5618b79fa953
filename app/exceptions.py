# =============================================================================
# app/exceptions.py - Custom Exceptions and Handlers
# =============================================================================
# Centralized error taxonomy for the connection layer and the API.
# Errors should tell HOW to fix, not just WHAT failed.
# =============================================================================

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class BuizlyException(Exception):
    """
    Base exception for the Buizly connection service.

    All custom exceptions inherit from this class.
    Provides structured error responses with actionable suggestions.
    """

    def __init__(
        self,
        message: str,
        code: str = "BUIZLY_ERROR",
        status_code: int = 500,
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.suggestion = suggestion
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response dict."""
        result = {
            "detail": self.message,
            "code": self.code,
        }
        if self.suggestion:
            result["suggestion"] = self.suggestion
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Session Exceptions
# =============================================================================

class UnauthenticatedError(BuizlyException):
    """Raised when an operation runs without a signed-in user."""

    def __init__(self):
        super().__init__(
            message="Not authenticated",
            code="NOT_AUTHENTICATED",
            status_code=401,
            suggestion="Sign in again; the session was closed or never started",
        )


class BackendUnavailableError(BuizlyException):
    """
    Raised when Supabase fails or times out.

    Transient: cached state is preserved and the caller may retry.
    """

    def __init__(self, operation: str, error: str):
        super().__init__(
            message=f"Backend unavailable during {operation}: {error}",
            code="BACKEND_UNAVAILABLE",
            status_code=503,
            suggestion="Try again shortly; previously loaded data is still shown",
            details={"operation": operation, "error": error},
        )


# =============================================================================
# Connection Request Exceptions
# =============================================================================

class SelfRequestError(BuizlyException):
    """Raised when a user tries to connect with themselves."""

    def __init__(self, user_id: str):
        super().__init__(
            message="Cannot send a connection request to yourself",
            code="SELF_REQUEST",
            status_code=400,
            details={"user_id": user_id},
        )


class RequestNotFoundError(BuizlyException):
    """Raised when a connection request ID doesn't exist."""

    def __init__(self, request_id: str):
        super().__init__(
            message=f"Connection request not found: {request_id}",
            code="REQUEST_NOT_FOUND",
            status_code=404,
            suggestion="The request may have been withdrawn; refresh your requests",
            details={"request_id": request_id},
        )


class RequestForbiddenError(BuizlyException):
    """Raised when a user acts on a request addressed to someone else."""

    def __init__(self, request_id: str, action: str):
        super().__init__(
            message=f"Only the recipient can {action} this request",
            code="REQUEST_FORBIDDEN",
            status_code=403,
            details={"request_id": request_id, "action": action},
        )


class ProfileNotFoundError(BuizlyException):
    """Raised when a profile referenced by a request is missing."""

    def __init__(self, profile_id: str):
        super().__init__(
            message=f"Profile not found: {profile_id}",
            code="PROFILE_NOT_FOUND",
            status_code=404,
            suggestion="The user may have deleted their account",
            details={"profile_id": profile_id},
        )


class ConnectionNotFoundError(BuizlyException):
    """Raised when a connection row doesn't exist or isn't owned by the user."""

    def __init__(self, connection_id: str):
        super().__init__(
            message=f"Connection not found: {connection_id}",
            code="CONNECTION_NOT_FOUND",
            status_code=404,
            details={"connection_id": connection_id},
        )


# =============================================================================
# Notification Exceptions
# =============================================================================

class NotificationValidationError(BuizlyException):
    """Raised when a notification payload fails validation."""

    def __init__(self, error: str):
        super().__init__(
            message=f"Invalid notification: {error}",
            code="INVALID_NOTIFICATION",
            status_code=400,
            details={"error": error},
        )


# =============================================================================
# Exception Handlers
# =============================================================================

async def buizly_exception_handler(
    request: Request,
    exc: BuizlyException
) -> JSONResponse:
    """
    Convert BuizlyException to JSON response.

    Returns structured error with:
    - detail: Human-readable message
    - code: Machine-readable error code
    - suggestion: How to fix (if available)
    - details: Additional context
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )


async def validation_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """
    Handle Pydantic validation errors.

    Converts validation errors to user-friendly messages.
    """
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "code": "VALIDATION_ERROR",
            "errors": str(exc)
        }
    )
