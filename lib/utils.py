# =============================================================================
# lib/utils.py - Shared Utilities
# =============================================================================
# Common utilities used across the application:
# - Identifier normalization (UUIDs, emails)
# - The base error class for library-level failures
# =============================================================================

import re
from typing import Any
from uuid import UUID

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


# =============================================================================
# Identifier Utilities
# =============================================================================

def normalize_uuid(value: str | UUID) -> str:
    """
    Normalize a UUID to string format.

    Handles both string and UUID objects, ensuring consistent string output.

    Args:
        value: UUID as string or UUID object

    Returns:
        String representation of the UUID

    Example:
        user_id = normalize_uuid(uuid_obj)  # "550e8400-..."
        user_id = normalize_uuid("550e8400-...")  # "550e8400-..."
    """
    return str(value) if isinstance(value, UUID) else value


def is_valid_uuid(value: Any) -> bool:
    """Check that a value is a version 1-5 UUID string."""
    return isinstance(value, str) and bool(_UUID_PATTERN.match(value))


def normalize_email(email: str | None) -> str | None:
    """
    Normalize an email address for identity comparisons.

    Connection rows store a denormalized copy of the counterpart's email, so
    the same person can appear as "Ann@Example.com " in one row and
    "ann@example.com" in another.

    Args:
        email: Raw email (may be None or blank)

    Returns:
        Lower-cased, stripped email, or None when there is nothing to compare

    Example:
        normalize_email("  Ann@Example.COM ")  # "ann@example.com"
        normalize_email("")                    # None
    """
    if not email:
        return None
    normalized = email.strip().lower()
    return normalized or None


# =============================================================================
# Base Error Class
# =============================================================================

class ApplicationError(Exception):
    """
    Base error class for library-level errors.

    Provides actionable error messages following the principle:
    "Errors should tell HOW to fix, not just WHAT failed."

    Attributes:
        code: Error code for categorization
        message: Human-readable error message
        suggestion: Actionable suggestion for fixing the error
        details: Additional context for debugging

    Example:
        class MyServiceError(ApplicationError):
            def __init__(self, message: str, **kwargs):
                super().__init__(message, code="MY_SERVICE_ERROR", **kwargs)
    """

    def __init__(
        self,
        message: str,
        code: str = "APPLICATION_ERROR",
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion
        self.details = details or {}

    def __str__(self) -> str:
        result = f"[{self.code}] {self.message}"
        if self.suggestion:
            result += f" Suggestion: {self.suggestion}"
        return result

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "suggestion": self.suggestion,
            "details": self.details,
        }
