# =============================================================================
# core/models/notification.py - Notification Schemas
# =============================================================================
# NotificationCreate validates and sanitizes a notification before it is
# written to the notifications table:
# - the type must be one of the product's notification kinds
# - user_id must be a UUID
# - title/message are stripped of script injection and length-capped
# - the free-form data payload is bounded in depth of lists, keys, and strings
# =============================================================================

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from lib.utils import is_valid_uuid

TITLE_MAX_LENGTH = 200
MESSAGE_MAX_LENGTH = 500
DATA_STRING_MAX_LENGTH = 1000
DATA_LIST_MAX_ITEMS = 50
DATA_DICT_MAX_KEYS = 20
DATA_KEY_MAX_LENGTH = 50

_SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)


class NotificationType(str, Enum):
    """Notification kinds accepted by the notifications table."""
    MEETING_REQUEST = "meeting_request"
    MEETING_CONFIRMED = "meeting_confirmed"
    MEETING_DECLINED = "meeting_declined"
    MEETING_CANCELLED = "meeting_cancelled"
    MEETING_RESCHEDULED = "meeting_rescheduled"
    MEETING_REMINDER = "meeting_reminder"
    NEW_PARTICIPANT = "new_participant"
    PROFILE_SHARED = "profile_shared"
    NEW_CONNECTION = "new_connection"
    FOLLOW_UP_SCHEDULED = "follow_up_scheduled"


def sanitize_string(value: str, max_length: int) -> str:
    """Remove script blocks and javascript: URLs, then truncate."""
    cleaned = _SCRIPT_BLOCK.sub("", value)
    cleaned = _JS_SCHEME.sub("", cleaned)
    return cleaned[:max_length]


def sanitize_value(value: Any) -> Any:
    """Recursively bound a JSON-like value."""
    if isinstance(value, str):
        return sanitize_string(value, DATA_STRING_MAX_LENGTH)
    if isinstance(value, list):
        return [sanitize_value(item) for item in value[:DATA_LIST_MAX_ITEMS]]
    if isinstance(value, dict):
        entries = list(value.items())[:DATA_DICT_MAX_KEYS]
        return {str(k)[:DATA_KEY_MAX_LENGTH]: sanitize_value(v) for k, v in entries}
    return value


class NotificationCreate(BaseModel):
    """
    Schema for creating a notification.

    Example:
        {
            "user_id": "660e8400-...",
            "type": "new_connection",
            "title": "New Connection Request",
            "message": "Ann Lee wants to connect with you",
            "data": {"requester_id": "550e8400-..."}
        }
    """

    # Recipient
    user_id: str = Field(..., description="User who receives the notification")

    type: NotificationType = Field(..., description="Notification kind")

    title: str = Field(..., min_length=1, description="Short headline")

    message: str = Field(..., min_length=1, description="Body text")

    # Free-form payload the UI uses to deep-link (requester id, avatar, ...)
    data: dict[str, Any] | None = Field(default=None)

    @field_validator("user_id")
    @classmethod
    def _check_user_id(cls, value: str) -> str:
        if not is_valid_uuid(value):
            raise ValueError("user_id must be a UUID")
        return value

    @field_validator("title")
    @classmethod
    def _clean_title(cls, value: str) -> str:
        value = sanitize_string(value, TITLE_MAX_LENGTH)
        if not value:
            raise ValueError("title is empty after sanitizing")
        return value

    @field_validator("message")
    @classmethod
    def _clean_message(cls, value: str) -> str:
        value = sanitize_string(value, MESSAGE_MAX_LENGTH)
        if not value:
            raise ValueError("message is empty after sanitizing")
        return value

    @field_validator("data")
    @classmethod
    def _clean_data(cls, value: dict[str, Any] | None) -> dict[str, Any] | None:
        return sanitize_value(value) if value is not None else None

    def to_row(self) -> dict[str, Any]:
        """Column dict for notifications.insert()."""
        return {
            "user_id": self.user_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
        }
