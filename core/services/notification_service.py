# =============================================================================
# core/services/notification_service.py - Notification Sink
# =============================================================================
# Creates rows in the notifications table on behalf of a signed-in sender.
#
# - Payloads are validated and sanitized by NotificationCreate
# - Each sender is rate-limited (limits fixed window, in-memory storage)
# - notify() is the fire-and-forget entry point used by command handlers:
#   it never raises, so a failed notification never fails the command
# =============================================================================

import logging
from typing import Any

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from pydantic import ValidationError

from app.exceptions import BackendUnavailableError, BuizlyException, NotificationValidationError
from core.models.notification import NotificationCreate, NotificationType
from lib.supabase_client import SupabaseClientError

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Validated, rate-limited notification creation.

    Example:
        service = NotificationService(client, rate_limit=10, rate_window=60)
        await service.notify(
            sender_id=me,
            user_id=target_id,
            kind=NotificationType.NEW_CONNECTION,
            title="New Connection Request",
            message="Ann Lee wants to connect with you",
            data={"requester_id": me},
        )
    """

    def __init__(
        self,
        client: Any,
        rate_limit: int,
        rate_window: int,
    ):
        self._client = client
        self._rate_item = parse(f"{rate_limit} per {rate_window} second")
        self._limiter = FixedWindowRateLimiter(MemoryStorage())

    def _allow(self, sender_id: str) -> bool:
        return self._limiter.hit(self._rate_item, "notifications", sender_id)

    async def create_notification(
        self,
        sender_id: str,
        user_id: str,
        kind: NotificationType | str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """
        Validate, rate-limit, and insert a notification.

        Args:
            sender_id: Signed-in user creating the notification
            user_id: Recipient
            kind: Notification type
            title: Headline (sanitized, max 200 chars)
            message: Body (sanitized, max 500 chars)
            data: Optional JSON payload (sanitized)

        Returns:
            Inserted row, or None if the sender is over the rate limit

        Raises:
            NotificationValidationError: If the payload is invalid
            BackendUnavailableError: If the insert fails
        """
        try:
            notification = NotificationCreate(
                user_id=user_id,
                type=kind,
                title=title,
                message=message,
                data=data,
            )
        except ValidationError as e:
            raise NotificationValidationError(str(e)) from e

        if not self._allow(sender_id):
            logger.warning(f"Notification rate limit exceeded for sender {sender_id}")
            return None

        try:
            row = await self._client.insert_notification(notification.to_row())
        except SupabaseClientError as e:
            raise BackendUnavailableError("create notification", e.message) from e

        logger.debug(f"Created {notification.type.value} notification for {user_id}")
        return row

    async def notify(self, sender_id: str, user_id: str, kind: NotificationType | str,
                     title: str, message: str, data: dict[str, Any] | None = None) -> bool:
        """
        Best-effort create_notification(). Failures are logged, never raised.

        Returns:
            True if a notification row was written
        """
        try:
            row = await self.create_notification(sender_id, user_id, kind, title, message, data)
        except BuizlyException as e:
            logger.warning(f"Notification to {user_id} not created: {e.message}")
            return False
        return row is not None
