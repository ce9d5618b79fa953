# =============================================================================
# core/services/connection_session.py - Per-User Session Wiring
# =============================================================================
# Builds the object graph for one signed-in user:
#
#   ConnectionState <- Reconciler <- RequestService
#                    ^             ^
#                    |             +- NotificationService
#                    +- RealtimeDispatcher
#
# SessionRegistry keeps one live session per user id. Logging out closes the
# session: subscriptions go away and the state is reset, so nothing computed
# for one user is visible to the next.
# =============================================================================

import asyncio
import logging
from typing import Any

from app.config import Settings
from app.exceptions import BuizlyException
from core.services.connection_state import ConnectionState
from core.services.notification_service import NotificationService
from core.services.realtime_dispatcher import RealtimeDispatcher
from core.services.reconciliation_service import Reconciler
from core.services.request_service import RequestService

logger = logging.getLogger(__name__)


class ConnectionSession:
    """
    One user's connection state and everything that writes to it.

    Example:
        session = ConnectionSession(user_id, client, settings)
        await session.start()
        await session.requests.send_request(target_id)
        session.state.get_status(target_id)
        await session.close()
    """

    def __init__(self, user_id: str, client: Any, settings: Settings):
        self.user_id = user_id
        self.state = ConnectionState(user_id)
        self.reconciler = Reconciler(
            client, self.state, timeout=settings.RECONCILE_TIMEOUT_SECONDS
        )
        self.notifications = NotificationService(
            client,
            rate_limit=settings.NOTIFICATION_RATE_LIMIT,
            rate_window=settings.NOTIFICATION_RATE_WINDOW_SECONDS,
        )
        self.requests = RequestService(client, self.state, self.reconciler, self.notifications)
        self.dispatcher = RealtimeDispatcher(
            client, self.reconciler, user_id, debounce=settings.REALTIME_DEBOUNCE_SECONDS
        )
        self._started = False
        self._closed = False

    @property
    def started(self) -> bool:
        return self._started

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        """Subscribe to realtime changes and run the initial pass."""
        if self._started:
            return
        self._started = True

        await self.dispatcher.start()

        try:
            await self.reconciler.reconcile()
        except BuizlyException as e:
            logger.warning(f"Initial reconciliation failed for {self.user_id}: {e.message}")
            self.state.mark_loaded()

        logger.info(f"Connection session started for user {self.user_id}")

    async def close(self) -> None:
        """Stop realtime delivery and forget the user's state."""
        if self._closed:
            return
        self._closed = True

        await self.dispatcher.stop()
        self.state.reset()
        logger.info(f"Connection session closed for user {self.user_id}")


class SessionRegistry:
    """Live ConnectionSession per user id."""

    def __init__(self, client_factory: Any, settings: Settings):
        """
        Args:
            client_factory: Async callable returning the gateway client
                (SupabaseClient.get_instance in production)
            settings: Application settings
        """
        self._client_factory = client_factory
        self._settings = settings
        self._sessions: dict[str, ConnectionSession] = {}
        self._lock = asyncio.Lock()

    def get(self, user_id: str) -> ConnectionSession | None:
        return self._sessions.get(user_id)

    def active_users(self) -> list[str]:
        return list(self._sessions.keys())

    async def get_or_start(self, user_id: str) -> ConnectionSession:
        """Return the user's session, creating and starting it on first use."""
        async with self._lock:
            session = self._sessions.get(user_id)
            if session is not None:
                return session

            client = await self._client_factory()
            session = ConnectionSession(user_id, client, self._settings)
            self._sessions[user_id] = session

        await session.start()
        return session

    async def close(self, user_id: str) -> bool:
        """
        Close and forget the user's session.

        Returns:
            True if a session existed
        """
        async with self._lock:
            session = self._sessions.pop(user_id, None)
        if session is None:
            return False
        await session.close()
        return True

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.close()
        if sessions:
            logger.info(f"Closed {len(sessions)} connection session(s)")
