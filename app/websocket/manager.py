# =============================================================================
# app/websocket/manager.py - WebSocket Connection Manager
# =============================================================================
# Tracks WebSocket connections per user and handles pushing messages to them.
#
# Usage:
#   from app.websocket import websocket_manager
#
#   # Connect a client
#   await websocket_manager.connect(user_id, websocket)
#
#   # Push to every tab the user has open
#   await websocket_manager.broadcast(user_id, {"type": "session_closed"})
#
#   # Disconnect a client
#   websocket_manager.disconnect(user_id, websocket)
# =============================================================================

import logging
from typing import Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """
    Manages WebSocket connections organized by user ID.

    Each user can have multiple connected clients (e.g., multiple browser
    tabs), all fed from the same ConnectionSession.
    """

    def __init__(self):
        # user_id -> set of WebSocket connections
        self.connections: Dict[str, Set[WebSocket]] = {}
        self._total_connections = 0

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        """
        Accept a new WebSocket connection and track it.

        Args:
            user_id: The user whose connection state this client follows
            websocket: The WebSocket connection
        """
        await websocket.accept()

        self.connections.setdefault(user_id, set()).add(websocket)
        self._total_connections += 1

        logger.info(
            f"WebSocket connected for user {user_id}. "
            f"Total connections: {self._total_connections}"
        )

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        """
        Remove a WebSocket connection from tracking.

        Args:
            user_id: The user the connection belonged to
            websocket: The WebSocket connection to remove
        """
        sockets = self.connections.get(user_id)
        if sockets is not None and websocket in sockets:
            sockets.discard(websocket)
            self._total_connections -= 1

            if not sockets:
                del self.connections[user_id]

        logger.info(
            f"WebSocket disconnected for user {user_id}. "
            f"Total connections: {self._total_connections}"
        )

    async def send(self, user_id: str, websocket: WebSocket, message: dict) -> bool:
        """
        Send a message to one client, dropping it from tracking on failure.

        Returns:
            bool: True if the message was sent
        """
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send to WebSocket of user {user_id}: {e}")
            self.disconnect(user_id, websocket)
            return False

    async def broadcast(self, user_id: str, message: dict) -> int:
        """
        Send a message to all connections of a user.

        Args:
            user_id: The user to push to
            message: The message dict to send (will be JSON encoded)

        Returns:
            int: Number of clients the message was sent to
        """
        sockets = list(self.connections.get(user_id, ()))
        if not sockets:
            logger.debug(f"No connections for user {user_id}, skipping broadcast")
            return 0

        sent_count = 0
        for websocket in sockets:
            if await self.send(user_id, websocket, message):
                sent_count += 1

        logger.debug(
            f"Broadcast to user {user_id}: "
            f"type={message.get('type')}, sent to {sent_count} clients"
        )
        return sent_count

    def get_connection_count(self, user_id: str | None = None) -> int:
        """
        Get the number of active connections.

        Args:
            user_id: If provided, count for that user. Otherwise total.
        """
        if user_id:
            return len(self.connections.get(user_id, set()))
        return self._total_connections

    def get_active_users(self) -> list[str]:
        """User IDs with at least one connection."""
        return list(self.connections.keys())


# Global singleton instance
websocket_manager = ConnectionManager()
