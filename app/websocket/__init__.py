# =============================================================================
# app/websocket/__init__.py - WebSocket Module
# =============================================================================
# Pushes connection-state snapshots to the user's open clients.
#
# Usage:
#   from app.websocket import websocket_manager
#
#   await websocket_manager.broadcast(user_id, {"type": "session_closed"})
# =============================================================================

from app.websocket.manager import ConnectionManager, websocket_manager

__all__ = [
    "ConnectionManager",
    "websocket_manager",
]
