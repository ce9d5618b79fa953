# =============================================================================
# app/websocket/routes.py - WebSocket Routes
# =============================================================================
# WebSocket endpoint for live connection-state updates.
#
# Connect: ws://host/ws/connections?token={jwt}
#
# Messages:
#   - {"type": "connected", "user_id": "..."}
#   - {"type": "snapshot", "version": 7, "incoming": [...], "outgoing": [...],
#      "statuses": {...}, "loading": false, "user_id": "..."}
#   - {"type": "session_closed"}
# Clients may send "ping" and receive "pong".
# =============================================================================

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from jose import JWTError

from app.auth import verify_token
from app.exceptions import BuizlyException
from app.websocket.manager import websocket_manager
from lib.utils import ApplicationError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/connections")
async def connections_websocket(
    websocket: WebSocket,
    token: str = Query(..., description="JWT token for authentication"),
):
    """
    Stream the user's connection state.

    A snapshot is sent right after connecting and again after every state
    change (reconciliation pass or optimistic command write). Snapshots carry
    a version; clients should ignore one older than what they already have.
    """
    # 1. Verify JWT token
    try:
        user = verify_token(token)
    except JWTError as e:
        logger.warning(f"WebSocket auth failed: {e}")
        await websocket.close(code=4001, reason="Invalid token")
        return

    user_id = user.user_id

    # 2. Attach to the user's session
    registry = websocket.app.state.session_registry
    try:
        session = await registry.get_or_start(user_id)
    except (BuizlyException, ApplicationError) as e:
        logger.error(f"WebSocket: could not start session for {user_id}: {e.message}")
        await websocket.close(code=4000, reason="Server error")
        return

    # 3. Accept connection and bridge state changes to it
    await websocket_manager.connect(user_id, websocket)

    sends: set[asyncio.Task] = set()

    def push(snapshot: dict[str, Any]) -> None:
        task = asyncio.ensure_future(
            websocket_manager.send(user_id, websocket, {"type": "snapshot", **snapshot})
        )
        sends.add(task)
        task.add_done_callback(sends.discard)

    remove_listener = session.state.add_listener(push)

    try:
        await websocket.send_json({
            "type": "connected",
            "user_id": user_id,
            "message": "Connected to connection updates",
        })
        await websocket.send_json({"type": "snapshot", **session.state.snapshot()})

        # Keep connection alive and handle incoming messages
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
            else:
                logger.debug(f"WebSocket received: {data[:100]}")

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected for user {user_id}")
    finally:
        remove_listener()
        for task in list(sends):
            task.cancel()
        websocket_manager.disconnect(user_id, websocket)


@router.get("/ws/status")
async def websocket_status():
    """
    Get WebSocket connection statistics.

    Returns:
        dict: Connection counts and users with open clients
    """
    users = websocket_manager.get_active_users()
    return {
        "total_connections": websocket_manager.get_connection_count(),
        "active_users": users,
        "user_count": len(users),
    }
