# =============================================================================
# app/routers/connections.py - Connection Request Endpoints
# =============================================================================
# HTTP surface over the signed-in user's ConnectionSession.
# All endpoints require authentication.
#
# Reads (requests, status, peers) are served from in-memory state; commands
# go through RequestService and return a CommandResult.
# =============================================================================

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query
from pydantic import BaseModel, Field

from app.dependencies import CurrentUserDep, RegistryDep, SessionDep
from app.websocket import websocket_manager
from core.models.connection import CommandResult

router = APIRouter()


# =============================================================================
# Request/Response Models
# =============================================================================

class SendRequestBody(BaseModel):
    """Body for POST /connections/requests."""
    target_id: UUID = Field(
        ...,
        description="Profile id of the user to connect with",
        examples=["550e8400-e29b-41d4-a716-446655440000"],
    )


class StatusResponse(BaseModel):
    """Relationship to one counterpart."""
    target_id: str
    status: str = Field(..., examples=["pending-outgoing"])


class PeerResponse(BaseModel):
    """Whether an email belongs to one of the user's connections."""
    email: str
    connected: bool


class SessionClosedResponse(BaseModel):
    closed: bool
    message: str


# =============================================================================
# Reads
# =============================================================================

@router.get("/requests")
async def list_requests(session: SessionDep):
    """
    Incoming and outgoing pending requests.

    Returns the state of the last reconciliation with its version, so clients
    can tell whether a WebSocket snapshot is newer.
    """
    return session.state.snapshot()


@router.get("/status/{target_id}", response_model=StatusResponse)
async def get_status(
    target_id: Annotated[UUID, Path(description="Counterpart profile UUID")],
    session: SessionDep,
):
    """Relationship status to target_id, resolved from memory."""
    status = session.requests.get_request_status(str(target_id))
    return StatusResponse(target_id=str(target_id), status=status.value)


@router.get("/peers", response_model=PeerResponse)
async def is_connected_with_email(
    email: Annotated[str, Query(min_length=1, description="Email to look up")],
    session: SessionDep,
):
    """Case-insensitive check of email against the user's connections."""
    return PeerResponse(
        email=email,
        connected=session.requests.is_connected_with_email(email),
    )


@router.post("/reconcile")
async def reconcile(session: SessionDep):
    """
    Force a reconciliation pass and return the resulting state.

    Joins a pass that is already running instead of starting a second one.
    """
    await session.reconciler.reconcile()
    return session.state.snapshot()


# =============================================================================
# Commands
# =============================================================================

@router.post("/requests", response_model=CommandResult)
async def send_request(body: SendRequestBody, session: SessionDep):
    """
    Send a connection request.

    A request that is already pending, or a pair that is already connected,
    is reported through `outcome` rather than as an error.
    """
    return await session.requests.send_request(str(body.target_id))


@router.post("/requests/{request_id}/accept", response_model=CommandResult)
async def accept_request(
    request_id: Annotated[UUID, Path(description="Connection request UUID")],
    session: SessionDep,
):
    """Accept a request addressed to the current user."""
    return await session.requests.accept_request(str(request_id))


@router.post("/requests/{request_id}/decline", response_model=CommandResult)
async def decline_request(
    request_id: Annotated[UUID, Path(description="Connection request UUID")],
    session: SessionDep,
):
    """Decline a request addressed to the current user."""
    return await session.requests.decline_request(str(request_id))


@router.delete("/session", response_model=SessionClosedResponse)
async def close_session(user: CurrentUserDep, registry: RegistryDep):
    """
    Close the user's connection session (logout).

    Drops realtime subscriptions and all cached state for the user.
    """
    closed = await registry.close(user.user_id)
    if closed:
        await websocket_manager.broadcast(user.user_id, {"type": "session_closed"})
    return SessionClosedResponse(
        closed=closed,
        message="Session closed" if closed else "No active session",
    )


@router.delete("/{connection_id}", response_model=CommandResult)
async def remove_connection(
    connection_id: Annotated[UUID, Path(description="Connection row UUID")],
    session: SessionDep,
):
    """Remove one of the current user's connections."""
    return await session.requests.remove_connection(str(connection_id))
