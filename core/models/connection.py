# =============================================================================
# core/models/connection.py - Connection Schemas
# =============================================================================
# These models describe the relationship data the connection layer works with:
# - ConnectionRequest: a row of connection_requests (plus profile enrichment)
# - Connection: one directed row of the connections table
# - RelationshipStatus: the derived, never-persisted status per counterpart
# - ReconcileSnapshot: the output of one reconciliation pass
# - CommandResult: what send/accept/decline report back to the UI
# - ChangeEvent: a parsed realtime postgres_changes payload
#
# Column names mirror the Supabase schema exactly, so rows can be validated
# straight from query responses.
# =============================================================================

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from lib.utils import normalize_email


class RequestStatus(str, Enum):
    """
    Stored status of a connection request row.

    Flow: pending -> accepted | declined
    Both end states are escaped only by deleting the row and inserting anew.
    """
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class RelationshipStatus(str, Enum):
    """
    Derived status of "my relationship to user X".

    Computed from the newest request between the pair plus the live peer
    check. ACCEPTED collapses to NONE once either side removed their
    connection row.
    """
    NONE = "none"
    PENDING_OUTGOING = "pending-outgoing"
    PENDING_INCOMING = "pending-incoming"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class CommandOutcome(str, Enum):
    """Outcome of a command, so the UI can render specific feedback."""
    SUCCESS = "success"
    ALREADY_PENDING = "already_pending"
    ALREADY_CONNECTED = "already_connected"
    ERROR = "error"


class ProfileSummary(BaseModel):
    """
    Profile fields needed to render a request and run email-based peer checks.
    """

    id: str = Field(..., description="Profile (user) ID")
    full_name: str | None = Field(default=None, description="Display name")
    avatar_url: str | None = Field(default=None, description="Avatar image URL")
    job_title: str | None = Field(default=None, description="Job title")
    company: str | None = Field(default=None, description="Company name")
    email: str | None = Field(default=None, description="Contact email")

    model_config = {"extra": "ignore"}


class ConnectionRequest(BaseModel):
    """
    A connection request between two users.

    Example:
        {
            "id": "770e8400-...",
            "requester_id": "550e8400-...",
            "target_id": "660e8400-...",
            "status": "pending",
            "created_at": "2026-01-06T12:45:12Z"
        }
    """

    id: str = Field(..., description="Request ID")
    requester_id: str = Field(..., description="User who sent the request")
    target_id: str = Field(..., description="User the request was sent to")
    status: RequestStatus = Field(
        default=RequestStatus.PENDING,
        description="Stored request status"
    )
    created_at: datetime | None = Field(default=None)
    updated_at: datetime | None = Field(default=None)

    # Enrichment attached during reconciliation (not stored in the table)
    requester_profile: ProfileSummary | None = Field(default=None)
    target_profile: ProfileSummary | None = Field(default=None)

    model_config = {"extra": "ignore"}

    def other_party(self, user_id: str) -> str:
        """Return the id of the user on the other side of this request."""
        return self.target_id if self.requester_id == user_id else self.requester_id

    def is_incoming_for(self, user_id: str) -> bool:
        """A pending request addressed to the user."""
        return self.target_id == user_id and self.status == RequestStatus.PENDING

    def is_outgoing_for(self, user_id: str) -> bool:
        """Any request the user sent, whatever its status."""
        return self.requester_id == user_id


class Connection(BaseModel):
    """
    One directed row of the connections table.

    Holds a denormalized copy of the counterpart's profile taken when the
    request was accepted; it is not a live reference.
    """

    id: str = Field(..., description="Connection row ID")
    user_id: str = Field(..., description="Owner of this contact entry")
    connection_name: str = Field(..., description="Counterpart's name at acceptance time")
    connection_email: str | None = Field(default=None)
    connection_title: str | None = Field(default=None)
    connection_company: str | None = Field(default=None)
    connection_phone: str | None = Field(default=None)
    notes: str | None = Field(default=None)
    created_at: datetime | None = Field(default=None)

    model_config = {"extra": "ignore"}

    @property
    def normalized_email(self) -> str | None:
        return normalize_email(self.connection_email)

    @staticmethod
    def row_from_profile(owner_id: str, profile: dict[str, Any]) -> dict[str, Any]:
        """
        Build the insert payload that copies `profile` into `owner_id`'s list.

        Args:
            owner_id: The user who will own the row
            profile: Full profile row of the counterpart

        Returns:
            Column dict for connections.insert()
        """
        return {
            "user_id": owner_id,
            "connection_name": profile.get("full_name") or "Unknown",
            "connection_email": profile.get("email"),
            "connection_title": profile.get("job_title"),
            "connection_company": profile.get("company"),
            "connection_phone": profile.get("phone"),
        }


class ReconcileSnapshot(BaseModel):
    """
    Consistent view produced by one reconciliation pass.

    incoming: pending requests addressed to the user
    outgoing: every request the user sent
    status_cache: counterpart id -> derived status
    peer_set: normalized emails of the user's own connection rows
    """

    user_id: str
    incoming: list[ConnectionRequest] = Field(default_factory=list)
    outgoing: list[ConnectionRequest] = Field(default_factory=list)
    status_cache: dict[str, RelationshipStatus] = Field(default_factory=dict)
    peer_set: frozenset[str] = Field(default_factory=frozenset)


class CommandResult(BaseModel):
    """
    Result of send/accept/decline/remove.

    Example:
        {"success": true, "outcome": "success", "status": "pending",
         "request_id": "770e8400-..."}
    """

    success: bool
    outcome: CommandOutcome
    # "pending" | "connected" | "declined" | "removed" | "error"
    status: str
    message: str | None = None
    request_id: str | None = None


class ChangeEvent(BaseModel):
    """A realtime postgres_changes event, reduced to what the dispatcher logs."""

    table: str | None = None
    event_type: str | None = None
    record: dict[str, Any] = Field(default_factory=dict)
    old_record: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "ChangeEvent":
        """
        Parse a realtime payload.

        supabase-py wraps the change under "data"; older clients deliver it
        flat. Unknown shapes produce an empty event rather than an error,
        because every event triggers the same full reconciliation anyway.
        """
        if not isinstance(payload, dict):
            return cls()
        data = payload.get("data", payload)
        if not isinstance(data, dict):
            return cls()
        return cls(
            table=data.get("table"),
            event_type=data.get("type") or data.get("eventType"),
            record=data.get("record") or data.get("new") or {},
            old_record=data.get("old_record") or data.get("old") or {},
        )
