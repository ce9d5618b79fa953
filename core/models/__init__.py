# =============================================================================
# core/models/ - Pydantic Data Models
# =============================================================================
# This package contains Pydantic schemas for data validation:
# - connection.py: Requests, connection rows, derived statuses, snapshots
# - notification.py: Notification payload validation and sanitization
#
# These models define the "contract" between the core, Supabase, and clients.
# =============================================================================

# -----------------------------------------------------------------------------
# Connection Models - Requests, connections, reconciliation output
# -----------------------------------------------------------------------------
from .connection import (
    ChangeEvent,
    CommandOutcome,
    CommandResult,
    Connection,
    ConnectionRequest,
    ProfileSummary,
    ReconcileSnapshot,
    RelationshipStatus,
    RequestStatus,
)

# -----------------------------------------------------------------------------
# Notification Models
# -----------------------------------------------------------------------------
from .notification import (
    NotificationCreate,
    NotificationType,
)

__all__ = [
    # Connection
    "ChangeEvent",
    "CommandOutcome",
    "CommandResult",
    "Connection",
    "ConnectionRequest",
    "ProfileSummary",
    "ReconcileSnapshot",
    "RelationshipStatus",
    "RequestStatus",
    # Notification
    "NotificationCreate",
    "NotificationType",
]
