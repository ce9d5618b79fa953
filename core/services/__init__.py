# =============================================================================
# core/services/__init__.py - Service Layer Exports
# =============================================================================

from .connection_state import ConnectionState
from .reconciliation_service import Reconciler, build_peer_set, derive_status, resolve_snapshot
from .notification_service import NotificationService
from .request_service import RequestService
from .realtime_dispatcher import RealtimeDispatcher, subscription_filters
from .connection_session import ConnectionSession, SessionRegistry

__all__ = [
    "ConnectionState",
    "Reconciler",
    "build_peer_set",
    "derive_status",
    "resolve_snapshot",
    "NotificationService",
    "RequestService",
    "RealtimeDispatcher",
    "subscription_filters",
    "ConnectionSession",
    "SessionRegistry",
]
