# =============================================================================
# core/services/connection_state.py - Per-Session Connection State
# =============================================================================
# Holds everything the UI reads synchronously for one signed-in user:
# - status cache: counterpart id -> RelationshipStatus
# - peer set: normalized emails of the user's own connection rows
# - incoming / outgoing request lists from the last reconciliation
# - loading flag and a monotonically increasing snapshot version
#
# Writers:
# - Reconciler: bulk swap via apply_snapshot()
# - Command handlers: single-key optimistic writes (set_status, add_peer, ...)
# Nothing else mutates this object. Listeners are told after every change so
# the UI layer (WebSocket push) can re-render from snapshot().
# =============================================================================

import logging
from typing import Any, Callable

from app.exceptions import UnauthenticatedError
from core.models.connection import (
    ConnectionRequest,
    ReconcileSnapshot,
    RelationshipStatus,
    RequestStatus,
)
from lib.utils import normalize_email

logger = logging.getLogger(__name__)

StateListener = Callable[[dict[str, Any]], None]


class ConnectionState:
    """
    Single-writer state object for one authenticated session.

    Lifecycle follows the session: created at sign-in, reset() at sign-out so
    nothing computed for one user is visible to the next.
    """

    def __init__(self, user_id: str | None):
        self._user_id = user_id
        self._status_cache: dict[str, RelationshipStatus] = {}
        self._peer_set: frozenset[str] = frozenset()
        self._incoming: list[ConnectionRequest] = []
        self._outgoing: list[ConnectionRequest] = []
        self._loading = True
        self._version = 0
        self._listeners: list[StateListener] = []

    # -------------------------------------------------------------------------
    # Identity
    # -------------------------------------------------------------------------

    @property
    def user_id(self) -> str | None:
        return self._user_id

    def require_user(self) -> str:
        """
        Return the signed-in user id.

        Raises:
            UnauthenticatedError: If the session has no user
        """
        if not self._user_id:
            raise UnauthenticatedError()
        return self._user_id

    # -------------------------------------------------------------------------
    # Reads (synchronous, never touch the network)
    # -------------------------------------------------------------------------

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def version(self) -> int:
        return self._version

    @property
    def incoming(self) -> list[ConnectionRequest]:
        return list(self._incoming)

    @property
    def outgoing(self) -> list[ConnectionRequest]:
        return list(self._outgoing)

    @property
    def status_cache(self) -> dict[str, RelationshipStatus]:
        return dict(self._status_cache)

    @property
    def peer_set(self) -> frozenset[str]:
        return self._peer_set

    def cached_status(self, counterpart_id: str) -> RelationshipStatus | None:
        return self._status_cache.get(counterpart_id)

    def get_status(self, counterpart_id: str) -> RelationshipStatus:
        """
        Resolve the status for a counterpart from memory only.

        Order: status cache, then the outgoing list, then the incoming list,
        then NONE.
        """
        cached = self._status_cache.get(counterpart_id)
        if cached is not None:
            return cached

        for request in self._outgoing:
            if request.target_id == counterpart_id:
                return _status_from_request(request, outgoing=True)

        for request in self._incoming:
            if request.requester_id == counterpart_id:
                return _status_from_request(request, outgoing=False)

        return RelationshipStatus.NONE

    def is_connected_with_email(self, email: str | None) -> bool:
        normalized = normalize_email(email)
        return normalized is not None and normalized in self._peer_set

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view of the current state for clients."""
        return {
            "user_id": self._user_id,
            "version": self._version,
            "loading": self._loading,
            "incoming": [r.model_dump(mode="json") for r in self._incoming],
            "outgoing": [r.model_dump(mode="json") for r in self._outgoing],
            "statuses": {k: v.value for k, v in self._status_cache.items()},
        }

    # -------------------------------------------------------------------------
    # Bulk swap (reconciler only)
    # -------------------------------------------------------------------------

    def apply_snapshot(self, snapshot: ReconcileSnapshot) -> bool:
        """
        Replace cache, peer set, and lists in one step.

        A snapshot computed for a different user (sign-out or account switch
        while the pass was in flight) is discarded.

        Returns:
            True if the snapshot was applied
        """
        if snapshot.user_id != self._user_id:
            logger.info(
                f"Discarding reconciliation result for {snapshot.user_id}; "
                f"session now belongs to {self._user_id}"
            )
            return False

        self._status_cache = dict(snapshot.status_cache)
        self._peer_set = frozenset(snapshot.peer_set)
        self._incoming = list(snapshot.incoming)
        self._outgoing = list(snapshot.outgoing)
        self._loading = False
        self._publish()
        return True

    def mark_loaded(self) -> None:
        """Clear the loading flag without touching data (failed initial pass)."""
        if self._loading:
            self._loading = False
            self._publish()

    # -------------------------------------------------------------------------
    # Optimistic single-key writes (command handlers only)
    # -------------------------------------------------------------------------

    def set_status(self, counterpart_id: str, status: RelationshipStatus) -> None:
        self._status_cache[counterpart_id] = status
        self._publish()

    def clear_status(self, counterpart_id: str) -> None:
        if self._status_cache.pop(counterpart_id, None) is not None:
            self._publish()

    def add_peer(self, email: str | None) -> None:
        normalized = normalize_email(email)
        if normalized and normalized not in self._peer_set:
            self._peer_set = self._peer_set | {normalized}
            self._publish()

    def discard_peer(self, email: str | None) -> None:
        normalized = normalize_email(email)
        if normalized and normalized in self._peer_set:
            self._peer_set = self._peer_set - {normalized}
            self._publish()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def reset(self) -> None:
        """Forget the user and everything derived for them."""
        self._user_id = None
        self._status_cache = {}
        self._peer_set = frozenset()
        self._incoming = []
        self._outgoing = []
        self._loading = True
        self._publish()
        self._listeners.clear()

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a callback run with snapshot() after every change.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _publish(self) -> None:
        self._version += 1
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"State listener failed: {e}")


def _status_from_request(request: ConnectionRequest, outgoing: bool) -> RelationshipStatus:
    """Map a stored request to a status when the cache has no entry."""
    if request.status == RequestStatus.PENDING:
        return RelationshipStatus.PENDING_OUTGOING if outgoing else RelationshipStatus.PENDING_INCOMING
    if request.status == RequestStatus.ACCEPTED:
        return RelationshipStatus.ACCEPTED
    return RelationshipStatus.DECLINED
