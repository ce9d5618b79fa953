# =============================================================================
# core/services/reconciliation_service.py - Connection Reconciliation
# =============================================================================
# Re-derives "my relationship to every counterpart" from a fresh full read.
#
# One pass:
#   1. fetch requests (either side) and own connection rows concurrently
#   2. build the peer set from own rows
#   3. batch-fetch profiles of everyone referenced by the requests
#   4. fetch which counterparts still hold a row pointing back at the user
#   5. resolve each counterpart's status (newest request wins)
#   6. swap the result into ConnectionState in one step
#
# The realtime feed gives no ordering guarantees, so the pass never applies
# deltas: it always recomputes from the tables. resolve_snapshot() is pure and
# holds all the merge rules.
# =============================================================================

import asyncio
import logging
from typing import Any, Iterable

from app.exceptions import BackendUnavailableError
from core.models.connection import (
    ConnectionRequest,
    ProfileSummary,
    ReconcileSnapshot,
    RelationshipStatus,
    RequestStatus,
)
from core.services.connection_state import ConnectionState
from lib.supabase_client import SupabaseClientError
from lib.utils import normalize_email

logger = logging.getLogger(__name__)


# =============================================================================
# Pure resolution
# =============================================================================

def build_peer_set(connection_rows: Iterable[dict[str, Any]]) -> frozenset[str]:
    """Normalized emails of the user's own connection rows; blanks skipped."""
    emails = (normalize_email(row.get("connection_email")) for row in connection_rows)
    return frozenset(email for email in emails if email)


def _newest_first_key(request: ConnectionRequest) -> float:
    return request.created_at.timestamp() if request.created_at else float("-inf")


def _enrich(
    request: ConnectionRequest,
    profiles: dict[str, dict[str, Any]],
) -> ConnectionRequest:
    requester = profiles.get(request.requester_id)
    target = profiles.get(request.target_id)
    return request.model_copy(update={
        "requester_profile": ProfileSummary.model_validate(requester) if requester else None,
        "target_profile": ProfileSummary.model_validate(target) if target else None,
    })


def derive_status(
    request: ConnectionRequest,
    user_id: str,
    other_email: str | None,
    peer_set: frozenset[str],
    reverse_owner_ids: set[str],
) -> RelationshipStatus:
    """
    Status for the counterpart of one request.

    An accepted request only counts while the connection exists on both
    sides: the counterpart's email is in the user's peer set and the
    counterpart still owns a row for the user. Otherwise the request record
    is stale and the pair is back to NONE.
    """
    other_id = request.other_party(user_id)

    if request.status == RequestStatus.ACCEPTED:
        email = normalize_email(other_email)
        live = email is not None and email in peer_set and other_id in reverse_owner_ids
        return RelationshipStatus.ACCEPTED if live else RelationshipStatus.NONE

    if request.status == RequestStatus.PENDING:
        if request.requester_id == user_id:
            return RelationshipStatus.PENDING_OUTGOING
        return RelationshipStatus.PENDING_INCOMING

    return RelationshipStatus.DECLINED


def resolve_snapshot(
    user_id: str,
    request_rows: list[dict[str, Any]],
    connection_rows: list[dict[str, Any]],
    profiles: dict[str, dict[str, Any]],
    reverse_owner_ids: set[str],
) -> ReconcileSnapshot:
    """
    Merge pre-fetched rows into one consistent snapshot.

    Args:
        user_id: The signed-in user
        request_rows: connection_requests rows where the user is on either side
        connection_rows: connections rows owned by the user
        profiles: Profile summaries keyed by id
        reverse_owner_ids: Counterparts holding a connection row for the user

    Returns:
        ReconcileSnapshot with incoming/outgoing lists, status cache, peer set
    """
    peer_set = build_peer_set(connection_rows)

    if not request_rows:
        return ReconcileSnapshot(user_id=user_id, peer_set=peer_set)

    requests = sorted(
        (_enrich(ConnectionRequest.model_validate(row), profiles) for row in request_rows),
        key=_newest_first_key,
        reverse=True,
    )

    status_cache: dict[str, RelationshipStatus] = {}
    for request in requests:
        other_id = request.other_party(user_id)
        if other_id in status_cache:
            # An older request for the same pair; the newest one decides
            continue
        other_email = (profiles.get(other_id) or {}).get("email")
        status_cache[other_id] = derive_status(
            request, user_id, other_email, peer_set, reverse_owner_ids
        )

    return ReconcileSnapshot(
        user_id=user_id,
        incoming=[r for r in requests if r.is_incoming_for(user_id)],
        outgoing=[r for r in requests if r.is_outgoing_for(user_id)],
        status_cache=status_cache,
        peer_set=peer_set,
    )


# =============================================================================
# Reconciler
# =============================================================================

class Reconciler:
    """
    Runs reconciliation passes for one session, one at a time.

    Triggers that arrive while a pass is in flight do not start a second
    concurrent pass. They set a re-run flag and await the same pass chain,
    which runs exactly one more pass after the current one finishes.

    Example:
        reconciler = Reconciler(client, state, timeout=10.0)
        snapshot = await reconciler.reconcile()
    """

    def __init__(self, client: Any, state: ConnectionState, timeout: float):
        self._client = client
        self._state = state
        self._timeout = timeout
        self._inflight: asyncio.Future | None = None
        self._rerun_requested = False
        self._pass_count = 0

    @property
    def pass_count(self) -> int:
        """Number of passes started since creation."""
        return self._pass_count

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def in_progress(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def reconcile(self) -> ReconcileSnapshot:
        """
        Run (or join) a reconciliation pass.

        Returns:
            The snapshot of the last pass in the chain

        Raises:
            UnauthenticatedError: If the session has no user
            BackendUnavailableError: If a fetch failed or timed out; state is
                left exactly as it was
        """
        self._state.require_user()

        if self.in_progress:
            self._rerun_requested = True
            logger.debug("Reconciliation already running; re-run scheduled")
        else:
            self._inflight = asyncio.ensure_future(self._drain())

        # Shielded so a cancelled caller does not cancel a pass others await
        return await asyncio.shield(self._inflight)

    async def _drain(self) -> ReconcileSnapshot:
        while True:
            self._rerun_requested = False
            try:
                snapshot = await self._run_pass()
            except BackendUnavailableError:
                # A trigger recorded during a failed pass still gets its pass
                if not self._rerun_requested:
                    raise
                logger.debug("Reconciliation pass failed; re-running for triggers received mid-pass")
                continue
            if not self._rerun_requested:
                return snapshot
            logger.debug("Re-running reconciliation for triggers received mid-pass")

    async def _fetch(self, awaitable: Any) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self._timeout)

    async def _run_pass(self) -> ReconcileSnapshot:
        user_id = self._state.require_user()
        self._pass_count += 1
        logger.debug(f"Reconciliation pass {self._pass_count} for user {user_id}")

        try:
            request_rows, connection_rows = await self._fetch(asyncio.gather(
                self._client.fetch_requests_for_user(user_id),
                self._client.fetch_connections(user_id),
            ))

            profiles: dict[str, dict[str, Any]] = {}
            reverse_owner_ids: set[str] = set()

            if request_rows:
                profile_ids = {row["requester_id"] for row in request_rows}
                profile_ids |= {row["target_id"] for row in request_rows}
                profiles = await self._fetch(self._client.fetch_profiles(profile_ids))

                accepted_ids = {
                    row["target_id"] if row["requester_id"] == user_id else row["requester_id"]
                    for row in request_rows
                    if row.get("status") == RequestStatus.ACCEPTED.value
                }
                my_email = (profiles.get(user_id) or {}).get("email")
                if accepted_ids and my_email:
                    reverse_owner_ids = await self._fetch(
                        self._client.fetch_reverse_connection_owners(accepted_ids, my_email)
                    )

        except asyncio.TimeoutError as e:
            logger.warning(f"Reconciliation timed out after {self._timeout}s for user {user_id}")
            raise BackendUnavailableError("reconciliation", f"timed out after {self._timeout}s") from e
        except SupabaseClientError as e:
            logger.warning(f"Reconciliation fetch failed for user {user_id}: {e}")
            raise BackendUnavailableError("reconciliation", e.message) from e

        snapshot = resolve_snapshot(
            user_id, request_rows, connection_rows, profiles, reverse_owner_ids
        )
        self._state.apply_snapshot(snapshot)

        logger.debug(
            f"Reconciled user {user_id}: {len(snapshot.incoming)} incoming, "
            f"{len(snapshot.outgoing)} outgoing, {len(snapshot.peer_set)} peers"
        )
        return snapshot
