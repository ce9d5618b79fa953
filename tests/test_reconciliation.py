# =============================================================================
# tests/test_reconciliation.py - Reconciliation Tests
# =============================================================================
# Two layers:
# - resolve_snapshot / derive_status: pure functions, plain dict inputs
# - Reconciler: passes against FakeSupabase (idempotence, failure handling,
#   single-flight behaviour)
# =============================================================================

import asyncio

import pytest

from app.exceptions import BackendUnavailableError, UnauthenticatedError
from core.models import RelationshipStatus
from core.services.connection_state import ConnectionState
from core.services.reconciliation_service import Reconciler, build_peer_set, resolve_snapshot
from tests.conftest import EMAIL_A, EMAIL_B, EMAIL_C, USER_A, USER_B, USER_C


def _row(request_id, requester, target, status, created_at):
    return {
        "id": request_id,
        "requester_id": requester,
        "target_id": target,
        "status": status,
        "created_at": created_at,
    }


PROFILES = {
    USER_A: {"id": USER_A, "full_name": "Ann Lee", "email": EMAIL_A},
    USER_B: {"id": USER_B, "full_name": "Ben Ortiz", "email": EMAIL_B},
    USER_C: {"id": USER_C, "full_name": "Cara Diaz", "email": EMAIL_C},
}


# =============================================================================
# Pure Resolution
# =============================================================================

class TestBuildPeerSet:
    """Tests for the peer set built from own connection rows."""

    def test_normalizes_and_skips_blanks(self):
        rows = [
            {"connection_email": " Ben@Example.com"},
            {"connection_email": ""},
            {"connection_email": None},
            {},
        ]
        assert build_peer_set(rows) == frozenset({"ben@example.com"})


class TestResolveSnapshot:
    """Tests for the merge rules of one pass."""

    def test_no_requests_still_replaces_peer_set(self):
        """Test the empty case: no statuses, no lists, fresh peer set."""
        snapshot = resolve_snapshot(
            USER_A, [], [{"connection_email": EMAIL_C}], {}, set()
        )

        assert snapshot.status_cache == {}
        assert snapshot.incoming == []
        assert snapshot.outgoing == []
        assert snapshot.peer_set == frozenset({EMAIL_C})

    def test_pending_directions(self):
        """Test pending-outgoing vs pending-incoming and list partitioning."""
        rows = [
            _row("r1", USER_A, USER_B, "pending", "2026-01-01T10:00:00+00:00"),
            _row("r2", USER_C, USER_A, "pending", "2026-01-01T11:00:00+00:00"),
        ]

        snapshot = resolve_snapshot(USER_A, rows, [], PROFILES, set())

        assert snapshot.status_cache == {
            USER_B: RelationshipStatus.PENDING_OUTGOING,
            USER_C: RelationshipStatus.PENDING_INCOMING,
        }
        assert [r.id for r in snapshot.outgoing] == ["r1"]
        assert [r.id for r in snapshot.incoming] == ["r2"]

    def test_requests_are_enriched_with_profiles(self):
        rows = [_row("r1", USER_C, USER_A, "pending", "2026-01-01T10:00:00+00:00")]

        snapshot = resolve_snapshot(USER_A, rows, [], PROFILES, set())

        request = snapshot.incoming[0]
        assert request.requester_profile.full_name == "Cara Diaz"
        assert request.target_profile.email == EMAIL_A

    def test_outgoing_keeps_answered_requests(self):
        """Test that outgoing lists every request the user sent."""
        rows = [_row("r1", USER_A, USER_B, "declined", "2026-01-01T10:00:00+00:00")]

        snapshot = resolve_snapshot(USER_A, rows, [], PROFILES, set())

        assert [r.id for r in snapshot.outgoing] == ["r1"]
        assert snapshot.status_cache[USER_B] == RelationshipStatus.DECLINED

    def test_newest_request_per_counterpart_wins(self):
        """Test that an older row for the same pair does not override."""
        rows = [
            _row("old", USER_B, USER_A, "declined", "2026-01-01T09:00:00+00:00"),
            _row("new", USER_A, USER_B, "pending", "2026-01-02T09:00:00+00:00"),
        ]

        snapshot = resolve_snapshot(USER_A, rows, [], PROFILES, set())

        assert snapshot.status_cache[USER_B] == RelationshipStatus.PENDING_OUTGOING

    def test_accepted_and_live_on_both_sides(self):
        rows = [_row("r1", USER_A, USER_B, "accepted", "2026-01-01T10:00:00+00:00")]

        snapshot = resolve_snapshot(
            USER_A, rows, [{"connection_email": EMAIL_B}], PROFILES, {USER_B}
        )

        assert snapshot.status_cache[USER_B] == RelationshipStatus.ACCEPTED

    def test_accepted_without_own_row_is_none(self):
        """Test that removing my own row collapses accepted to none."""
        rows = [_row("r1", USER_A, USER_B, "accepted", "2026-01-01T10:00:00+00:00")]

        snapshot = resolve_snapshot(USER_A, rows, [], PROFILES, {USER_B})

        assert snapshot.status_cache[USER_B] == RelationshipStatus.NONE

    def test_accepted_without_counterpart_row_is_none(self):
        """Test that the counterpart removing their row collapses accepted to none."""
        rows = [_row("r1", USER_A, USER_B, "accepted", "2026-01-01T10:00:00+00:00")]

        snapshot = resolve_snapshot(
            USER_A, rows, [{"connection_email": EMAIL_B}], PROFILES, set()
        )

        assert snapshot.status_cache[USER_B] == RelationshipStatus.NONE
        # The own row still counts for email membership
        assert EMAIL_B in snapshot.peer_set

    def test_accepted_counterpart_without_email_is_none(self):
        rows = [_row("r1", USER_A, USER_C, "accepted", "2026-01-01T10:00:00+00:00")]
        profiles = {**PROFILES, USER_C: {"id": USER_C, "full_name": "Cara", "email": None}}

        snapshot = resolve_snapshot(USER_A, rows, [], profiles, {USER_C})

        assert snapshot.status_cache[USER_C] == RelationshipStatus.NONE


# =============================================================================
# Reconciler
# =============================================================================

class TestReconciler:
    """Tests for reconciliation passes against FakeSupabase."""

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, fake_supabase):
        """Test that two passes with no writes in between agree exactly."""
        fake_supabase.seed_request(USER_A, USER_B, "accepted")
        fake_supabase.seed_request(USER_C, USER_A)
        fake_supabase.seed_connection(USER_A, EMAIL_B)
        fake_supabase.seed_connection(USER_B, EMAIL_A)

        state = ConnectionState(USER_A)
        reconciler = Reconciler(fake_supabase, state, timeout=1.0)

        first = await reconciler.reconcile()
        first_view = state.snapshot()
        second = await reconciler.reconcile()
        second_view = state.snapshot()

        assert first == second
        assert first_view["incoming"] == second_view["incoming"]
        assert first_view["outgoing"] == second_view["outgoing"]
        assert first_view["statuses"] == second_view["statuses"]
        assert state.peer_set == frozenset({EMAIL_B})
        assert state.get_status(USER_B) == RelationshipStatus.ACCEPTED
        assert state.get_status(USER_C) == RelationshipStatus.PENDING_INCOMING

    @pytest.mark.asyncio
    async def test_no_reverse_lookup_without_accepted_requests(self, fake_supabase):
        fake_supabase.seed_request(USER_A, USER_B)

        state = ConnectionState(USER_A)
        await Reconciler(fake_supabase, state, timeout=1.0).reconcile()

        assert fake_supabase.calls["fetch_reverse_connection_owners"] == 0
        assert fake_supabase.calls["fetch_profiles"] == 1

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_previous_state(self, fake_supabase):
        """Test that a failed pass leaves caches and lists untouched."""
        fake_supabase.seed_request(USER_A, USER_B)
        state = ConnectionState(USER_A)
        reconciler = Reconciler(fake_supabase, state, timeout=1.0)
        await reconciler.reconcile()
        before = state.snapshot()

        fake_supabase.fail.add("fetch_connections")
        with pytest.raises(BackendUnavailableError):
            await reconciler.reconcile()

        assert state.snapshot() == before

    @pytest.mark.asyncio
    async def test_timeout_keeps_previous_state(self, fake_supabase):
        """Test that a slow backend surfaces as BackendUnavailableError."""
        state = ConnectionState(USER_A)
        state.set_status(USER_B, RelationshipStatus.PENDING_OUTGOING)
        reconciler = Reconciler(fake_supabase, state, timeout=0.05)

        fake_supabase.delays["fetch_requests_for_user"] = 0.5
        with pytest.raises(BackendUnavailableError) as exc_info:
            await reconciler.reconcile()

        assert "timed out" in exc_info.value.message
        assert state.get_status(USER_B) == RelationshipStatus.PENDING_OUTGOING
        assert state.loading

    @pytest.mark.asyncio
    async def test_unauthenticated(self, fake_supabase):
        reconciler = Reconciler(fake_supabase, ConnectionState(None), timeout=1.0)

        with pytest.raises(UnauthenticatedError):
            await reconciler.reconcile()

        assert fake_supabase.calls["fetch_requests_for_user"] == 0

    @pytest.mark.asyncio
    async def test_concurrent_triggers_share_passes(self, fake_supabase):
        """Test that overlapping triggers cause one extra pass, not one each."""
        fake_supabase.seed_request(USER_A, USER_B)
        fake_supabase.delays["fetch_requests_for_user"] = 0.05

        state = ConnectionState(USER_A)
        reconciler = Reconciler(fake_supabase, state, timeout=1.0)

        first = asyncio.ensure_future(reconciler.reconcile())
        # Join once the first pass is fetching
        await asyncio.sleep(0.01)
        assert reconciler.in_progress
        results = await asyncio.gather(
            first,
            reconciler.reconcile(),
            reconciler.reconcile(),
        )

        assert reconciler.pass_count == 2
        assert results[0] == results[1] == results[2]
        assert not reconciler.in_progress

    @pytest.mark.asyncio
    async def test_triggers_before_first_step_share_one_pass(self, fake_supabase):
        """Test that joiners arriving before the pass fetches need no extra pass."""
        fake_supabase.seed_request(USER_A, USER_B)

        state = ConnectionState(USER_A)
        reconciler = Reconciler(fake_supabase, state, timeout=1.0)

        await asyncio.gather(
            reconciler.reconcile(),
            reconciler.reconcile(),
            reconciler.reconcile(),
        )

        assert reconciler.pass_count == 1

    @pytest.mark.asyncio
    async def test_trigger_during_failed_pass_still_runs(self, fake_supabase):
        """Test that a failed pass does not swallow a trigger recorded during it."""
        fake_supabase.fail_once.add("fetch_requests_for_user")
        fake_supabase.delays["fetch_requests_for_user"] = 0.05

        state = ConnectionState(USER_A)
        reconciler = Reconciler(fake_supabase, state, timeout=1.0)

        first = asyncio.ensure_future(reconciler.reconcile())
        await asyncio.sleep(0.01)
        fake_supabase.seed_request(USER_B, USER_A)
        second = asyncio.ensure_future(reconciler.reconcile())

        results = await asyncio.gather(first, second)

        assert reconciler.pass_count == 2
        assert results[0] == results[1]
        assert state.get_status(USER_B) == RelationshipStatus.PENDING_INCOMING

    @pytest.mark.asyncio
    async def test_failed_pass_without_trigger_raises(self, fake_supabase):
        fake_supabase.fail_once.add("fetch_requests_for_user")
        reconciler = Reconciler(fake_supabase, ConnectionState(USER_A), timeout=1.0)

        with pytest.raises(BackendUnavailableError):
            await reconciler.reconcile()

        assert reconciler.pass_count == 1

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_pass(self, fake_supabase):
        fake_supabase.seed_request(USER_A, USER_B)
        fake_supabase.delays["fetch_requests_for_user"] = 0.05

        state = ConnectionState(USER_A)
        reconciler = Reconciler(fake_supabase, state, timeout=1.0)

        impatient = asyncio.ensure_future(reconciler.reconcile())
        await asyncio.sleep(0.01)
        impatient.cancel()

        snapshot = await reconciler.reconcile()

        assert reconciler.pass_count == 2
        assert snapshot.status_cache[USER_B] == RelationshipStatus.PENDING_OUTGOING

    @pytest.mark.asyncio
    async def test_result_for_previous_user_discarded(self, fake_supabase):
        """Test that a pass finishing after logout does not repopulate state."""
        fake_supabase.seed_request(USER_A, USER_B)
        fake_supabase.delays["fetch_requests_for_user"] = 0.05

        state = ConnectionState(USER_A)
        reconciler = Reconciler(fake_supabase, state, timeout=1.0)

        pending = asyncio.ensure_future(reconciler.reconcile())
        await asyncio.sleep(0.01)
        state.reset()
        await pending

        assert state.status_cache == {}
        assert state.outgoing == []
