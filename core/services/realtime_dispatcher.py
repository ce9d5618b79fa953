# =============================================================================
# core/services/realtime_dispatcher.py - Realtime Change Dispatcher
# =============================================================================
# Subscribes to row changes relevant to one user and turns bursts of events
# into single reconciliation passes.
#
# Subscriptions (public schema):
#   connection_requests  *       requester_id=eq.<user>   outgoing requests
#   connection_requests  *       target_id=eq.<user>      incoming requests
#   connections          *       user_id=eq.<user>        own connection rows
#   connection_requests  DELETE  (unfiltered)
#   connections          DELETE  (unfiltered)
#
# Realtime drops DELETE events on filtered subscriptions, so deletions come
# from the unfiltered channels. A deleted row whose old record shows it has
# nothing to do with the user is ignored; one that carries only its id (no
# REPLICA IDENTITY FULL) cannot be judged and always counts.
#
# Events are never applied as deltas. The first event opens a debounce
# window; events inside the window are coalesced; when it closes one
# reconcile() runs. An event arriving while that pass is in flight opens a
# new window, which then joins the Reconciler's single-flight chain.
# =============================================================================

import asyncio
import logging
from typing import Any

from app.exceptions import BuizlyException
from core.models.connection import ChangeEvent, RelationshipStatus
from core.services.reconciliation_service import Reconciler
from lib.supabase_client import SupabaseClientError

logger = logging.getLogger(__name__)


def subscription_filters(user_id: str) -> list[tuple[str, str | None, str]]:
    """(table, row filter, event) triples the dispatcher subscribes to for a user."""
    return [
        ("connection_requests", f"requester_id=eq.{user_id}", "*"),
        ("connection_requests", f"target_id=eq.{user_id}", "*"),
        ("connections", f"user_id=eq.{user_id}", "*"),
        ("connection_requests", None, "DELETE"),
        ("connections", None, "DELETE"),
    ]


class RealtimeDispatcher:
    """
    Debounced bridge from realtime events to Reconciler.reconcile().

    Example:
        dispatcher = RealtimeDispatcher(client, reconciler, user_id, debounce=0.3)
        await dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(self, client: Any, reconciler: Reconciler, user_id: str, debounce: float):
        self._client = client
        self._reconciler = reconciler
        self._user_id = user_id
        self._debounce = debounce

        self._handles: list[Any] = []
        self._window: asyncio.Task | None = None
        self._window_open = False
        self._pending_tasks: set[asyncio.Task] = set()
        self._stopped = False

        # Counters for logging / tests
        self.events_received = 0
        self.events_ignored = 0
        self.reconciles_triggered = 0

    @property
    def subscribed(self) -> bool:
        return bool(self._handles)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """
        Open the subscriptions.

        A subscription that fails to join is logged and skipped; the session
        keeps working from command-triggered reconciliation alone.
        """
        self._stopped = False
        for table, row_filter, event in subscription_filters(self._user_id):
            try:
                handle = await self._client.subscribe(
                    table, row_filter, self.handle_event, event=event
                )
            except SupabaseClientError as e:
                logger.warning(
                    f"Realtime subscription {table} {event} ({row_filter or 'all rows'}) failed: {e}"
                )
                continue
            self._handles.append(handle)

        logger.info(
            f"Realtime dispatcher started for user {self._user_id} "
            f"({len(self._handles)} subscriptions)"
        )

    async def stop(self) -> None:
        """Unsubscribe everything and cancel any pending window."""
        self._stopped = True

        for task in list(self._pending_tasks):
            task.cancel()
        if self._pending_tasks:
            await asyncio.gather(*self._pending_tasks, return_exceptions=True)
        self._pending_tasks.clear()
        self._window = None
        self._window_open = False

        handles, self._handles = self._handles, []
        for handle in handles:
            try:
                await self._client.unsubscribe(handle)
            except SupabaseClientError as e:
                logger.warning(f"Failed to remove realtime channel: {e}")

        logger.info(f"Realtime dispatcher stopped for user {self._user_id}")

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def handle_event(self, payload: Any) -> None:
        """
        Realtime callback. Must be called on the event loop thread.

        Payload contents are only logged; every event means "something
        changed, reconcile".
        """
        if self._stopped:
            return

        event = ChangeEvent.from_payload(payload)
        if not self._concerns_user(event):
            self.events_ignored += 1
            return

        self.events_received += 1
        logger.debug(
            f"Realtime {event.event_type or 'change'} on {event.table or 'unknown table'} "
            f"for user {self._user_id}"
        )

        if self._window_open:
            return

        self._window_open = True
        task = asyncio.ensure_future(self._fire())
        self._window = task
        self._pending_tasks.add(task)
        task.add_done_callback(self._pending_tasks.discard)

    def _concerns_user(self, event: ChangeEvent) -> bool:
        """
        Whether an unfiltered DELETE can affect this user's state.

        Other events come from the filtered channels and always count.
        """
        if (event.event_type or "").upper() != "DELETE":
            return True

        old = event.old_record
        if event.table == "connection_requests":
            parties = {old.get("requester_id"), old.get("target_id")} - {None}
            return not parties or self._user_id in parties

        if event.table == "connections":
            owner_id = old.get("user_id")
            if owner_id is None or owner_id == self._user_id:
                return True
            # A counterpart dropping their row ends an accepted pair
            return self._reconciler.state.get_status(owner_id) != RelationshipStatus.NONE

        return True

    async def _fire(self) -> None:
        await asyncio.sleep(self._debounce)
        # Later events open a new window from here on
        self._window_open = False

        if self._stopped:
            return

        self.reconciles_triggered += 1
        try:
            await self._reconciler.reconcile()
        except BuizlyException as e:
            logger.warning(f"Event-triggered reconciliation failed for {self._user_id}: {e.message}")

    async def flush(self) -> None:
        """Wait for every open window and the passes they trigger."""
        while self._pending_tasks:
            await asyncio.gather(*list(self._pending_tasks), return_exceptions=True)
