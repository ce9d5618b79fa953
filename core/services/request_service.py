# =============================================================================
# core/services/request_service.py - Connection Request Commands
# =============================================================================
# Send / accept / decline / remove, plus the synchronous status reads the UI
# renders from.
#
# Each command is a guarded read-then-write against Supabase followed by an
# optimistic single-key write to ConnectionState and a full reconciliation.
# Multi-step writes are NOT transactional: a step that already committed is
# never rolled back, and the next reconciliation pass derives the truth from
# the tables (see derive_status for the live peer check).
# =============================================================================

import logging
from typing import Any

from app.exceptions import (
    BackendUnavailableError,
    BuizlyException,
    ConnectionNotFoundError,
    ProfileNotFoundError,
    RequestForbiddenError,
    RequestNotFoundError,
    SelfRequestError,
)
from core.models.connection import (
    CommandOutcome,
    CommandResult,
    Connection,
    ConnectionRequest,
    RelationshipStatus,
    RequestStatus,
)
from core.models.notification import NotificationType
from core.services.connection_state import ConnectionState
from core.services.notification_service import NotificationService
from core.services.reconciliation_service import Reconciler, build_peer_set
from lib.supabase_client import SupabaseClientError
from lib.utils import normalize_email

logger = logging.getLogger(__name__)


class RequestService:
    """
    Command handlers for one session.

    Example:
        result = await service.send_request(target_id)
        if result.outcome == CommandOutcome.ALREADY_PENDING:
            ...
        service.get_request_status(target_id)  # RelationshipStatus, no I/O
    """

    def __init__(
        self,
        client: Any,
        state: ConnectionState,
        reconciler: Reconciler,
        notifications: NotificationService,
    ):
        self._client = client
        self._state = state
        self._reconciler = reconciler
        self._notifications = notifications

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_request_status(self, target_id: str) -> RelationshipStatus:
        """
        Current relationship to target_id, from memory only.

        Checks the status cache, then the outgoing and incoming lists, and
        defaults to NONE. Never performs I/O.
        """
        return self._state.get_status(target_id)

    def is_connected_with_email(self, email: str | None) -> bool:
        """Normalized membership test against the peer set."""
        return self._state.is_connected_with_email(email)

    # -------------------------------------------------------------------------
    # Send
    # -------------------------------------------------------------------------

    async def send_request(self, target_id: str) -> CommandResult:
        """
        Send a connection request to target_id.

        Precedence against existing requests between the pair:
        - any pending -> no-op (ALREADY_PENDING)
        - accepted and still connected on both sides -> no-op (ALREADY_CONNECTED)
        - declined, or accepted but the connection was since removed ->
          the old rows are deleted and a fresh pending request is inserted

        Args:
            target_id: User to connect with

        Returns:
            CommandResult with status "pending", "connected", or "error"

        Raises:
            UnauthenticatedError: If the session has no user
            SelfRequestError: If target_id is the current user
        """
        user_id = self._state.require_user()
        if target_id == user_id:
            raise SelfRequestError(user_id)

        try:
            existing = await self._client.fetch_requests_between(user_id, target_id)

            pending = [r for r in existing if r.get("status") == RequestStatus.PENDING.value]
            if pending:
                logger.info(f"Request between {user_id} and {target_id} already pending")
                return CommandResult(
                    success=False,
                    outcome=CommandOutcome.ALREADY_PENDING,
                    status="pending",
                    message="Request already sent, waiting for response",
                    request_id=pending[0].get("id"),
                )

            accepted = [r for r in existing if r.get("status") == RequestStatus.ACCEPTED.value]
            if accepted and await self._is_live_pair(user_id, target_id):
                logger.info(f"{user_id} and {target_id} are already connected")
                return CommandResult(
                    success=False,
                    outcome=CommandOutcome.ALREADY_CONNECTED,
                    status="connected",
                    message="Already connected",
                    request_id=accepted[0].get("id"),
                )

            if existing:
                # Declined or stale-accepted rows make way for the new request
                await self._client.delete_requests([r["id"] for r in existing])
                logger.info(
                    f"Removed {len(existing)} superseded request(s) between "
                    f"{user_id} and {target_id}"
                )

        except SupabaseClientError as e:
            logger.error(f"Failed to prepare request from {user_id} to {target_id}: {e}")
            return _error_result(e.message)

        previous = self._state.cached_status(target_id)
        self._state.set_status(target_id, RelationshipStatus.PENDING_OUTGOING)

        try:
            row = await self._client.insert_request(user_id, target_id)
        except SupabaseClientError as e:
            logger.error(f"Failed to insert request from {user_id} to {target_id}: {e}")
            if previous is None:
                self._state.clear_status(target_id)
            else:
                self._state.set_status(target_id, previous)
            await self._reconcile_quietly()
            return _error_result(e.message)

        logger.info(f"Connection request {row.get('id')} sent from {user_id} to {target_id}")

        await self._notify_new_request(user_id, target_id)
        await self._reconcile_quietly()

        return CommandResult(
            success=True,
            outcome=CommandOutcome.SUCCESS,
            status="pending",
            message="Request sent, waiting for approval",
            request_id=row.get("id"),
        )

    # -------------------------------------------------------------------------
    # Accept
    # -------------------------------------------------------------------------

    async def accept_request(self, request_id: str) -> CommandResult:
        """
        Accept a pending request addressed to the current user.

        Steps (each independent, none rolled back):
        1. mark the request accepted
        2. copy the requester's profile into the user's connections
        3. copy the user's profile into the requester's connections
        4. notify the requester and the user (best-effort)

        Steps 2 and 3 are skipped for an owner who still holds a row for
        the other side (a re-request after one side removed the other).

        Args:
            request_id: The request to accept

        Returns:
            CommandResult with status "connected" (message notes a partial
            failure of step 2 or 3), or "error" if neither row was written

        Raises:
            UnauthenticatedError: If the session has no user
            RequestNotFoundError: If the request doesn't exist
            RequestForbiddenError: If the user is not the request's target
            ProfileNotFoundError: If the requester's profile is missing
            BackendUnavailableError: If loading or the status update fails
        """
        user_id = self._state.require_user()
        request = await self._load_request(request_id, user_id, action="accept")

        if request.status == RequestStatus.ACCEPTED:
            return CommandResult(
                success=False,
                outcome=CommandOutcome.ALREADY_CONNECTED,
                status="connected",
                message="Request was already accepted",
                request_id=request_id,
            )
        if request.status == RequestStatus.DECLINED:
            return CommandResult(
                success=False,
                outcome=CommandOutcome.ERROR,
                status="declined",
                message="Request was already declined; the sender can request again",
                request_id=request_id,
            )

        requester_id = request.requester_id

        try:
            requester_profile = await self._client.fetch_profile(requester_id)
            if not requester_profile:
                raise ProfileNotFoundError(requester_id)
            my_profile = await self._client.fetch_profile(user_id)

            await self._client.update_request_status(request_id, RequestStatus.ACCEPTED.value)
        except SupabaseClientError as e:
            logger.error(f"Failed to accept request {request_id}: {e}")
            raise BackendUnavailableError("accept request", e.message) from e

        logger.info(f"User {user_id} accepted request {request_id} from {requester_id}")

        failed_owners = []
        for owner_id, profile in ((user_id, requester_profile), (requester_id, my_profile)):
            if not profile:
                logger.warning(f"No profile to copy into connections of {owner_id}")
                failed_owners.append(owner_id)
                continue
            try:
                if await self._holds_row_for(owner_id, profile.get("email")):
                    logger.info(f"Owner {owner_id} already holds a connection row; not duplicating")
                    continue
                await self._client.insert_connection(Connection.row_from_profile(owner_id, profile))
            except SupabaseClientError as e:
                logger.warning(f"Connection row for owner {owner_id} not created: {e}")
                failed_owners.append(owner_id)

        self._state.set_status(requester_id, RelationshipStatus.ACCEPTED)
        self._state.add_peer(requester_profile.get("email"))

        my_name = (my_profile or {}).get("full_name") or "Someone"
        requester_name = requester_profile.get("full_name") or "your new connection"
        await self._notifications.notify(
            sender_id=user_id,
            user_id=requester_id,
            kind=NotificationType.NEW_CONNECTION,
            title="Connection Accepted!",
            message=f"{my_name} accepted your connection request",
            data={"connection_id": user_id},
        )
        await self._notifications.notify(
            sender_id=user_id,
            user_id=user_id,
            kind=NotificationType.NEW_CONNECTION,
            title="Connected!",
            message=f"You're now connected with {requester_name}",
            data={"connection_id": requester_id},
        )

        await self._reconcile_quietly()

        if len(failed_owners) == 2:
            return CommandResult(
                success=False,
                outcome=CommandOutcome.ERROR,
                status="error",
                message="Request accepted but no connection rows could be created",
                request_id=request_id,
            )
        message = f"You're now connected with {requester_name}"
        if failed_owners:
            message += " (one side of the connection is still syncing)"
        return CommandResult(
            success=True,
            outcome=CommandOutcome.SUCCESS,
            status="connected",
            message=message,
            request_id=request_id,
        )

    # -------------------------------------------------------------------------
    # Decline
    # -------------------------------------------------------------------------

    async def decline_request(self, request_id: str) -> CommandResult:
        """
        Decline a request addressed to the current user.

        The requester may request again later; send_request deletes the
        declined row first.

        Raises:
            UnauthenticatedError: If the session has no user
            RequestNotFoundError: If the request doesn't exist
            RequestForbiddenError: If the user is not the request's target
            BackendUnavailableError: If the update fails
        """
        user_id = self._state.require_user()
        request = await self._load_request(request_id, user_id, action="decline")

        try:
            await self._client.update_request_status(request_id, RequestStatus.DECLINED.value)
        except SupabaseClientError as e:
            logger.error(f"Failed to decline request {request_id}: {e}")
            raise BackendUnavailableError("decline request", e.message) from e

        logger.info(f"User {user_id} declined request {request_id}")
        self._state.set_status(request.requester_id, RelationshipStatus.DECLINED)
        await self._reconcile_quietly()

        return CommandResult(
            success=True,
            outcome=CommandOutcome.SUCCESS,
            status="declined",
            message="Request declined",
            request_id=request_id,
        )

    # -------------------------------------------------------------------------
    # Remove connection
    # -------------------------------------------------------------------------

    async def remove_connection(self, connection_id: str) -> CommandResult:
        """
        Delete one of the current user's connection rows.

        Only the user's own rows are removed; the counterpart keeps theirs.
        Every row of the user's that carries the same email goes with it, so
        the peer set loses the email. The accepted request is left in place
        and reconciliation reports the pair as NONE from now on, for both
        users.

        Raises:
            UnauthenticatedError: If the session has no user
            ConnectionNotFoundError: If the row doesn't exist or isn't the user's
            BackendUnavailableError: If the delete fails
        """
        user_id = self._state.require_user()

        try:
            row = await self._client.fetch_connection(connection_id)
            if not row or row.get("user_id") != user_id:
                raise ConnectionNotFoundError(connection_id)
            connection = Connection.model_validate(row)

            doomed = [connection.id]
            if connection.normalized_email:
                for other in await self._client.fetch_connections(user_id):
                    other = Connection.model_validate(other)
                    if other.id != connection.id and other.normalized_email == connection.normalized_email:
                        doomed.append(other.id)

            for doomed_id in doomed:
                await self._client.delete_connection(doomed_id)
        except SupabaseClientError as e:
            logger.error(f"Failed to remove connection {connection_id}: {e}")
            raise BackendUnavailableError("remove connection", e.message) from e

        logger.info(f"User {user_id} removed connection {connection_id} ({len(doomed)} rows)")
        self._state.discard_peer(connection.connection_email)
        await self._reconcile_quietly()

        return CommandResult(
            success=True,
            outcome=CommandOutcome.SUCCESS,
            status="removed",
            message=f"Removed {connection.connection_name} from your connections",
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _load_request(self, request_id: str, user_id: str, action: str) -> ConnectionRequest:
        try:
            row = await self._client.fetch_request(request_id)
        except SupabaseClientError as e:
            raise BackendUnavailableError(f"{action} request", e.message) from e

        if not row:
            raise RequestNotFoundError(request_id)

        request = ConnectionRequest.model_validate(row)
        if request.target_id != user_id:
            raise RequestForbiddenError(request_id, action)
        return request

    async def _holds_row_for(self, owner_id: str, email: str | None) -> bool:
        if not normalize_email(email):
            return False
        owners = await self._client.fetch_reverse_connection_owners({owner_id}, email)
        return owner_id in owners

    async def _is_live_pair(self, user_id: str, other_id: str) -> bool:
        """Both users still hold a connection row for each other."""
        profiles = await self._client.fetch_profiles({user_id, other_id})
        my_email = normalize_email((profiles.get(user_id) or {}).get("email"))
        other_email = normalize_email((profiles.get(other_id) or {}).get("email"))
        if not my_email or not other_email:
            return False

        own_rows = await self._client.fetch_connections(user_id)
        if other_email not in build_peer_set(own_rows):
            return False

        owners = await self._client.fetch_reverse_connection_owners({other_id}, my_email)
        return other_id in owners

    async def _notify_new_request(self, user_id: str, target_id: str) -> None:
        try:
            me = await self._client.fetch_profile(user_id) or {}
        except SupabaseClientError as e:
            logger.warning(f"Could not load requester profile for notification: {e}")
            me = {}

        name = me.get("full_name") or "Someone"
        await self._notifications.notify(
            sender_id=user_id,
            user_id=target_id,
            kind=NotificationType.NEW_CONNECTION,
            title="New Connection Request",
            message=f"{name} wants to connect with you",
            data={
                "requester_id": user_id,
                "requester_name": me.get("full_name"),
                "requester_avatar": me.get("avatar_url"),
            },
        )

    async def _reconcile_quietly(self) -> None:
        """Run a reconciliation pass; a failure leaves state as is and is logged."""
        try:
            await self._reconciler.reconcile()
        except BuizlyException as e:
            logger.warning(f"Post-command reconciliation failed: {e.message}")


def _error_result(message: str) -> CommandResult:
    return CommandResult(
        success=False,
        outcome=CommandOutcome.ERROR,
        status="error",
        message=message,
    )
