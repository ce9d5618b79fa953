# =============================================================================
# lib/supabase_client.py - Supabase Client Wrapper
# =============================================================================
# This module provides a typed async wrapper for the Supabase operations the
# connection layer needs:
# - Connection requests (both directions of a user pair)
# - Connection rows (the per-owner contact list)
# - Profiles (batch summaries for request enrichment)
# - Notifications (insert only)
# - Realtime change feeds (postgres_changes subscriptions)
#
# Every query is a single round trip. Callers decide what to fetch and when;
# this module never caches.
#
# Usage:
#   from lib.supabase_client import SupabaseClient
#   client = await SupabaseClient.get_instance()
#   requests = await client.fetch_requests_for_user(user_id)
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable
from uuid import UUID

from supabase import AsyncClient, acreate_client

from app.config import settings
from lib.utils import ApplicationError, normalize_email, normalize_uuid

# Set up logging for this module
logger = logging.getLogger(__name__)

# Columns returned for profile summaries (request enrichment, peer lookups)
PROFILE_SUMMARY_COLUMNS = "id, full_name, avatar_url, job_title, company, email"


class SupabaseClientError(ApplicationError):
    """
    Error during Supabase operations.

    Provides actionable error messages following the principle:
    "Errors should tell HOW to fix, not just WHAT failed."
    """

    def __init__(
        self,
        message: str,
        code: str = "SUPABASE_ERROR",
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code=code, suggestion=suggestion, details=details)


class SupabaseClient:
    """
    Typed async wrapper for Supabase database and realtime operations.

    One instance wraps one supabase-py AsyncClient. The application shares a
    single instance (see get_instance); tests inject an in-memory stand-in
    exposing the same methods.

    Example:
        client = await SupabaseClient.get_instance()

        # Everything a user sent or received, newest first
        rows = await client.fetch_requests_for_user("550e8400-...")

        # React to changes on the user's own contact list
        handle = await client.subscribe(
            "connections", "user_id=eq.550e8400-...", on_change
        )
    """

    _instance: SupabaseClient | None = None
    _instance_lock: asyncio.Lock | None = None

    def __init__(self, client: AsyncClient):
        self._client = client

    @classmethod
    async def get_instance(cls) -> SupabaseClient:
        """
        Get or create the shared Supabase client.

        Uses the service_role key which bypasses Row Level Security (RLS).
        Every query below filters by user explicitly, so access is scoped by
        the authenticated user id taken from the verified JWT.

        Returns:
            SupabaseClient: Shared wrapper instance

        Raises:
            SupabaseClientError: If client creation fails
        """
        if cls._instance_lock is None:
            cls._instance_lock = asyncio.Lock()

        async with cls._instance_lock:
            if cls._instance is None:
                try:
                    raw_client = await acreate_client(
                        settings.SUPABASE_URL,
                        settings.SUPABASE_SERVICE_KEY,
                    )
                except Exception as e:
                    raise SupabaseClientError(
                        message=f"Failed to create Supabase client: {e}",
                        code="CLIENT_INIT_FAILED",
                        suggestion="Check SUPABASE_URL and SUPABASE_SERVICE_KEY in your .env file",
                    ) from e
                cls._instance = cls(raw_client)
                logger.info("Supabase client initialized successfully")
        return cls._instance

    @staticmethod
    async def _execute(
        query: Any,
        code: str,
        action: str,
        details: dict[str, Any] | None = None,
        suggestion: str | None = None,
    ) -> Any:
        """Run a PostgREST query, translating any failure into SupabaseClientError."""
        try:
            return await query.execute()
        except Exception as e:
            raise SupabaseClientError(
                message=f"Failed to {action}: {e}",
                code=code,
                suggestion=suggestion,
                details=details,
            ) from e

    # -------------------------------------------------------------------------
    # Connection Requests
    # -------------------------------------------------------------------------

    async def fetch_requests_for_user(self, user_id: str | UUID) -> list[dict[str, Any]]:
        """
        Fetch every connection request the user sent or received.

        Args:
            user_id: The user UUID

        Returns:
            Request rows ordered newest first

        Raises:
            SupabaseClientError: If query fails
        """
        user_id_str = normalize_uuid(user_id)
        query = (
            self._client.table("connection_requests")
            .select("*")
            .or_(f"requester_id.eq.{user_id_str},target_id.eq.{user_id_str}")
            .order("created_at", desc=True)
        )
        response = await self._execute(
            query,
            code="FETCH_REQUESTS_FAILED",
            action="fetch connection requests",
            details={"user_id": user_id_str},
        )
        rows = response.data or []
        logger.debug(f"Fetched {len(rows)} connection requests for user {user_id_str}")
        return rows

    async def fetch_requests_between(
        self,
        user_id: str | UUID,
        other_id: str | UUID,
    ) -> list[dict[str, Any]]:
        """
        Fetch requests between two users in either direction, newest first.

        Args:
            user_id: One side of the pair
            other_id: The other side of the pair

        Returns:
            Request rows (normally zero or one, at most one per direction)

        Raises:
            SupabaseClientError: If query fails
        """
        a = normalize_uuid(user_id)
        b = normalize_uuid(other_id)
        query = (
            self._client.table("connection_requests")
            .select("*")
            .or_(
                f"and(requester_id.eq.{a},target_id.eq.{b}),"
                f"and(requester_id.eq.{b},target_id.eq.{a})"
            )
            .order("created_at", desc=True)
        )
        response = await self._execute(
            query,
            code="FETCH_PAIR_REQUESTS_FAILED",
            action="fetch requests between users",
            details={"user_id": a, "other_id": b},
        )
        return response.data or []

    async def fetch_request(self, request_id: str | UUID) -> dict[str, Any] | None:
        """
        Fetch a single connection request.

        Returns:
            Request row, or None if not found

        Raises:
            SupabaseClientError: If query fails
        """
        request_id_str = normalize_uuid(request_id)
        query = (
            self._client.table("connection_requests")
            .select("*")
            .eq("id", request_id_str)
            .limit(1)
        )
        response = await self._execute(
            query,
            code="FETCH_REQUEST_FAILED",
            action="fetch connection request",
            details={"request_id": request_id_str},
        )
        return response.data[0] if response.data else None

    async def insert_request(
        self,
        requester_id: str | UUID,
        target_id: str | UUID,
    ) -> dict[str, Any]:
        """
        Insert a new pending connection request.

        Returns:
            Inserted row with generated id and timestamps

        Raises:
            SupabaseClientError: If insert fails or returns nothing
        """
        data = {
            "requester_id": normalize_uuid(requester_id),
            "target_id": normalize_uuid(target_id),
            "status": "pending",
        }
        response = await self._execute(
            self._client.table("connection_requests").insert(data),
            code="INSERT_REQUEST_FAILED",
            action="insert connection request",
            details=data,
            suggestion="A request for this pair may already exist; reconcile and retry",
        )
        if not response.data:
            raise SupabaseClientError(
                message="Insert returned no data",
                code="INSERT_NO_DATA",
                details=data,
            )
        return response.data[0]

    async def update_request_status(self, request_id: str | UUID, status: str) -> None:
        """
        Set the status column of a connection request.

        Raises:
            SupabaseClientError: If update fails
        """
        request_id_str = normalize_uuid(request_id)
        query = (
            self._client.table("connection_requests")
            .update({"status": status})
            .eq("id", request_id_str)
        )
        await self._execute(
            query,
            code="UPDATE_REQUEST_FAILED",
            action="update connection request",
            details={"request_id": request_id_str, "status": status},
        )

    async def delete_requests(self, request_ids: Iterable[str | UUID]) -> None:
        """
        Delete connection requests by id.

        Raises:
            SupabaseClientError: If delete fails
        """
        ids = [normalize_uuid(request_id) for request_id in request_ids]
        if not ids:
            return
        query = self._client.table("connection_requests").delete().in_("id", ids)
        await self._execute(
            query,
            code="DELETE_REQUESTS_FAILED",
            action="delete connection requests",
            details={"request_ids": ids},
        )

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def fetch_connections(self, owner_id: str | UUID) -> list[dict[str, Any]]:
        """
        Fetch every connection row owned by a user, newest first.

        Raises:
            SupabaseClientError: If query fails
        """
        owner_id_str = normalize_uuid(owner_id)
        query = (
            self._client.table("connections")
            .select("*")
            .eq("user_id", owner_id_str)
            .order("created_at", desc=True)
        )
        response = await self._execute(
            query,
            code="FETCH_CONNECTIONS_FAILED",
            action="fetch connections",
            details={"user_id": owner_id_str},
        )
        return response.data or []

    async def fetch_connection(self, connection_id: str | UUID) -> dict[str, Any] | None:
        """
        Fetch a single connection row.

        Returns:
            Connection row, or None if not found

        Raises:
            SupabaseClientError: If query fails
        """
        connection_id_str = normalize_uuid(connection_id)
        query = (
            self._client.table("connections")
            .select("*")
            .eq("id", connection_id_str)
            .limit(1)
        )
        response = await self._execute(
            query,
            code="FETCH_CONNECTION_FAILED",
            action="fetch connection",
            details={"connection_id": connection_id_str},
        )
        return response.data[0] if response.data else None

    async def fetch_reverse_connection_owners(
        self,
        owner_ids: Iterable[str | UUID],
        email: str,
    ) -> set[str]:
        """
        Find which of the given users still hold a connection row pointing
        at `email`.

        This is the counterpart half of the live peer check: a user's own row
        can outlive the counterpart's deletion of theirs.

        Args:
            owner_ids: Candidate counterpart user ids
            email: The current user's email

        Returns:
            Subset of owner_ids whose contact list contains the email

        Raises:
            SupabaseClientError: If query fails
        """
        ids = sorted({normalize_uuid(owner_id) for owner_id in owner_ids})
        target = normalize_email(email)
        if not ids or not target:
            return set()

        query = (
            self._client.table("connections")
            .select("user_id, connection_email")
            .in_("user_id", ids)
            .ilike("connection_email", f"%{target}%")
        )
        response = await self._execute(
            query,
            code="FETCH_REVERSE_CONNECTIONS_FAILED",
            action="fetch counterpart connections",
            details={"owner_count": len(ids)},
        )
        # ilike only narrows the scan; exact identity is decided here
        return {
            row["user_id"]
            for row in response.data or []
            if normalize_email(row.get("connection_email")) == target
        }

    async def insert_connection(self, row: dict[str, Any]) -> dict[str, Any]:
        """
        Insert one directed connection row.

        Args:
            row: Column values (user_id, connection_name, connection_email, ...)

        Returns:
            Inserted row

        Raises:
            SupabaseClientError: If insert fails or returns nothing
        """
        response = await self._execute(
            self._client.table("connections").insert(row),
            code="INSERT_CONNECTION_FAILED",
            action="insert connection",
            details={"user_id": row.get("user_id")},
        )
        if not response.data:
            raise SupabaseClientError(
                message="Insert returned no data",
                code="INSERT_NO_DATA",
                details={"user_id": row.get("user_id")},
            )
        return response.data[0]

    async def delete_connection(self, connection_id: str | UUID) -> None:
        """
        Delete one connection row. The counterpart's row is not touched.

        Raises:
            SupabaseClientError: If delete fails
        """
        connection_id_str = normalize_uuid(connection_id)
        await self._execute(
            self._client.table("connections").delete().eq("id", connection_id_str),
            code="DELETE_CONNECTION_FAILED",
            action="delete connection",
            details={"connection_id": connection_id_str},
        )

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    async def fetch_profile(self, profile_id: str | UUID) -> dict[str, Any] | None:
        """
        Fetch a full profile row.

        Returns:
            Profile row, or None if not found

        Raises:
            SupabaseClientError: If query fails
        """
        profile_id_str = normalize_uuid(profile_id)
        query = (
            self._client.table("profiles")
            .select("*")
            .eq("id", profile_id_str)
            .limit(1)
        )
        response = await self._execute(
            query,
            code="FETCH_PROFILE_FAILED",
            action="fetch profile",
            details={"profile_id": profile_id_str},
        )
        return response.data[0] if response.data else None

    async def fetch_profiles(
        self,
        profile_ids: Iterable[str | UUID],
    ) -> dict[str, dict[str, Any]]:
        """
        Batch-fetch profile summaries in one query.

        Args:
            profile_ids: Profile UUIDs (duplicates are ignored)

        Returns:
            Mapping of profile id to summary row; missing profiles are absent

        Raises:
            SupabaseClientError: If query fails
        """
        ids = sorted({normalize_uuid(profile_id) for profile_id in profile_ids})
        if not ids:
            return {}

        query = self._client.table("profiles").select(PROFILE_SUMMARY_COLUMNS).in_("id", ids)
        response = await self._execute(
            query,
            code="FETCH_PROFILES_FAILED",
            action="fetch profiles",
            details={"profile_count": len(ids)},
        )
        return {row["id"]: row for row in response.data or []}

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    async def insert_notification(self, data: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a notification row.

        Raises:
            SupabaseClientError: If insert fails
        """
        response = await self._execute(
            self._client.table("notifications").insert(data),
            code="INSERT_NOTIFICATION_FAILED",
            action="insert notification",
            details={"user_id": data.get("user_id"), "type": data.get("type")},
        )
        return response.data[0] if response.data else {}

    async def ping(self) -> None:
        """
        Cheapest round trip that proves the database answers.

        Raises:
            SupabaseClientError: If query fails
        """
        await self._execute(
            self._client.table("profiles").select("id").limit(1),
            code="PING_FAILED",
            action="reach database",
        )

    # -------------------------------------------------------------------------
    # Realtime
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        table: str,
        row_filter: str | None,
        callback: Callable[[dict[str, Any]], None],
        event: str = "*",
    ) -> Any:
        """
        Subscribe to postgres changes on a table.

        Realtime does not deliver DELETE events to filtered subscriptions,
        and the old record of a DELETE carries only the primary key unless
        the table uses REPLICA IDENTITY FULL.

        Args:
            table: Table name in the public schema
            row_filter: Optional single-column predicate, e.g. "user_id=eq.<id>"
            callback: Called on the event loop with the raw realtime payload
            event: "*", "INSERT", "UPDATE" or "DELETE"

        Returns:
            Opaque handle to pass to unsubscribe()

        Raises:
            SupabaseClientError: If the channel cannot be joined
        """
        topic = f"{table}:{event}:{row_filter or 'all'}"
        try:
            channel = self._client.channel(topic)
            channel.on_postgres_changes(
                event=event,
                schema="public",
                table=table,
                filter=row_filter,
                callback=callback,
            )
            await channel.subscribe()
        except Exception as e:
            raise SupabaseClientError(
                message=f"Failed to subscribe to {topic}: {e}",
                code="SUBSCRIBE_FAILED",
                suggestion="Check that realtime is enabled for the table (supabase_realtime publication)",
                details={"table": table, "filter": row_filter},
            ) from e

        logger.debug(f"Subscribed to realtime channel {topic}")
        return channel

    async def unsubscribe(self, handle: Any) -> None:
        """
        Remove a realtime subscription created by subscribe().

        Raises:
            SupabaseClientError: If the channel cannot be removed
        """
        try:
            await self._client.remove_channel(handle)
        except Exception as e:
            raise SupabaseClientError(
                message=f"Failed to remove realtime channel: {e}",
                code="UNSUBSCRIBE_FAILED",
            ) from e
