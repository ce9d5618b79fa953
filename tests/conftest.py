# =============================================================================
# tests/conftest.py - Pytest Configuration
# =============================================================================
# This module provides pytest fixtures and configuration for all tests.
#
# Key features:
# - Sets up mock environment variables before any imports
# - FakeSupabase: in-memory stand-in for lib.supabase_client.SupabaseClient
#   with the same async method surface, realtime fan-out, failure injection,
#   and artificial latency
# - Factories for ConnectionSession objects sharing one FakeSupabase
# =============================================================================

import os

# =============================================================================
# Set up test environment BEFORE any imports
# =============================================================================
# This must happen before importing app.config which loads settings immediately

os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test-service-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DEBUG", "true")

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import uuid4

import pytest

from app.config import settings
from core.services.connection_session import ConnectionSession
from lib.supabase_client import SupabaseClientError
from lib.utils import normalize_email


# =============================================================================
# Test Users
# =============================================================================

USER_A = "11111111-1111-4111-8111-111111111111"
USER_B = "22222222-2222-4222-8222-222222222222"
USER_C = "33333333-3333-4333-8333-333333333333"

EMAIL_A = "ann@example.com"
EMAIL_B = "ben@example.com"
EMAIL_C = "cara@example.com"


# =============================================================================
# FakeSupabase
# =============================================================================

class FakeSupabase:
    """
    In-memory replacement for SupabaseClient.

    - Tables are dicts of rows keyed by id; reads return copies
    - connection_requests enforces UNIQUE(requester_id, target_id)
    - Writes emit realtime payloads to matching subscriptions synchronously.
      As on Supabase, filtered subscriptions never see DELETE events; those
      reach unfiltered DELETE subscriptions only. `full_delete_records=False`
      strips a deleted row's old record down to its id (no REPLICA IDENTITY FULL)
    - `fail` holds method names that raise SupabaseClientError
    - `fail_once` holds method names that raise on their next call only
    - `delays` maps method names to seconds of artificial latency
    - `calls` counts invocations per method
    """

    def __init__(self):
        self.profiles: dict[str, dict[str, Any]] = {}
        self.requests: dict[str, dict[str, Any]] = {}
        self.connections: dict[str, dict[str, Any]] = {}
        self.notifications: list[dict[str, Any]] = []
        self.subscriptions: dict[str, tuple[str, str, str, str, Callable]] = {}
        self.full_delete_records = True

        self.fail: set[str] = set()
        # Method names that raise on their next call only
        self.fail_once: set[str] = set()
        # Owners whose connection inserts fail (partial accept failures)
        self.fail_connection_owners: set[str] = set()
        self.delays: dict[str, float] = {}
        self.calls: Counter = Counter()

        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)

    # -------------------------------------------------------------------------
    # Seeding helpers (synchronous, emit no events)
    # -------------------------------------------------------------------------

    def add_profile(self, user_id: str, full_name: str, email: str | None, **extra) -> dict:
        profile = {
            "id": user_id,
            "full_name": full_name,
            "email": email,
            "avatar_url": extra.get("avatar_url"),
            "job_title": extra.get("job_title"),
            "company": extra.get("company"),
            "phone": extra.get("phone"),
        }
        self.profiles[user_id] = profile
        return profile

    def seed_request(self, requester_id: str, target_id: str, status: str = "pending") -> dict:
        row = self._new_request(requester_id, target_id, status)
        self.requests[row["id"]] = row
        return dict(row)

    def seed_connection(self, owner_id: str, email: str | None, name: str = "Someone") -> dict:
        row = self._new_connection({
            "user_id": owner_id,
            "connection_name": name,
            "connection_email": email,
        })
        self.connections[row["id"]] = row
        return dict(row)

    def connection_rows_for(self, owner_id: str) -> list[dict]:
        return [dict(r) for r in self.connections.values() if r["user_id"] == owner_id]

    def requests_between(self, a: str, b: str) -> list[dict]:
        return [
            dict(r) for r in self.requests.values()
            if {r["requester_id"], r["target_id"]} == {a, b}
        ]

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _tick(self) -> str:
        self._clock += timedelta(seconds=1)
        return self._clock.isoformat()

    def _new_request(self, requester_id: str, target_id: str, status: str) -> dict:
        now = self._tick()
        return {
            "id": str(uuid4()),
            "requester_id": requester_id,
            "target_id": target_id,
            "status": status,
            "created_at": now,
            "updated_at": now,
        }

    def _new_connection(self, row: dict) -> dict:
        return {
            "id": str(uuid4()),
            "connection_title": None,
            "connection_company": None,
            "connection_phone": None,
            "notes": None,
            **row,
            "created_at": self._tick(),
        }

    async def _enter(self, name: str) -> None:
        self.calls[name] += 1
        if name in self.delays:
            await asyncio.sleep(self.delays[name])
        if name in self.fail_once:
            self.fail_once.discard(name)
            raise SupabaseClientError(message=f"{name} failed", code="FAKE_FAILURE")
        if name in self.fail:
            raise SupabaseClientError(message=f"{name} failed", code="FAKE_FAILURE")

    def _emit(self, table: str, event_type: str, record: dict, old_record: dict | None = None):
        source = record or old_record or {}
        if event_type == "DELETE" and not self.full_delete_records:
            old_record = {"id": source.get("id")}
        for sub_table, column, value, event, callback in list(self.subscriptions.values()):
            if sub_table != table or event not in ("*", event_type):
                continue
            if column and (event_type == "DELETE" or source.get(column) != value):
                continue
            callback({
                "data": {
                    "table": table,
                    "type": event_type,
                    "record": dict(record),
                    "old_record": dict(old_record or {}),
                }
            })

    # -------------------------------------------------------------------------
    # Connection requests
    # -------------------------------------------------------------------------

    async def fetch_requests_for_user(self, user_id: str) -> list[dict]:
        await self._enter("fetch_requests_for_user")
        rows = [
            dict(r) for r in self.requests.values()
            if user_id in (r["requester_id"], r["target_id"])
        ]
        return sorted(rows, key=lambda r: r["created_at"], reverse=True)

    async def fetch_requests_between(self, user_id: str, other_id: str) -> list[dict]:
        await self._enter("fetch_requests_between")
        return sorted(
            self.requests_between(user_id, other_id),
            key=lambda r: r["created_at"],
            reverse=True,
        )

    async def fetch_request(self, request_id: str) -> dict | None:
        await self._enter("fetch_request")
        row = self.requests.get(request_id)
        return dict(row) if row else None

    async def insert_request(self, requester_id: str, target_id: str) -> dict:
        await self._enter("insert_request")
        for row in self.requests.values():
            if row["requester_id"] == requester_id and row["target_id"] == target_id:
                raise SupabaseClientError(
                    message="duplicate key value violates unique constraint",
                    code="INSERT_REQUEST_FAILED",
                )
        row = self._new_request(requester_id, target_id, "pending")
        self.requests[row["id"]] = row
        self._emit("connection_requests", "INSERT", row)
        return dict(row)

    async def update_request_status(self, request_id: str, status: str) -> None:
        await self._enter("update_request_status")
        row = self.requests.get(request_id)
        if row is None:
            return
        old = dict(row)
        row["status"] = status
        row["updated_at"] = self._tick()
        self._emit("connection_requests", "UPDATE", row, old)

    async def delete_requests(self, request_ids) -> None:
        await self._enter("delete_requests")
        for request_id in list(request_ids):
            row = self.requests.pop(request_id, None)
            if row is not None:
                self._emit("connection_requests", "DELETE", {}, row)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    async def fetch_connections(self, owner_id: str) -> list[dict]:
        await self._enter("fetch_connections")
        rows = self.connection_rows_for(owner_id)
        return sorted(rows, key=lambda r: r["created_at"], reverse=True)

    async def fetch_connection(self, connection_id: str) -> dict | None:
        await self._enter("fetch_connection")
        row = self.connections.get(connection_id)
        return dict(row) if row else None

    async def fetch_reverse_connection_owners(self, owner_ids, email: str) -> set[str]:
        await self._enter("fetch_reverse_connection_owners")
        ids = set(owner_ids)
        target = normalize_email(email)
        return {
            r["user_id"] for r in self.connections.values()
            if r["user_id"] in ids and normalize_email(r.get("connection_email")) == target
        }

    async def insert_connection(self, row: dict) -> dict:
        await self._enter("insert_connection")
        if row.get("user_id") in self.fail_connection_owners:
            raise SupabaseClientError(message="insert_connection failed", code="FAKE_FAILURE")
        stored = self._new_connection(dict(row))
        self.connections[stored["id"]] = stored
        self._emit("connections", "INSERT", stored)
        return dict(stored)

    async def delete_connection(self, connection_id: str) -> None:
        await self._enter("delete_connection")
        row = self.connections.pop(connection_id, None)
        if row is not None:
            self._emit("connections", "DELETE", {}, row)

    # -------------------------------------------------------------------------
    # Profiles / notifications
    # -------------------------------------------------------------------------

    async def fetch_profile(self, profile_id: str) -> dict | None:
        await self._enter("fetch_profile")
        row = self.profiles.get(profile_id)
        return dict(row) if row else None

    async def fetch_profiles(self, profile_ids) -> dict[str, dict]:
        await self._enter("fetch_profiles")
        return {pid: dict(self.profiles[pid]) for pid in set(profile_ids) if pid in self.profiles}

    async def insert_notification(self, data: dict) -> dict:
        await self._enter("insert_notification")
        row = {"id": str(uuid4()), **data}
        self.notifications.append(row)
        return dict(row)

    async def ping(self) -> None:
        await self._enter("ping")

    # -------------------------------------------------------------------------
    # Realtime
    # -------------------------------------------------------------------------

    async def subscribe(
        self, table: str, row_filter: str | None, callback: Callable, event: str = "*"
    ) -> str:
        await self._enter("subscribe")
        column, _, value = (row_filter or "").partition("=eq.")
        handle = str(uuid4())
        self.subscriptions[handle] = (table, column, value, event, callback)
        return handle

    async def unsubscribe(self, handle: str) -> None:
        await self._enter("unsubscribe")
        self.subscriptions.pop(handle, None)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_supabase():
    """FakeSupabase seeded with three users: Ann (A), Ben (B), Cara (C)."""
    fake = FakeSupabase()
    fake.add_profile(USER_A, "Ann Lee", EMAIL_A, job_title="Founder", company="Acme")
    fake.add_profile(USER_B, "Ben Ortiz", EMAIL_B, avatar_url="https://cdn.example.com/ben.png")
    fake.add_profile(USER_C, "Cara Diaz", EMAIL_C)
    return fake


@pytest.fixture
def test_settings():
    """Settings with short windows so async tests stay fast."""
    return settings.model_copy(update={
        "RECONCILE_TIMEOUT_SECONDS": 0.5,
        "REALTIME_DEBOUNCE_SECONDS": 0.01,
        "NOTIFICATION_RATE_LIMIT": 10,
        "NOTIFICATION_RATE_WINDOW_SECONDS": 60,
    })


@pytest.fixture
def make_session(fake_supabase, test_settings):
    """
    Factory for ConnectionSession objects that share fake_supabase.

    Sessions are not started; call `await session.start()` in the test.
    """
    def factory(user_id: str) -> ConnectionSession:
        return ConnectionSession(user_id, fake_supabase, test_settings)

    return factory


async def settle(*sessions: ConnectionSession) -> None:
    """Wait until no debounce window or triggered pass is outstanding."""
    for _ in range(3):
        for session in sessions:
            await session.dispatcher.flush()
        await asyncio.sleep(0)
