# =============================================================================
# app/dependencies.py - Shared Dependencies
# =============================================================================
# FastAPI dependency injection for shared resources.
# These are injected into route handlers using Depends().
#
# The SessionRegistry lives on app.state (created in main.py); each
# authenticated request resolves to that user's ConnectionSession.
# =============================================================================

from typing import Annotated

from fastapi import Depends, Request

from app.auth import AuthUser, get_current_user
from core.services.connection_session import ConnectionSession, SessionRegistry
from lib.supabase_client import SupabaseClient


async def get_supabase_client() -> SupabaseClient:
    """
    Get Supabase client instance.

    Returns the shared client wrapper.
    """
    return await SupabaseClient.get_instance()


def get_session_registry(request: Request) -> SessionRegistry:
    """The application's SessionRegistry."""
    return request.app.state.session_registry


async def get_connection_session(
    user: AuthUser = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_session_registry),
) -> ConnectionSession:
    """
    The current user's ConnectionSession, started on first use.

    Starting a session subscribes to realtime changes and runs the initial
    reconciliation pass, so the first request for a user is the slowest.
    """
    return await registry.get_or_start(user.user_id)


# Type aliases for dependency injection
SupabaseDep = Annotated[SupabaseClient, Depends(get_supabase_client)]
RegistryDep = Annotated[SessionRegistry, Depends(get_session_registry)]
SessionDep = Annotated[ConnectionSession, Depends(get_connection_session)]
CurrentUserDep = Annotated[AuthUser, Depends(get_current_user)]
