# =============================================================================
# app/routers/health.py - Health Check Endpoints
# =============================================================================
# Provides health check endpoints for monitoring and load balancers.
# =============================================================================

from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from app.config import settings
from app.dependencies import RegistryDep, SupabaseDep
from lib.supabase_client import SupabaseClientError

router = APIRouter()


# =============================================================================
# Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: str
    environment: str
    version: str


class ChecksResponse(BaseModel):
    """Individual service checks."""
    database: str
    active_sessions: int


class ReadinessResponse(BaseModel):
    """Readiness check response."""
    status: str
    checks: ChecksResponse
    timestamp: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Returns basic health status for load balancers and monitoring.
    """
    return HealthResponse(
        status="healthy",
        timestamp=_now(),
        environment=settings.ENVIRONMENT,
        version="1.0.0",
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(client: SupabaseDep, registry: RegistryDep):
    """
    Readiness check endpoint.

    Checks database connectivity and reports how many connection sessions
    are live.
    """
    try:
        await client.ping()
        database = "healthy"
    except SupabaseClientError as e:
        database = f"unhealthy: {e.message[:50]}"

    return ReadinessResponse(
        status="ready" if database == "healthy" else "degraded",
        checks=ChecksResponse(
            database=database,
            active_sessions=len(registry.active_users()),
        ),
        timestamp=_now(),
    )
