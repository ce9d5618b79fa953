# =============================================================================
# app/main.py - FastAPI Application Entry Point
# =============================================================================
# This is the main entry point for the Buizly connection service.
# It configures the FastAPI application with middleware, routers, and handlers.
#
# Usage:
#   uvicorn app.main:app --reload
# =============================================================================

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.exceptions import (
    BuizlyException,
    buizly_exception_handler,
    validation_exception_handler,
)
from app.routers import connections, health
from app.websocket import routes as websocket_routes
from core.services.connection_session import SessionRegistry
from lib.supabase_client import SupabaseClient

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    - Startup: log configuration
    - Shutdown: close every connection session (drops realtime channels)
    """
    logger.info(f"Starting Buizly connection service in {settings.ENVIRONMENT} mode")
    logger.info(f"CORS origins: {settings.cors_origins_list}")

    yield

    logger.info("Shutting down Buizly connection service")
    await app.state.session_registry.close_all()


# Create FastAPI application
app = FastAPI(
    title="Buizly Connections API",
    description="""
## Connection requests and live relationship state

Keeps each signed-in user's view of their connection requests and
connections consistent with the database, across tabs and devices.

### How It Works

1. **Send** a request to another user's profile
2. The target **accepts** or **declines** it
3. Every change is picked up over Supabase Realtime and the user's state is
   **reconciled** from the tables, then pushed over the WebSocket

### Statuses

| Status | Meaning |
|--------|---------|
| `none` | No request, or a connection that was removed |
| `pending-outgoing` | You sent a request that is waiting |
| `pending-incoming` | Someone sent you a request |
| `accepted` | Connected on both sides |
| `declined` | The latest request was declined |
""",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Connections",
            "description": "Send, accept, decline, and inspect connection requests",
        },
        {
            "name": "WebSocket",
            "description": "Real-time connection state updates",
        },
        {
            "name": "Health",
            "description": "API health and readiness checks",
        },
    ],
)

# One session per signed-in user, created on first request
app.state.session_registry = SessionRegistry(SupabaseClient.get_instance, settings)


# =============================================================================
# Middleware
# =============================================================================

# CORS middleware - allows cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list if settings.is_production else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(BuizlyException)
async def handle_buizly_exception(request: Request, exc: BuizlyException):
    """Handle custom Buizly exceptions."""
    return await buizly_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    """Handle malformed request bodies and parameters."""
    return await validation_exception_handler(request, exc)


@app.exception_handler(Exception)
async def handle_general_exception(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An unexpected error occurred",
            "code": "INTERNAL_ERROR",
        }
    )


# =============================================================================
# Routers
# =============================================================================

# Health check endpoints
app.include_router(
    health.router,
    prefix="/api/v1",
    tags=["Health"]
)

# Connection request endpoints
app.include_router(
    connections.router,
    prefix="/api/v1/connections",
    tags=["Connections"]
)

# WebSocket endpoints (Real-time updates)
app.include_router(
    websocket_routes.router,
    tags=["WebSocket"]
)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/", tags=["Root"])
async def root():
    """
    Root endpoint - returns API info.
    """
    return {
        "name": "Buizly Connections API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/v1/health",
    }
