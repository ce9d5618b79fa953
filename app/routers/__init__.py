# =============================================================================
# app/routers/ - API Route Definitions
# =============================================================================
# This package contains FastAPI routers organized by feature:
# - health.py: Health check endpoints
# - connections.py: Connection requests, statuses, and session logout
#
# Each router is mounted in main.py with a URL prefix.
# =============================================================================

from . import connections
from . import health

__all__ = [
    "connections",
    "health",
]
