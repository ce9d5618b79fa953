# =============================================================================
# lib/ - Standalone Utility Modules
# =============================================================================
# This package contains reusable utilities:
# - supabase_client.py: Typed async Supabase wrapper (tables + realtime)
# - utils.py: Shared utilities (error base class, UUID/email normalization)
#
# These modules are self-contained and can be tested in isolation.
# =============================================================================

from lib.supabase_client import SupabaseClient, SupabaseClientError
from lib.utils import ApplicationError, is_valid_uuid, normalize_email, normalize_uuid

__all__ = [
    # Supabase
    "SupabaseClient",
    "SupabaseClientError",
    # Utils
    "ApplicationError",
    "is_valid_uuid",
    "normalize_email",
    "normalize_uuid",
]
