# =============================================================================
# core/ - Business Logic Package
# =============================================================================
# Framework-agnostic connection-state logic:
# - models/: Pydantic schemas for requests, connections, notifications
# - services/: state holder, reconciler, command handlers, realtime dispatch
#
# Code in this package should NOT import from FastAPI.
# Supabase access goes through lib.supabase_client so tests can swap in a fake.
# =============================================================================
