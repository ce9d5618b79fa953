# =============================================================================
# tests/ - Test Suite
# =============================================================================
# This package contains all tests for the Buizly connection service:
# - conftest.py: environment setup, FakeSupabase, session factories
# - test_models.py: Pydantic model validation and sanitization
# - test_connection_state.py: in-memory state holder
# - test_reconciliation.py: pure resolution rules and the Reconciler
# - test_request_service.py: send / accept / decline / remove commands
# - test_realtime_dispatcher.py: subscriptions and debouncing
# - test_notification_service.py: notification validation and rate limiting
# - test_scenarios.py: two-user lifecycle with realtime enabled
# - test_api.py: HTTP and WebSocket endpoints
#
# Run tests with: pytest
# =============================================================================
