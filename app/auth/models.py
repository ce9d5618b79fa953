# =============================================================================
# app/auth/models.py - Authentication Models
# =============================================================================
# Pydantic models for authentication data.
# =============================================================================

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuthUser(BaseModel):
    """
    Authenticated user extracted from Supabase JWT.

    This is the minimal user info available from the token itself,
    without querying the database. Its id keys the user's ConnectionSession.
    """
    model_config = ConfigDict(frozen=True)

    id: UUID
    email: Optional[str] = None

    @property
    def user_id(self) -> str:
        """Id in the string form stored in Supabase rows."""
        return str(self.id)
