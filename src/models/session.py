"""Authenticated session model resolved from a bearer token."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class SessionRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class Session(BaseModel):
    """A validated session. The plaintext token is never stored."""

    user_id: str = Field(..., min_length=1)
    role: SessionRole = SessionRole.USER
    expires_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == SessionRole.ADMIN
