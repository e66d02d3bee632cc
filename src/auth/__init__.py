"""
Authentication and authorization for the billing API.

Security:
- Bearer session tokens validated against stored SHA-256 digests
- user_id injection from the validated session (prevents spoofing)
- Admin role check for operator endpoints
"""

from src.auth.dependencies import (
    SESSION_CACHE,
    get_current_session,
    get_current_user_id,
    require_admin,
)

__all__ = [
    "SESSION_CACHE",
    "get_current_session",
    "get_current_user_id",
    "require_admin",
]
