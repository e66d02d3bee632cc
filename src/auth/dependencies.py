"""
FastAPI dependencies for authentication and authorization.

Security:
- Bearer session tokens; only SHA-256 digests are stored
- user_id injected from the validated session (request bodies never name the user)
- Admin endpoints require the admin role

Performance:
- Validated sessions cached in-memory (5 minute TTL), keyed by token digest
"""

import logging
import time
from datetime import UTC, datetime

from cachetools import TTLCache
from fastapi import Depends, Header, HTTPException, Request, status

from src.models.session import Session
from src.observability.logging import set_user_id
from src.services import BillingServices, get_services
from src.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

# Format: {token_digest: Session}
SESSION_CACHE: TTLCache = TTLCache(maxsize=10_000, ttl=300)


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication. Provide a session token via Authorization header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Use: 'Bearer {token}'",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return parts[1]


async def get_current_session(
    request: Request,
    authorization: str | None = Header(None, alias="Authorization"),
    services: BillingServices = Depends(get_services),
) -> Session:
    """
    Resolve the bearer session token to a Session.

    Raises:
        HTTPException 401: Missing, malformed, unknown or expired token
    """
    token = _bearer_token(authorization)
    digest = BillingDatabase.hash_token(token)

    session = SESSION_CACHE.get(digest)
    if session is not None and session.expires_at <= datetime.now(UTC):
        SESSION_CACHE.pop(digest, None)
        session = None

    if session is None:
        start_time = time.perf_counter()
        session = await services.db.get_session(token)
        lookup_ms = (time.perf_counter() - start_time) * 1000

        if session is None:
            logger.warning(f"Session validation failed (lookup time: {lookup_ms:.2f}ms)")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired session",
                headers={"WWW-Authenticate": "Bearer"},
            )
        SESSION_CACHE[digest] = session

    request.state.session = session
    set_user_id(session.user_id)
    return session


async def get_current_user_id(session: Session = Depends(get_current_session)) -> str:
    """Authenticated user id (the only source of user identity for billing calls)."""
    return session.user_id


async def require_admin(session: Session = Depends(get_current_session)) -> Session:
    """
    Require the admin role.

    Raises:
        HTTPException 403: Authenticated but not an admin
    """
    if not session.is_admin:
        logger.warning(f"Admin access denied for user: {session.user_id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return session
