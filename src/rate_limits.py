"""
Rate limiting for checkout endpoints.

Uses slowapi with in-memory storage. Requests are keyed by the
authenticated user when a session is present, else by client IP (public
storefront checkout and webhooks).

Limits come from ServiceConfig:
- SERVICE_ORDER_RATE_LIMIT: order creation (default 20/minute)
- SERVICE_VERIFY_RATE_LIMIT: payment verification (default 30/minute)
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from src.config import get_settings
from src.observability.metrics import track_rate_limit_exceeded
from src.observability.middleware import normalize_endpoint

logger = logging.getLogger(__name__)


def rate_limit_key(request: Request) -> str:
    """
    Rate limit key: user id for authenticated requests, else client IP.
    """
    session = getattr(request.state, "session", None)
    if session is not None:
        return f"user:{session.user_id}"
    return f"ip:{get_remote_address(request)}"


def order_rate_limit() -> str:
    return get_settings().service.order_rate_limit


def verify_rate_limit() -> str:
    return get_settings().service.verify_rate_limit


limiter = Limiter(
    key_func=rate_limit_key,
    enabled=get_settings().service.rate_limit_enabled,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 and count the rejection."""
    endpoint = normalize_endpoint(request.url.path)
    track_rate_limit_exceeded(endpoint)
    logger.warning(
        f"Rate limit exceeded on {endpoint}",
        extra={"key": rate_limit_key(request), "limit": str(exc.detail)},
    )
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )
