"""
Middleware for automatic Prometheus metric tracking.

Tracks latency, count and in-flight requests for every HTTP request.
Dynamic path segments are collapsed so metric cardinality stays bounded.
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from src.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_DYNAMIC_SEGMENTS = (
    (re.compile(r"^/billing/webhook/[^/]+$"), "/billing/webhook/{provider}"),
    (re.compile(r"^/entitlements/features/[^/]+$"), "/entitlements/features/{feature}"),
)


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Examples:
        /billing/webhook/razorpay -> /billing/webhook/{provider}
        /billing/order -> /billing/order (unchanged)
    """
    for pattern, replacement in _DYNAMIC_SEGMENTS:
        if pattern.match(path):
            return replacement
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record request latency, count and in-flight gauge."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception as exc:
            logger.error(f"Request failed: {exc}", exc_info=True)
            track_error(error_type=type(exc).__name__, endpoint=endpoint)
            raise
        finally:
            http_requests_active.labels(method=method, endpoint=endpoint).dec()
            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=time.perf_counter() - start_time,
            )

        return response
