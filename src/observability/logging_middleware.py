"""
FastAPI middleware for structured request logging.

- Reads or generates request_id (X-Request-ID) and trace_id (X-Trace-ID)
- Logs request completion with status and latency
- Flags slow requests against configured thresholds
- Echoes X-Request-ID and X-Trace-ID on the response
"""

import time
import uuid
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from src.observability.logging import RequestContext, get_logger

logger = get_logger(__name__)

EXCLUDED_PATHS = frozenset({"/health", "/metrics", "/docs", "/redoc", "/openapi.json"})


class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """
    Bind request context for every downstream log call and log the outcome.

    Example output:
        {
          "event": "HTTP request completed",
          "request_id": "req_abc123",
          "trace_id": "trace_xyz789",
          "method": "POST",
          "path": "/billing/verify",
          "status_code": 200,
          "latency_ms": 45.2
        }
    """

    def __init__(
        self,
        app: ASGIApp,
        warning_threshold_ms: float = 500.0,
        error_threshold_ms: float = 2000.0,
    ):
        super().__init__(app)
        self.warning_threshold_ms = warning_threshold_ms
        self.error_threshold_ms = error_threshold_ms

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex[:16]}"
        trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex[:16]}"
        path = request.url.path

        with RequestContext(request_id=request_id, trace_id=trace_id):
            start_time = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as exc:
                logger.error(
                    "HTTP request failed",
                    method=request.method,
                    path=path,
                    latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                    exception_type=type(exc).__name__,
                    exc_info=True,
                )
                raise

            latency_ms = (time.perf_counter() - start_time) * 1000

            if path not in EXCLUDED_PATHS:
                log_fields = {
                    "method": request.method,
                    "path": path,
                    "status_code": response.status_code,
                    "latency_ms": round(latency_ms, 2),
                }
                if latency_ms > self.error_threshold_ms:
                    logger.error("Slow request (exceeds error threshold)", **log_fields)
                elif latency_ms > self.warning_threshold_ms:
                    logger.warning("Slow request (exceeds warning threshold)", **log_fields)
                else:
                    logger.info("HTTP request completed", **log_fields)

            response.headers["X-Request-ID"] = request_id
            response.headers["X-Trace-ID"] = trace_id
            return response
