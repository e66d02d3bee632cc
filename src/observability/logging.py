"""
Structured logging for the billing service.

Features:
- JSON output for log aggregation, console output for development
- Request context propagation (request_id, user_id, trace_id)
- Redaction of payment secrets, signatures and contact details

Architecture:
- structlog for structured logging
- Context variables for request-scoped data
- Processors for enrichment and redaction
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor

# Request-scoped context; propagates across await points
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

SENSITIVE_FIELDS = frozenset(
    {
        "authorization",
        "key_secret",
        "password",
        "secret",
        "secret_key",
        "signature",
        "token",
        "webhook_secret",
    }
)

CONTACT_FIELDS = frozenset({"email", "phone"})


# ============================================================================
# CUSTOM PROCESSORS
# ============================================================================


def add_request_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Inject request_id, user_id and trace_id when they are set."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    user_id = user_id_var.get()
    if user_id:
        event_dict.setdefault("user_id", user_id)

    trace_id = trace_id_var.get()
    if trace_id:
        event_dict["trace_id"] = trace_id

    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add an ISO 8601 UTC timestamp with microsecond precision."""
    now = time.time()
    event_dict["timestamp"] = (
        time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)) + f".{int((now % 1) * 1000000):06d}Z"
    )
    return event_dict


def add_service_metadata(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Add service, version and environment for filtering in log aggregation.

    Values come from LOGGING_SERVICE_NAME, LOGGING_SERVICE_VERSION and
    LOGGING_ENVIRONMENT.
    """
    # Imported lazily to avoid a config <-> logging import cycle
    from src.config import get_settings

    settings = get_settings()
    event_dict["service"] = settings.logging.service_name
    event_dict["version"] = settings.logging.service_version
    event_dict["environment"] = settings.logging.environment
    return event_dict


def redact_sensitive_fields(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Redact credentials and contact details.

    - signature, secret, token and similar: short prefix kept, rest masked
    - email: domain only (buyer@example.com -> ***@example.com)
    - phone: last 4 digits only
    """
    for key in list(event_dict.keys()):
        lowered = key.lower()
        value = event_dict[key]
        if not isinstance(value, str):
            continue

        if lowered in SENSITIVE_FIELDS:
            if len(value) > 12:
                event_dict[key] = f"{value[:6]}***"
            else:
                event_dict[key] = "***REDACTED***"
        elif lowered == "email" and "@" in value:
            event_dict[key] = f"***@{value.split('@', 1)[1]}"
        elif lowered == "phone" and len(value) > 4:
            event_dict[key] = f"***{value[-4:]}"

    return event_dict


def add_exception_info(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add exception_type and exception_message for error grouping."""
    exc_info = event_dict.get("exc_info")
    if exc_info and isinstance(exc_info, tuple) and len(exc_info) == 3:
        exc_type, exc_value, _ = exc_info
        event_dict["exception_type"] = exc_type.__name__ if exc_type else "Unknown"
        event_dict["exception_message"] = str(exc_value) if exc_value else ""

    return event_dict


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    colorized: bool = False,
) -> None:
    """
    Configure structlog and the standard library root logger.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON output (True for production, False for development)
        colorized: Colorize console output (only for development)

    JSON output example:
        {
          "timestamp": "2025-01-15T10:30:45.123456Z",
          "level": "info",
          "event": "Payment verified",
          "service": "billing-service",
          "request_id": "req_abc123",
          "user_id": "user_42",
          "order_id": "order_N1x2"
        }
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_context,
        add_service_metadata,
        redact_sensitive_fields,
        add_timestamp,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        add_exception_info,
    ]

    if json_output:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=colorized),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("Order created", order_id="order_N1x2", amount_minor_units=149700)
    """
    return structlog.get_logger(name)


# ============================================================================
# CONTEXT MANAGERS
# ============================================================================


class RequestContext:
    """
    Context manager for request-scoped logging.

    Generates request_id and trace_id when not supplied and resets every
    variable on exit so nothing leaks into the next request.

    Usage:
        with RequestContext(user_id=session.user_id):
            logger.info("Processing request")
    """

    def __init__(
        self,
        user_id: str | None = None,
        trace_id: str | None = None,
        request_id: str | None = None,
    ):
        self.request_id = request_id or f"req_{uuid.uuid4().hex[:16]}"
        self.user_id = user_id
        self.trace_id = trace_id or f"trace_{uuid.uuid4().hex[:16]}"

        self._request_id_token = None
        self._user_id_token = None
        self._trace_id_token = None

    def __enter__(self):
        self._request_id_token = request_id_var.set(self.request_id)
        # Always set user_id (even if None) so a later set_user_id() is reset too
        self._user_id_token = user_id_var.set(self.user_id)
        self._trace_id_token = trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._request_id_token is not None:
            request_id_var.reset(self._request_id_token)
        if self._user_id_token is not None:
            user_id_var.reset(self._user_id_token)
        if self._trace_id_token is not None:
            trace_id_var.reset(self._trace_id_token)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def set_user_id(user_id: str) -> None:
    """Set user ID for current context."""
    user_id_var.set(user_id)


def get_request_id() -> str | None:
    """Get request ID from current context."""
    return request_id_var.get()


def get_user_id() -> str | None:
    return user_id_var.get()
