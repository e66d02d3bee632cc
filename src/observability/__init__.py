"""
Observability infrastructure for the billing service.

Components:
- metrics.py: Prometheus counters and histograms for billing events
- logging.py: Structured JSON logging with request context
- logging_middleware.py / middleware.py: per-request logging and metrics
"""

from src.observability.metrics import (
    track_entitlement_denial,
    track_gateway_call,
    track_payment_verification,
    track_reconciliation,
    track_request,
)

__all__ = [
    "track_request",
    "track_payment_verification",
    "track_entitlement_denial",
    "track_gateway_call",
    "track_reconciliation",
]
