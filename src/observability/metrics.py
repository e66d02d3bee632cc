"""
Prometheus metrics for the billing service.

Metrics tracked:
- HTTP request latency (histogram) and count (counter) per endpoint
- In-flight requests (gauge)
- Payment verification outcomes (counter)
- Entitlement denials by resource (counter)
- Gateway calls by provider, operation and result (counter + histogram)
- Reconciliation runs by result (counter)
- Webhook events by provider and outcome (counter)

Exposed via the /metrics endpoint for Prometheus scraping.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

http_request_duration_seconds = Histogram(
    "billing_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000, 10.000),
)

http_requests_total = Counter(
    "billing_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "billing_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method", "endpoint"],
)

errors_total = Counter(
    "billing_errors_total",
    "Unhandled errors by type",
    labelnames=["error_type", "endpoint"],
)

rate_limit_exceeded_total = Counter(
    "billing_rate_limit_exceeded_total",
    "Requests rejected by the rate limiter",
    labelnames=["endpoint"],
)

# ============================================================================
# BILLING METRICS
# ============================================================================

# outcome: applied, replayed, not_found, already_processed, signature_mismatch, order_mismatch
payment_verifications_total = Counter(
    "billing_payment_verifications_total",
    "Payment verification attempts by outcome",
    labelnames=["order_type", "outcome"],
)

payment_orders_created_total = Counter(
    "billing_payment_orders_created_total",
    "Payment orders opened at a gateway",
    labelnames=["order_type", "provider"],
)

entitlement_denials_total = Counter(
    "billing_entitlement_denials_total",
    "Write attempts denied by plan limits",
    labelnames=["resource", "plan"],
)

reconciliation_runs_total = Counter(
    "billing_reconciliation_runs_total",
    "Subscription syncs against the gateway",
    labelnames=["result"],
)

webhook_events_total = Counter(
    "billing_webhook_events_total",
    "Gateway webhook events",
    labelnames=["provider", "event_type", "outcome"],
)

# ============================================================================
# GATEWAY METRICS
# ============================================================================

gateway_calls_total = Counter(
    "billing_gateway_calls_total",
    "Outbound payment gateway calls",
    labelnames=["provider", "operation", "result"],
)

gateway_call_duration_seconds = Histogram(
    "billing_gateway_call_duration_seconds",
    "Outbound payment gateway call latency",
    labelnames=["provider", "operation"],
    buckets=(0.050, 0.100, 0.250, 0.500, 1.000, 2.500, 5.000, 10.000, 30.000),
)


# ============================================================================
# HELPERS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Normalized endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_error(error_type: str, endpoint: str) -> None:
    errors_total.labels(error_type=error_type, endpoint=endpoint).inc()


def track_rate_limit_exceeded(endpoint: str) -> None:
    rate_limit_exceeded_total.labels(endpoint=endpoint).inc()


def track_payment_verification(order_type: str, outcome: str) -> None:
    """
    Record a verification outcome.

    Args:
        order_type: "subscription" or "catalog"
        outcome: applied, replayed, not_found, already_processed,
            signature_mismatch or order_mismatch
    """
    payment_verifications_total.labels(order_type=order_type, outcome=outcome).inc()


def track_order_created(order_type: str, provider: str) -> None:
    payment_orders_created_total.labels(order_type=order_type, provider=provider).inc()


def track_entitlement_denial(resource: str, plan: str) -> None:
    entitlement_denials_total.labels(resource=resource, plan=plan).inc()


def track_reconciliation(result: str) -> None:
    """Record a sync run (result: synced, skipped, failed)."""
    reconciliation_runs_total.labels(result=result).inc()


def track_webhook_event(provider: str, event_type: str, outcome: str) -> None:
    webhook_events_total.labels(provider=provider, event_type=event_type, outcome=outcome).inc()


def track_gateway_call(
    provider: str,
    operation: str,
    success: bool,
    duration_seconds: float,
) -> None:
    """
    Track one outbound gateway call (after retries are exhausted or it succeeded).

    Args:
        provider: Gateway name (razorpay, cashfree)
        operation: create_order, create_recurring, fetch_recurring, cancel_recurring
        success: Whether the call returned a usable response
        duration_seconds: Wall time including retries
    """
    gateway_calls_total.labels(
        provider=provider,
        operation=operation,
        result="success" if success else "failure",
    ).inc()
    gateway_call_duration_seconds.labels(provider=provider, operation=operation).observe(
        duration_seconds
    )


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format.

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
