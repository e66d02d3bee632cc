"""
Circuit breakers and retries for payment gateway calls.

One breaker per gateway provider, so a Cashfree outage never blocks Razorpay
checkout.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if the gateway recovered, one trial request allowed

Only transient failures (GatewayUnavailableError) count towards opening a
breaker; a gateway rejecting a request (GatewayError) is a healthy response.
"""

import logging
import threading
from collections.abc import Callable
from typing import TypeVar

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.billing.errors import GatewayCircuitOpenError, GatewayError, GatewayUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _StateLogger(CircuitBreakerListener):
    """Log breaker state transitions."""

    def state_change(self, cb: CircuitBreaker, old_state, new_state) -> None:
        state = new_state.name if new_state else "unknown"
        extra = {
            "breaker_name": cb.name,
            "fail_count": cb.fail_counter,
            "fail_max": cb.fail_max,
            "state": state.upper(),
        }
        if state == "open":
            logger.error(f"Circuit breaker OPENED: {cb.name}", extra=extra)
        elif state == "half-open":
            logger.warning(
                f"Circuit breaker HALF-OPEN: {cb.name} (testing recovery)", extra=extra
            )
        else:
            logger.info(f"Circuit breaker CLOSED: {cb.name} (gateway recovered)", extra=extra)


_breakers: dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def get_gateway_breaker(
    provider: str, fail_max: int = 5, reset_timeout_seconds: int = 30
) -> CircuitBreaker:
    """
    Get (or create) the circuit breaker for a gateway provider.

    Args:
        provider: Gateway name (razorpay, cashfree)
        fail_max: Consecutive transient failures before opening
        reset_timeout_seconds: Seconds the circuit stays open before half-open

    Returns:
        CircuitBreaker: Shared instance for the provider
    """
    with _breakers_lock:
        breaker = _breakers.get(provider)
        if breaker is None:
            breaker = CircuitBreaker(
                fail_max=fail_max,
                reset_timeout=reset_timeout_seconds,
                exclude=[GatewayError],
                listeners=[_StateLogger()],
                name=f"gateway:{provider}",
            )
            _breakers[provider] = breaker
        return breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    with _breakers_lock:
        for breaker in _breakers.values():
            breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")


def call_with_breaker(breaker: CircuitBreaker, func: Callable[[], T]) -> T:
    """
    Run func through the breaker, converting an open circuit to GatewayCircuitOpenError.

    Raises:
        GatewayCircuitOpenError: Circuit is open (fail fast, not retried)
    """
    try:
        return breaker.call(func)
    except CircuitBreakerError as e:
        logger.warning(
            f"{breaker.name} circuit breaker OPEN - failing fast",
            extra={"breaker_name": breaker.name, "state": breaker.current_state},
        )
        raise GatewayCircuitOpenError(
            f"Payment gateway unavailable (circuit breaker open). "
            f"Retry after {breaker.reset_timeout} seconds.",
        ) from e


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, GatewayUnavailableError) and not isinstance(
        exc, GatewayCircuitOpenError
    )


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 4.0,
):
    """
    Retry decorator with exponential backoff for transient gateway failures.

    Open circuits and gateway rejections are not retried.

    Args:
        max_attempts: Maximum number of attempts (including the first)
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds

    Usage:
        @with_retry(max_attempts=3)
        def fetch():
            return call_with_breaker(breaker, lambda: client.get(...))
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )


def get_breaker_states() -> dict[str, str]:
    """Current state per gateway provider (for /health)."""
    with _breakers_lock:
        return {provider: breaker.current_state for provider, breaker in _breakers.items()}
