"""
Resilience patterns for payment gateways.

Circuit breakers prevent cascade failures when a gateway is down; retries
absorb short transient blips.
"""

from src.resilience.circuit_breakers import (
    call_with_breaker,
    get_breaker_states,
    get_gateway_breaker,
    reset_all_breakers,
    with_retry,
)

__all__ = [
    "call_with_breaker",
    "get_breaker_states",
    "get_gateway_breaker",
    "reset_all_breakers",
    "with_retry",
]
