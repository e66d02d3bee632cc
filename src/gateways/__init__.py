"""
Payment gateway adapters.

- base.py: provider-neutral interface and shared HTTP/resilience path
- razorpay.py: one-time orders and recurring subscriptions
- cashfree.py: one-time orders
- registry.py: provider name -> adapter resolution
"""

from src.gateways.base import GatewayAdapter, WebhookEvent, WebhookEventKind
from src.gateways.cashfree import CashfreeGateway
from src.gateways.razorpay import RazorpayGateway
from src.gateways.registry import GatewayRegistry, build_gateway_registry

__all__ = [
    "GatewayAdapter",
    "WebhookEvent",
    "WebhookEventKind",
    "CashfreeGateway",
    "RazorpayGateway",
    "GatewayRegistry",
    "build_gateway_registry",
]
