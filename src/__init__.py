"""
Billing and entitlement service.

Sells tiered plans through Indian payment gateways (Razorpay, Cashfree),
verifies payments exactly once, keeps subscriptions in sync with the
gateway and answers "may this user create another customer or invoice?".

Example:
    >>> from src import get_settings
    >>> settings = get_settings()
    >>> print(settings.gateway.subscription_provider)
"""

from src.config import get_settings

__all__ = ["get_settings"]
