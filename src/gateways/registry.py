"""
Gateway registry.

Orders and subscriptions store the provider name that issued them; the
registry resolves that name back to an adapter, so verification and sync
never branch on provider identity.
"""

import logging

from src.billing.errors import ConfigurationError, ValidationError
from src.config import Settings
from src.gateways.base import GatewayAdapter
from src.gateways.cashfree import CashfreeGateway
from src.gateways.razorpay import RazorpayGateway

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """Adapters keyed by name, plus the configured provider for each checkout flow."""

    def __init__(
        self,
        adapters: list[GatewayAdapter],
        subscription_provider: str,
        catalog_provider: str,
    ):
        self._adapters = {adapter.name: adapter for adapter in adapters}
        self.subscription_provider = subscription_provider
        self.catalog_provider = catalog_provider

        for role, provider in (
            ("subscription", subscription_provider),
            ("catalog", catalog_provider),
        ):
            if provider not in self._adapters:
                raise ConfigurationError(f"No adapter registered for {role} gateway '{provider}'")

    def get(self, name: str) -> GatewayAdapter:
        """
        Resolve an adapter by provider name.

        Raises:
            ConfigurationError: Unknown provider (e.g. a stored row from a removed gateway)
        """
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ConfigurationError(f"Unknown payment gateway: {name!r}")
        return adapter

    def find(self, name: str) -> GatewayAdapter | None:
        return self._adapters.get(name)

    def for_subscriptions(self) -> GatewayAdapter:
        return self._adapters[self.subscription_provider]

    def for_catalog(self) -> GatewayAdapter:
        return self._adapters[self.catalog_provider]

    def for_recurring(self) -> GatewayAdapter:
        """
        Adapter used for recurring checkout.

        Raises:
            ValidationError: The configured subscription gateway has no recurring support
        """
        adapter = self.for_subscriptions()
        if not adapter.supports_recurring:
            raise ValidationError(
                f"Recurring subscriptions are not available with gateway '{adapter.name}'"
            )
        return adapter

    def close(self) -> None:
        for adapter in self._adapters.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                close()


def build_gateway_registry(settings: Settings) -> GatewayRegistry:
    """Construct adapters for every provider from settings."""
    adapters: list[GatewayAdapter] = [
        RazorpayGateway(settings.razorpay, settings.gateway),
        CashfreeGateway(settings.cashfree, settings.gateway),
    ]
    logger.info(
        "Payment gateways configured",
        extra={
            "subscription_provider": settings.gateway.subscription_provider,
            "catalog_provider": settings.gateway.catalog_provider,
        },
    )
    return GatewayRegistry(
        adapters,
        subscription_provider=settings.gateway.subscription_provider,
        catalog_provider=settings.gateway.catalog_provider,
    )
