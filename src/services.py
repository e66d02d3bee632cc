"""
Service container.

Wires the billing components around one database and one gateway
registry. The app lifespan builds it once; routers receive it through the
`get_services` dependency (tests override that dependency or call
`set_services`).
"""

import logging
from dataclasses import dataclass

from fastapi import HTTPException, status

from src.billing.entitlements import EntitlementGate
from src.billing.orders import PaymentOrderService
from src.billing.reconciliation import ReconciliationSync
from src.billing.subscription_store import SubscriptionStore
from src.billing.usage import UsageMeter
from src.billing.verifier import PaymentVerifier
from src.billing.webhooks import BillingWebhookHandler
from src.config import Settings
from src.gateways.registry import GatewayRegistry
from src.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    settings: Settings
    db: BillingDatabase
    gateways: GatewayRegistry
    store: SubscriptionStore
    meter: UsageMeter
    gate: EntitlementGate
    orders: PaymentOrderService
    verifier: PaymentVerifier
    reconciliation: ReconciliationSync
    webhooks: BillingWebhookHandler

    def close(self) -> None:
        self.gateways.close()
        self.db.close()


def build_services(
    settings: Settings, db: BillingDatabase, gateways: GatewayRegistry
) -> BillingServices:
    """
    Construct every billing component.

    Args:
        settings: Application settings
        db: Initialized billing database
        gateways: Gateway registry

    Returns:
        BillingServices: Wired components sharing one store (and its user locks)
    """
    store = SubscriptionStore(db, settings.billing)
    meter = UsageMeter(db)
    verifier = PaymentVerifier(db, store, gateways)
    reconciliation = ReconciliationSync(db, store, gateways)
    return BillingServices(
        settings=settings,
        db=db,
        gateways=gateways,
        store=store,
        meter=meter,
        gate=EntitlementGate(store, meter),
        orders=PaymentOrderService(db, gateways, settings.billing),
        verifier=verifier,
        reconciliation=reconciliation,
        webhooks=BillingWebhookHandler(db, gateways, store, verifier, reconciliation),
    )


# Global instance (set by app lifespan)
_services: BillingServices | None = None


def set_services(services: BillingServices | None) -> None:
    global _services
    _services = services


def get_services() -> BillingServices:
    """
    FastAPI dependency returning the wired services.

    Raises:
        HTTPException 503: Service still starting (lifespan has not run)
    """
    if _services is None:
        logger.error("Billing services requested before initialization")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing service not initialized",
        )
    return _services
