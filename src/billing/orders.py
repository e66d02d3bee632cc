"""
Payment order creation.

Flows:
- Subscription order: pay for N months of a plan up front. The gateway
  order is opened first, then the pending order is persisted before the
  handle is returned, so every callback finds its row.
- Recurring subscription: gateway-managed subscription; the pending row is
  keyed by the gateway subscription id.
- Catalog order: storefront checkout. The local row is persisted first
  (its id goes into the gateway receipt), then the gateway order id is
  attached. A gateway failure marks the local row failed.

All amounts sent to gateways are integer minor units (paise for INR).
"""

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from src.billing.errors import (
    GatewayError,
    GatewayUnavailableError,
    NotFoundError,
    ValidationError,
)
from src.billing.plans import get_paid_plan
from src.config import BillingConfig
from src.gateways.registry import GatewayRegistry
from src.models.billing import (
    CatalogOrder,
    CheckoutHandle,
    CustomerContact,
    GatewayKind,
    OrderKind,
    PendingPaymentOrder,
    PlanId,
)
from src.observability.metrics import track_order_created
from src.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

MAX_CATALOG_QUANTITY = 1000


def to_minor_units(amount: Decimal | int) -> int:
    """Convert a major-unit amount to integer minor units (half-up rounding)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentOrderService:
    """Open gateway orders and record them as pending."""

    def __init__(
        self,
        db: BillingDatabase,
        gateways: GatewayRegistry,
        config: BillingConfig,
    ):
        self.db = db
        self.gateways = gateways
        self.config = config

    def _validate_duration(self, duration_months: int) -> None:
        if isinstance(duration_months, bool) or not isinstance(duration_months, int):
            raise ValidationError("durationMonths must be an integer")
        if duration_months < 1:
            raise ValidationError("durationMonths must be at least 1")
        if duration_months > self.config.max_duration_months:
            raise ValidationError(
                f"durationMonths cannot exceed {self.config.max_duration_months}"
            )

    async def _ensure_no_prepaid_period(self, user_id: str, now: datetime) -> None:
        current = await self.db.get_subscription(user_id)
        if (
            current is not None
            and current.gateway_kind == GatewayKind.ONE_TIME
            and current.plan != PlanId.FREE
            and current.current_period_end > now
        ):
            raise ValidationError(
                "A prepaid plan is active until "
                f"{current.current_period_end.date().isoformat()}; "
                "start a recurring subscription after it ends"
            )

    async def create_subscription_order(
        self, user_id: str, plan_id: PlanId | str, duration_months: int
    ) -> CheckoutHandle:
        """
        Open a one-time order for N months of a paid plan.

        Args:
            user_id: Purchasing user
            plan_id: Paid plan to buy
            duration_months: Months to prepay (1..max_duration_months)

        Returns:
            CheckoutHandle: order id, amount (price * months * 100), currency, public key

        Raises:
            ValidationError: Unknown/free plan or bad duration (no gateway call made)
            GatewayUnavailableError: Gateway unreachable
            GatewayError: Gateway rejected the order
        """
        plan = get_paid_plan(plan_id)
        self._validate_duration(duration_months)

        amount_minor_units = plan.price * duration_months * 100
        currency = self.config.currency
        adapter = self.gateways.for_subscriptions()

        order_id = await asyncio.to_thread(
            adapter.create_order,
            amount_minor_units,
            currency,
            {
                "receipt": f"plan_{plan.id.value}_{uuid.uuid4().hex[:12]}",
                "notes": {
                    "user_id": user_id,
                    "plan": plan.id.value,
                    "duration_months": str(duration_months),
                },
            },
        )

        await self.db.create_payment_order(
            PendingPaymentOrder(
                order_id=order_id,
                user_id=user_id,
                kind=OrderKind.ONE_TIME,
                provider=adapter.name,
                intended_plan=plan.id,
                intended_duration_months=duration_months,
                amount_minor_units=amount_minor_units,
                currency=currency,
            )
        )

        track_order_created("subscription", adapter.name)
        logger.info(
            "Subscription order created",
            extra={
                "user_id": user_id,
                "order_id": order_id,
                "plan": plan.id.value,
                "duration_months": duration_months,
                "amount_minor_units": amount_minor_units,
                "provider": adapter.name,
            },
        )

        return CheckoutHandle(
            order_id=order_id,
            amount_minor_units=amount_minor_units,
            currency=currency,
            gateway_public_key=adapter.public_key,
            provider=adapter.name,
        )

    async def create_recurring_subscription(
        self, user_id: str, plan_id: PlanId | str, now: datetime | None = None
    ) -> CheckoutHandle:
        """
        Create a gateway-managed monthly subscription for a paid plan.

        The returned order_id is the gateway subscription id; the checkout
        callback signs it together with the first payment id.

        Raises:
            ValidationError: Unknown/free plan, gateway without recurring support,
                or a prepaid one-time period still running
            GatewayUnavailableError / GatewayError: Gateway failure
        """
        plan = get_paid_plan(plan_id)
        await self._ensure_no_prepaid_period(user_id, now or datetime.now(UTC))
        adapter = self.gateways.for_recurring()

        subscription_id = await asyncio.to_thread(
            adapter.create_recurring,
            plan.id,
            {"notes": {"user_id": user_id, "plan": plan.id.value}},
        )

        amount_minor_units = plan.price * 100
        await self.db.create_payment_order(
            PendingPaymentOrder(
                order_id=subscription_id,
                user_id=user_id,
                kind=OrderKind.RECURRING,
                provider=adapter.name,
                intended_plan=plan.id,
                intended_duration_months=1,
                amount_minor_units=amount_minor_units,
                currency=self.config.currency,
            )
        )

        track_order_created("recurring", adapter.name)
        logger.info(
            "Recurring subscription created",
            extra={
                "user_id": user_id,
                "subscription_id": subscription_id,
                "plan": plan.id.value,
                "provider": adapter.name,
            },
        )

        return CheckoutHandle(
            order_id=subscription_id,
            amount_minor_units=amount_minor_units,
            currency=self.config.currency,
            gateway_public_key=adapter.public_key,
            provider=adapter.name,
        )

    async def create_catalog_order(
        self,
        slug: str,
        product_id: str,
        quantity: int,
        customer_contact: CustomerContact | None = None,
    ) -> CheckoutHandle:
        """
        Open a storefront order at the live catalog price.

        Args:
            slug: Public storefront slug
            product_id: Product shown in that storefront
            quantity: Units (>= 1)
            customer_contact: Buyer details (optional)

        Returns:
            CheckoutHandle including catalog_order_id

        Raises:
            ValidationError: Bad quantity or zero amount
            NotFoundError: Storefront not public, or product not listed
            GatewayUnavailableError / GatewayError: Gateway failure (local order marked failed)
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("quantity must be a positive integer")
        if quantity > MAX_CATALOG_QUANTITY:
            raise ValidationError(f"quantity cannot exceed {MAX_CATALOG_QUANTITY}")

        product = await self.db.get_catalog_product(slug, product_id)
        if product is None or not product["is_public"] or not product["show_in_catalog"]:
            raise NotFoundError("Product not found")

        unit_price = (
            product["catalog_price"] if product["catalog_price"] is not None else product["price"]
        )
        amount_minor_units = to_minor_units(unit_price * quantity)
        if amount_minor_units <= 0:
            raise ValidationError("Order amount must be positive")

        adapter = self.gateways.for_catalog()
        contact = customer_contact or CustomerContact()
        catalog_order_id = f"co_{uuid.uuid4().hex[:16]}"

        await self.db.create_catalog_order(
            CatalogOrder(
                catalog_order_id=catalog_order_id,
                slug=slug,
                seller_user_id=product["seller_user_id"],
                product_id=product_id,
                product_name=product["name"],
                quantity=quantity,
                unit_price=unit_price,
                amount_minor_units=amount_minor_units,
                currency=self.config.currency,
                customer_contact=contact,
                provider=adapter.name,
            )
        )

        try:
            order_id = await asyncio.to_thread(
                adapter.create_order,
                amount_minor_units,
                self.config.currency,
                {
                    "receipt": f"cat_{slug}_{catalog_order_id}",
                    "notes": {
                        "catalog_order_id": catalog_order_id,
                        "slug": slug,
                        "product_id": product_id,
                    },
                    "customer": {
                        "id": catalog_order_id,
                        "name": contact.name,
                        "email": contact.email,
                        "phone": contact.phone,
                    },
                },
            )
        except (GatewayError, GatewayUnavailableError):
            await self.db.mark_catalog_order_failed(catalog_order_id)
            logger.warning(
                "Catalog order failed at gateway",
                extra={"catalog_order_id": catalog_order_id, "provider": adapter.name},
            )
            raise

        await self.db.attach_catalog_gateway_order(catalog_order_id, order_id)

        track_order_created("catalog", adapter.name)
        logger.info(
            "Catalog order created",
            extra={
                "catalog_order_id": catalog_order_id,
                "order_id": order_id,
                "slug": slug,
                "product_id": product_id,
                "quantity": quantity,
                "amount_minor_units": amount_minor_units,
            },
        )

        return CheckoutHandle(
            order_id=order_id,
            amount_minor_units=amount_minor_units,
            currency=self.config.currency,
            gateway_public_key=adapter.public_key,
            provider=adapter.name,
            catalog_order_id=catalog_order_id,
        )
