"""
Entitlement gate.

Answers "may this user create another customer / invoice / use this
feature?" from the user's effective plan and current usage.

Limits are soft: the check and the subsequent insert are separate
operations, so two concurrent creates can overshoot a limit by one.
A storage failure while counting denies rather than allows.
"""

import logging
import sqlite3
from datetime import UTC, datetime

from src.billing.errors import LimitExceeded
from src.billing.plans import get_plan, has_feature, is_unlimited, within_limit
from src.billing.subscription_store import SubscriptionStore
from src.billing.usage import UsageMeter
from src.models.billing import EntitlementDecision, Feature, Plan, UsageSummary
from src.observability.metrics import track_entitlement_denial

logger = logging.getLogger(__name__)

CUSTOMER_LIMIT_MESSAGE = (
    "You've reached your limit of {limit} customers. "
    "Please upgrade your plan to add more customers."
)
INVOICE_LIMIT_MESSAGE = (
    "You've reached your monthly limit of {limit} invoices. "
    "Please upgrade your plan for unlimited invoices."
)
FEATURE_DENIED_MESSAGE = "Your current plan does not include {feature}. Please upgrade your plan."
CUSTOMER_CHECK_FAILED_MESSAGE = "Unable to verify customer limit. Please try again."
INVOICE_CHECK_FAILED_MESSAGE = "Unable to verify invoice limit. Please try again."


def require_allowed(decision: EntitlementDecision, resource: str) -> None:
    """
    Turn a denial into LimitExceeded, for write paths that enforce instead of asking.

    Raises:
        LimitExceeded: decision is a denial (HTTP 403 at the API edge)
    """
    if not decision.allowed:
        raise LimitExceeded(decision.reason or "Plan limit reached", resource)


class EntitlementGate:
    """Allow or deny writes according to the user's plan."""

    def __init__(self, store: SubscriptionStore, meter: UsageMeter):
        self.store = store
        self.meter = meter

    async def current_plan(self, user_id: str, now: datetime | None = None) -> Plan:
        """Effective plan for the user (free when nothing is paid for right now)."""
        subscription = await self.store.get(user_id, now)
        return get_plan(self.store.effective_plan(subscription, now))

    async def can_create_customer(
        self, user_id: str, now: datetime | None = None
    ) -> EntitlementDecision:
        """
        Check the customer limit.

        Returns:
            EntitlementDecision: allowed, or denied with the upgrade message
        """
        plan = await self.current_plan(user_id, now)
        limit = plan.limits.max_customers
        if is_unlimited(limit):
            return EntitlementDecision.allow()

        try:
            count = await self.meter.customer_count(user_id)
        except sqlite3.Error as e:
            logger.error(
                "Customer count failed; denying",
                extra={"user_id": user_id, "error": str(e)},
            )
            return EntitlementDecision.deny(CUSTOMER_CHECK_FAILED_MESSAGE)

        if within_limit(limit, count):
            return EntitlementDecision.allow()

        track_entitlement_denial("customers", plan.id.value)
        logger.info(
            "Customer limit reached",
            extra={"user_id": user_id, "plan": plan.id.value, "count": count, "limit": limit},
        )
        return EntitlementDecision.deny(CUSTOMER_LIMIT_MESSAGE.format(limit=limit))

    async def can_create_invoice(
        self, user_id: str, now: datetime | None = None
    ) -> EntitlementDecision:
        """
        Check the monthly invoice limit (calendar month in UTC).

        Returns:
            EntitlementDecision: allowed, or denied with the upgrade message
        """
        now = now or datetime.now(UTC)
        plan = await self.current_plan(user_id, now)
        limit = plan.limits.max_invoices_per_month
        if is_unlimited(limit):
            return EntitlementDecision.allow()

        try:
            count = await self.meter.invoice_count_this_month(user_id, now)
        except sqlite3.Error as e:
            logger.error(
                "Invoice count failed; denying",
                extra={"user_id": user_id, "error": str(e)},
            )
            return EntitlementDecision.deny(INVOICE_CHECK_FAILED_MESSAGE)

        if within_limit(limit, count):
            return EntitlementDecision.allow()

        track_entitlement_denial("invoices", plan.id.value)
        logger.info(
            "Invoice limit reached",
            extra={"user_id": user_id, "plan": plan.id.value, "count": count, "limit": limit},
        )
        return EntitlementDecision.deny(INVOICE_LIMIT_MESSAGE.format(limit=limit))

    async def can_use_feature(
        self, user_id: str, feature: Feature | str, now: datetime | None = None
    ) -> EntitlementDecision:
        """
        Check a boolean plan feature.

        Raises:
            ValidationError: Unknown feature name
        """
        plan = await self.current_plan(user_id, now)
        if has_feature(plan, feature):
            return EntitlementDecision.allow()

        feature = Feature(feature)
        track_entitlement_denial(feature.value, plan.id.value)
        label = feature.value.replace("_", " ")
        return EntitlementDecision.deny(FEATURE_DENIED_MESSAGE.format(feature=label))

    async def usage_summary(self, user_id: str, now: datetime | None = None) -> UsageSummary:
        now = now or datetime.now(UTC)
        plan = await self.current_plan(user_id, now)
        customers = await self.meter.customer_count(user_id)
        invoices = await self.meter.invoice_count_this_month(user_id, now)

        def remaining(limit: int, used: int) -> int | None:
            return None if is_unlimited(limit) else max(limit - used, 0)

        return UsageSummary(
            plan=plan.id,
            limits=plan.limits,
            customers_used=customers,
            invoices_this_month=invoices,
            customers_remaining=remaining(plan.limits.max_customers, customers),
            invoices_remaining=remaining(plan.limits.max_invoices_per_month, invoices),
        )
