"""
Plan catalog.

The plan table is a module-level constant validated at import time. Limits
of -1 mean unlimited and are checked before any numeric comparison.

| plan     | price | customers | invoices/month | products | WhatsApp CRM | priority support |
|----------|-------|-----------|----------------|----------|--------------|------------------|
| free     | 0     | 50        | 20             | no       | no           | no               |
| starter  | 249   | 500       | 200            | yes      | no           | no               |
| pro      | 499   | unlimited | unlimited      | yes      | no           | no               |
| business | 999   | unlimited | unlimited      | yes      | yes          | yes              |
"""

from types import MappingProxyType

from src.billing.errors import ConfigurationError, ValidationError
from src.models.billing import Feature, Plan, PlanId, PlanLimits

UNLIMITED = -1

_PLAN_DEFINITIONS = (
    Plan(
        id=PlanId.FREE,
        name="Free",
        description="Get started with the basics",
        price=0,
        limits=PlanLimits(max_customers=50, max_invoices_per_month=20),
        features=(
            "Up to 50 customers",
            "20 invoices per month",
            "Basic invoicing",
        ),
    ),
    Plan(
        id=PlanId.STARTER,
        name="Starter",
        description="For small shops getting organized",
        price=249,
        limits=PlanLimits(
            max_customers=500,
            max_invoices_per_month=200,
            has_product_management=True,
        ),
        features=(
            "Up to 500 customers",
            "200 invoices per month",
            "Product management",
        ),
    ),
    Plan(
        id=PlanId.PRO,
        name="Pro",
        description="Unlimited records for growing businesses",
        price=499,
        limits=PlanLimits(
            max_customers=UNLIMITED,
            max_invoices_per_month=UNLIMITED,
            has_product_management=True,
        ),
        features=(
            "Unlimited customers",
            "Unlimited invoices",
            "Product management",
            "Online storefront",
        ),
    ),
    Plan(
        id=PlanId.BUSINESS,
        name="Business",
        description="Everything in Pro plus messaging and priority support",
        price=999,
        limits=PlanLimits(
            max_customers=UNLIMITED,
            max_invoices_per_month=UNLIMITED,
            has_product_management=True,
            has_whatsapp_crm=True,
            has_priority_support=True,
        ),
        features=(
            "Everything in Pro",
            "WhatsApp CRM",
            "Priority support",
        ),
    ),
)


def _build_catalog(plans: tuple[Plan, ...]) -> MappingProxyType:
    """Index plans by id and check the table is complete and consistent."""
    catalog = {plan.id: plan for plan in plans}

    if len(catalog) != len(plans):
        raise ConfigurationError("Duplicate plan id in plan table")

    missing = set(PlanId) - set(catalog)
    if missing:
        raise ConfigurationError(
            f"Plan table missing: {', '.join(sorted(p.value for p in missing))}"
        )

    if catalog[PlanId.FREE].price != 0:
        raise ConfigurationError("Free plan must have price 0")

    for plan in plans:
        if plan.id != PlanId.FREE and plan.price <= 0:
            raise ConfigurationError(f"Paid plan '{plan.id.value}' must have a positive price")

    return MappingProxyType(catalog)


PLANS = _build_catalog(_PLAN_DEFINITIONS)


def get_plan(plan_id: PlanId | str) -> Plan:
    """
    Look up a plan by id.

    Args:
        plan_id: PlanId or its string value

    Returns:
        Plan: Immutable plan definition

    Raises:
        ConfigurationError: Unknown plan id
    """
    try:
        return PLANS[PlanId(plan_id)]
    except (ValueError, KeyError):
        raise ConfigurationError(f"Unknown plan id: {plan_id!r}") from None


def get_paid_plan(plan_id: PlanId | str) -> Plan:
    """
    Resolve a plan a user is allowed to purchase.

    Raises:
        ValidationError: Unknown plan or the free plan
    """
    try:
        plan = get_plan(plan_id)
    except ConfigurationError as e:
        raise ValidationError(str(e)) from e
    if not plan.is_paid:
        raise ValidationError(f"Plan '{plan.id.value}' cannot be purchased")
    return plan


def list_plans() -> list[Plan]:
    """All plans in ascending price order."""
    return sorted(PLANS.values(), key=lambda plan: plan.price)


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED


def within_limit(limit: int, used: int) -> bool:
    """True when one more record may be created (`used < limit`, or unlimited)."""
    if is_unlimited(limit):
        return True
    return used < limit


def has_feature(plan: Plan, feature: Feature | str) -> bool:
    """
    Check a boolean plan feature.

    Raises:
        ValidationError: Unknown feature name
    """
    try:
        feature = Feature(feature)
    except ValueError:
        raise ValidationError(f"Unknown feature: {feature!r}") from None

    return {
        Feature.PRODUCT_MANAGEMENT: plan.limits.has_product_management,
        Feature.WHATSAPP_CRM: plan.limits.has_whatsapp_crm,
        Feature.PRIORITY_SUPPORT: plan.limits.has_priority_support,
    }[feature]
