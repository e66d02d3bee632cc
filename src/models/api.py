"""
Request and response schemas for the billing HTTP API.

Field names are camelCase on the wire; snake_case names are also accepted
on input.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.models.billing import (
    CheckoutHandle,
    CustomerContact,
    EntitlementDecision,
    GatewayKind,
    Plan,
    PlanId,
    PlanLimits,
    Subscription,
    SubscriptionStatus,
    UsageSummary,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Requests


class SubscriptionOrderRequest(ApiModel):
    """Buy N months of a paid plan."""

    plan: str = Field(..., min_length=1, max_length=32)
    duration_months: int = Field(..., description="Months to prepay")


class RecurringSubscribeRequest(ApiModel):
    plan: str = Field(..., min_length=1, max_length=32)


class VerifyPaymentRequest(ApiModel):
    """
    Checkout callback forwarded by the client.

    plan and durationMonths are cross-checked against the pending order,
    never trusted.
    """

    order_id: str = Field(..., min_length=1, max_length=128)
    payment_id: str = Field(..., min_length=1, max_length=128)
    signature: str = Field(..., min_length=1, max_length=512)
    plan: str | None = Field(default=None, max_length=32)
    duration_months: int | None = None


class CancelSubscriptionRequest(ApiModel):
    cancel_at_period_end: bool = True


class CatalogOrderRequest(ApiModel):
    slug: str = Field(..., min_length=1, max_length=100)
    product_id: str = Field(..., min_length=1, max_length=128)
    quantity: int = Field(default=1)
    customer_contact: CustomerContact | None = None


class CatalogVerifyRequest(ApiModel):
    catalog_order_id: str = Field(..., min_length=1, max_length=128)
    order_id: str = Field(..., min_length=1, max_length=128)
    payment_id: str = Field(..., min_length=1, max_length=128)
    signature: str = Field(..., min_length=1, max_length=512)


# Responses


class CheckoutResponse(ApiModel):
    """Everything the client checkout widget needs to collect payment."""

    order_id: str
    amount_minor_units: int
    currency: str
    gateway_public_key: str
    provider: str
    catalog_order_id: str | None = None

    @classmethod
    def from_handle(cls, handle: CheckoutHandle) -> "CheckoutResponse":
        return cls(**handle.model_dump())


class VerifyResponse(ApiModel):
    applied: bool
    reason: str | None = None


class PlanLimitsResponse(ApiModel):
    max_customers: int
    max_invoices_per_month: int
    has_product_management: bool
    has_whatsapp_crm: bool
    has_priority_support: bool

    @classmethod
    def from_limits(cls, limits: PlanLimits) -> "PlanLimitsResponse":
        return cls(**limits.model_dump())


class PlanResponse(ApiModel):
    id: PlanId
    name: str
    description: str
    price: int
    currency: str
    limits: PlanLimitsResponse
    features: list[str]

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            currency=plan.currency,
            limits=PlanLimitsResponse.from_limits(plan.limits),
            features=list(plan.features),
        )


class SubscriptionResponse(ApiModel):
    """Subscription snapshot (gateway ids omitted except the provider)."""

    user_id: str
    plan: PlanId
    effective_plan: PlanId
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    billing_duration_months: int | None = None
    amount_paid: Decimal | None = None
    gateway_kind: GatewayKind
    gateway_provider: str | None = None
    next_due_date: datetime | None = None
    is_default: bool = False

    @classmethod
    def from_subscription(
        cls, subscription: Subscription, effective_plan: PlanId
    ) -> "SubscriptionResponse":
        return cls(
            user_id=subscription.user_id,
            plan=subscription.plan,
            effective_plan=effective_plan,
            status=subscription.status,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            billing_duration_months=subscription.billing_duration_months,
            amount_paid=subscription.amount_paid,
            gateway_kind=subscription.gateway_kind,
            gateway_provider=subscription.gateway_provider,
            next_due_date=subscription.next_due_date,
            is_default=subscription.is_default,
        )


class UsageResponse(ApiModel):
    plan: PlanId
    limits: PlanLimitsResponse
    customers_used: int
    invoices_this_month: int
    customers_remaining: int | None = None
    invoices_remaining: int | None = None

    @classmethod
    def from_summary(cls, summary: UsageSummary) -> "UsageResponse":
        return cls(
            plan=summary.plan,
            limits=PlanLimitsResponse.from_limits(summary.limits),
            customers_used=summary.customers_used,
            invoices_this_month=summary.invoices_this_month,
            customers_remaining=summary.customers_remaining,
            invoices_remaining=summary.invoices_remaining,
        )


class SubscriptionOverviewResponse(ApiModel):
    subscription: SubscriptionResponse
    usage: UsageResponse


class EntitlementResponse(ApiModel):
    allowed: bool
    reason: str | None = None

    @classmethod
    def from_decision(cls, decision: EntitlementDecision) -> "EntitlementResponse":
        return cls(allowed=decision.allowed, reason=decision.reason)


class SyncAllResponse(ApiModel):
    synced: int
    failed: int
    errors: list[dict[str, str]]
