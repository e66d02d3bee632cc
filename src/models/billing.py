"""
Billing data models: plans, subscriptions, payment orders and results.

Subscriptions are keyed by user_id (one current row per user). Orders are
keyed by the gateway-issued order id so a duplicate callback always lands on
the same row.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class PlanId(str, Enum):
    """Purchasable plan tiers."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    BUSINESS = "business"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    FREE = "free"


class GatewayKind(str, Enum):
    """How the current subscription is paid for."""

    NONE = "none"
    RECURRING = "recurring"  # gateway-managed subscription
    ONE_TIME = "one_time"  # prepaid for N months


class OrderStatus(str, Enum):
    CREATED = "created"
    VERIFIED = "verified"
    FAILED = "failed"


class OrderKind(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class Feature(str, Enum):
    """Boolean plan features gated by EntitlementGate."""

    PRODUCT_MANAGEMENT = "product_management"
    WHATSAPP_CRM = "whatsapp_crm"
    PRIORITY_SUPPORT = "priority_support"


class RejectReason(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_PROCESSED = "already_processed"
    SIGNATURE_MISMATCH = "signature_mismatch"
    ORDER_MISMATCH = "order_mismatch"


# ============================================================================
# GATEWAY REFERENCES
# ============================================================================


class Recurring(BaseModel):
    """Reference to a gateway-managed recurring subscription."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["recurring"] = "recurring"
    subscription_id: str = Field(..., min_length=1)


class OneTime(BaseModel):
    """Reference to a single gateway order."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["one_time"] = "one_time"
    order_id: str = Field(..., min_length=1)


GatewayRef = Recurring | OneTime


# ============================================================================
# PLANS
# ============================================================================


class PlanLimits(BaseModel):
    """Per-plan quotas. -1 means unlimited."""

    model_config = ConfigDict(frozen=True)

    max_customers: int = Field(..., ge=-1)
    max_invoices_per_month: int = Field(..., ge=-1)
    has_product_management: bool = False
    has_whatsapp_crm: bool = False
    has_priority_support: bool = False


class Plan(BaseModel):
    """Immutable plan definition. Price is in major currency units."""

    model_config = ConfigDict(frozen=True)

    id: PlanId
    name: str
    description: str
    price: int = Field(..., ge=0)
    currency: str = "INR"
    limits: PlanLimits
    features: tuple[str, ...] = ()

    @property
    def is_paid(self) -> bool:
        return self.price > 0


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================


class Subscription(BaseModel):
    """
    Current subscription row for a user.

    A user with no persisted row is represented by a synthesized free default
    (is_default=True) that is never written to the store.
    """

    user_id: str = Field(..., min_length=1)
    plan: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    billing_duration_months: int | None = Field(default=None, ge=1)
    amount_paid: Decimal | None = Field(default=None, ge=0)

    gateway_kind: GatewayKind = GatewayKind.NONE
    gateway_provider: str | None = None
    gateway_subscription_id: str | None = None
    gateway_order_id: str | None = None
    gateway_payment_id: str | None = None
    next_due_date: datetime | None = None

    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    is_default: bool = False

    @property
    def gateway_ref(self) -> GatewayRef | None:
        """Tagged reference derived from gateway_kind (ids are never sniffed)."""
        if self.gateway_kind == GatewayKind.RECURRING and self.gateway_subscription_id:
            return Recurring(subscription_id=self.gateway_subscription_id)
        if self.gateway_kind == GatewayKind.ONE_TIME and self.gateway_order_id:
            return OneTime(order_id=self.gateway_order_id)
        return None


class RecurringStatus(BaseModel):
    """Authoritative recurring subscription state as reported by a gateway."""

    status: str
    period_start: datetime | None = None
    period_end: datetime | None = None
    next_due_date: datetime | None = None
    plan: str | None = Field(default=None, description="Gateway plan id")


# ============================================================================
# ORDERS
# ============================================================================


class PendingPaymentOrder(BaseModel):
    """A plan purchase awaiting (or past) signature verification."""

    order_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    kind: OrderKind = OrderKind.ONE_TIME
    provider: str
    intended_plan: PlanId
    intended_duration_months: int = Field(..., ge=1)
    amount_minor_units: int = Field(..., ge=0)
    currency: str = "INR"
    status: OrderStatus = OrderStatus.CREATED
    payment_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    verified_at: datetime | None = None

    @property
    def gateway_ref(self) -> GatewayRef:
        if self.kind == OrderKind.RECURRING:
            return Recurring(subscription_id=self.order_id)
        return OneTime(order_id=self.order_id)


class CustomerContact(BaseModel):
    """Storefront buyer details (all optional)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=32)
    shipping_address: str | None = Field(default=None, max_length=1000)
    note: str | None = Field(default=None, max_length=1000)

    @field_validator("email")
    @classmethod
    def validate_email_format(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        if "@" not in v or "." not in v.split("@")[-1]:
            raise ValueError("Invalid email format")
        return v.lower()


class CatalogOrder(BaseModel):
    """Storefront purchase; never touches the buyer's or seller's subscription."""

    catalog_order_id: str
    slug: str
    seller_user_id: str
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., ge=0)
    amount_minor_units: int = Field(..., ge=0)
    currency: str = "INR"
    customer_contact: CustomerContact = Field(default_factory=CustomerContact)
    provider: str
    order_id: str | None = Field(default=None, description="Gateway order id")
    payment_id: str | None = None
    status: OrderStatus = OrderStatus.CREATED
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    verified_at: datetime | None = None


# ============================================================================
# RESULTS
# ============================================================================


class EntitlementDecision(BaseModel):
    """Allowed, or Denied with a human-readable reason."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> "EntitlementDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str) -> "EntitlementDecision":
        return cls(allowed=False, reason=reason)


class VerificationResult(BaseModel):
    """Applied (possibly a replay), or Rejected with a reason."""

    model_config = ConfigDict(frozen=True)

    applied: bool
    reason: RejectReason | None = None
    replayed: bool = False

    @classmethod
    def applied_now(cls) -> "VerificationResult":
        return cls(applied=True)

    @classmethod
    def replay(cls) -> "VerificationResult":
        return cls(applied=True, replayed=True)

    @classmethod
    def rejected(cls, reason: RejectReason) -> "VerificationResult":
        return cls(applied=False, reason=reason)


class CheckoutHandle(BaseModel):
    """What the client needs to open the gateway checkout widget."""

    order_id: str
    amount_minor_units: int
    currency: str
    gateway_public_key: str
    provider: str
    catalog_order_id: str | None = None


class UsageSummary(BaseModel):
    """Plan, limits and current usage for a user."""

    plan: PlanId
    limits: PlanLimits
    customers_used: int
    invoices_this_month: int
    customers_remaining: int | None = Field(default=None, description="None when unlimited")
    invoices_remaining: int | None = Field(default=None, description="None when unlimited")
