"""
Tests for entitlement decisions and usage metering.
"""

import gc
import sqlite3
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from src.billing.entitlements import require_allowed
from src.billing.errors import LimitExceeded, ValidationError
from src.billing.periods import add_months
from src.billing.plans import get_plan
from src.models.billing import (
    EntitlementDecision,
    GatewayKind,
    PlanId,
    Subscription,
    SubscriptionStatus,
)
from tests.conftest import utc


async def _subscribe(services, user_id, plan, start, months=1, status=SubscriptionStatus.ACTIVE):
    subscription = Subscription(
        user_id=user_id,
        plan=plan,
        status=status,
        current_period_start=start,
        current_period_end=add_months(start, months),
        billing_duration_months=months,
        amount_paid=Decimal(get_plan(plan).price * months),
        gateway_kind=GatewayKind.ONE_TIME,
        gateway_provider="razorpay",
        gateway_order_id=f"order_{user_id}",
    )
    await services.store.upsert(subscription)
    return subscription


class TestCustomerLimit:
    @pytest.mark.asyncio
    async def test_free_user_below_limit_allowed(self, services, db):
        for i in range(49):
            await db.add_customer("user-1", f"Customer {i}")

        decision = await services.gate.can_create_customer("user-1")

        assert decision.allowed
        assert decision.reason is None

    @pytest.mark.asyncio
    async def test_free_user_at_limit_denied(self, services, db):
        for i in range(50):
            await db.add_customer("user-1", f"Customer {i}")

        decision = await services.gate.can_create_customer("user-1")

        assert not decision.allowed
        assert decision.reason == (
            "You've reached your limit of 50 customers. "
            "Please upgrade your plan to add more customers."
        )

    @pytest.mark.asyncio
    async def test_other_users_customers_not_counted(self, services, db):
        for i in range(50):
            await db.add_customer("user-2", f"Customer {i}")

        decision = await services.gate.can_create_customer("user-1")

        assert decision.allowed

    @pytest.mark.asyncio
    async def test_unlimited_plan_always_allowed(self, services, db):
        now = utc(2024, 3, 1)
        await _subscribe(services, "user-1", PlanId.PRO, now)
        for i in range(60):
            await db.add_customer("user-1", f"Customer {i}")

        decision = await services.gate.can_create_customer("user-1", now=now + timedelta(days=1))

        assert decision.allowed

    @pytest.mark.asyncio
    async def test_lapsed_paid_plan_falls_back_to_free(self, services, db):
        start = utc(2024, 1, 1)
        await _subscribe(services, "user-1", PlanId.PRO, start)
        for i in range(50):
            await db.add_customer("user-1", f"Customer {i}")

        decision = await services.gate.can_create_customer("user-1", now=utc(2024, 3, 1))

        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_count_failure_denies(self, services):
        services.meter.customer_count = AsyncMock(side_effect=sqlite3.OperationalError("locked"))

        decision = await services.gate.can_create_customer("user-1")

        assert not decision.allowed
        assert "Unable to verify" in decision.reason


class TestInvoiceLimit:
    @pytest.mark.asyncio
    async def test_month_boundary(self, services, db):
        for _ in range(20):
            await db.add_invoice("user-1", created_at=utc(2024, 1, 31, 23, 59, 59))

        january = await services.gate.can_create_invoice("user-1", now=utc(2024, 1, 31, 23, 59, 59))
        february = await services.gate.can_create_invoice("user-1", now=utc(2024, 2, 1))

        assert not january.allowed
        assert january.reason == (
            "You've reached your monthly limit of 20 invoices. "
            "Please upgrade your plan for unlimited invoices."
        )
        assert february.allowed

    @pytest.mark.asyncio
    async def test_invoice_created_at_midnight_counts_in_new_month(self, services, db):
        await db.add_invoice("user-1", created_at=utc(2024, 1, 31, 23, 59, 59))
        await db.add_invoice("user-1", created_at=utc(2024, 2, 1))

        assert await services.meter.invoice_count_this_month("user-1", utc(2024, 1, 15)) == 1
        assert await services.meter.invoice_count_this_month("user-1", utc(2024, 2, 15)) == 1

    @pytest.mark.asyncio
    async def test_starter_limit(self, services, db):
        now = utc(2024, 5, 10)
        await _subscribe(services, "user-1", PlanId.STARTER, utc(2024, 5, 1))
        for _ in range(200):
            await db.add_invoice("user-1", created_at=now)

        decision = await services.gate.can_create_invoice("user-1", now=now)

        assert not decision.allowed
        assert "200 invoices" in decision.reason


class TestFeatures:
    @pytest.mark.asyncio
    async def test_free_user_denied_product_management(self, services):
        decision = await services.gate.can_use_feature("user-1", "product_management")

        assert not decision.allowed
        assert "product management" in decision.reason

    @pytest.mark.asyncio
    async def test_business_user_has_whatsapp(self, services):
        now = utc(2024, 6, 1)
        await _subscribe(services, "user-1", PlanId.BUSINESS, now)

        decision = await services.gate.can_use_feature("user-1", "whatsapp_crm", now=now)

        assert decision.allowed

    @pytest.mark.asyncio
    async def test_unknown_feature_rejected(self, services):
        with pytest.raises(ValidationError):
            await services.gate.can_use_feature("user-1", "teleportation")


class TestEffectivePlan:
    @pytest.mark.asyncio
    async def test_past_due_keeps_plan_during_grace(self, services):
        start = utc(2024, 1, 1)
        subscription = await _subscribe(
            services, "user-1", PlanId.PRO, start, status=SubscriptionStatus.PAST_DUE
        )
        end = subscription.current_period_end

        assert services.store.effective_plan(subscription, end + timedelta(days=2)) == PlanId.PRO
        assert services.store.effective_plan(subscription, end + timedelta(days=4)) == PlanId.FREE

    @pytest.mark.asyncio
    async def test_canceled_at_period_end_keeps_plan_until_end(self, services):
        start = utc(2024, 1, 1)
        subscription = await _subscribe(services, "user-1", PlanId.PRO, start)
        canceled = subscription.model_copy(
            update={"status": SubscriptionStatus.CANCELED, "cancel_at_period_end": True}
        )
        end = canceled.current_period_end

        assert services.store.effective_plan(canceled, end - timedelta(days=1)) == PlanId.PRO
        assert services.store.effective_plan(canceled, end) == PlanId.FREE

    @pytest.mark.asyncio
    async def test_canceled_immediately_is_free(self, services):
        start = utc(2024, 1, 1)
        subscription = await _subscribe(services, "user-1", PlanId.PRO, start)
        canceled = subscription.model_copy(
            update={"status": SubscriptionStatus.CANCELED, "cancel_at_period_end": False}
        )

        assert services.store.effective_plan(canceled, start + timedelta(days=1)) == PlanId.FREE

    @pytest.mark.asyncio
    async def test_default_subscription_is_free_and_not_persisted(self, services, db):
        subscription = await services.store.get("new-user")

        assert subscription.is_default
        assert subscription.plan == PlanId.FREE
        assert await db.get_subscription("new-user") is None

    @pytest.mark.asyncio
    async def test_default_is_never_persisted(self, services):
        with pytest.raises(ValidationError):
            await services.store.upsert(services.store.default_for("user-1"))

    @pytest.mark.asyncio
    async def test_amount_invariant_enforced(self, services):
        subscription = Subscription(
            user_id="user-1",
            plan=PlanId.PRO,
            current_period_start=utc(2024, 1, 1),
            current_period_end=utc(2024, 4, 1),
            billing_duration_months=3,
            amount_paid=Decimal("1000"),
        )
        with pytest.raises(ValidationError):
            await services.store.upsert(subscription)


class TestUsageSummary:
    @pytest.mark.asyncio
    async def test_summary_for_free_user(self, services, db):
        now = utc(2024, 2, 10)
        for i in range(3):
            await db.add_customer("user-1", f"Customer {i}")
        await db.add_invoice("user-1", created_at=now)

        summary = await services.gate.usage_summary("user-1", now=now)

        assert summary.plan == PlanId.FREE
        assert summary.customers_used == 3
        assert summary.customers_remaining == 47
        assert summary.invoices_this_month == 1
        assert summary.invoices_remaining == 19

    @pytest.mark.asyncio
    async def test_summary_unlimited_has_no_remaining(self, services):
        now = utc(2024, 2, 10)
        await _subscribe(services, "user-1", PlanId.PRO, now)

        summary = await services.gate.usage_summary("user-1", now=now)

        assert summary.customers_remaining is None
        assert summary.invoices_remaining is None


class TestRequireAllowed:
    def test_allowed_decision_passes(self):
        require_allowed(EntitlementDecision.allow(), "customers")

    @pytest.mark.asyncio
    async def test_denial_raises_limit_exceeded(self, services, db):
        for i in range(50):
            await db.add_customer("user-1", f"Customer {i}")
        decision = await services.gate.can_create_customer("user-1")

        with pytest.raises(LimitExceeded) as exc_info:
            require_allowed(decision, "customers")

        assert exc_info.value.resource == "customers"
        assert exc_info.value.reason == decision.reason


class TestUserLocks:
    @pytest.mark.asyncio
    async def test_same_user_shares_lock_while_held(self, services):
        lock = services.store.lock("user-1")

        async with lock:
            assert services.store.lock("user-1") is lock
            assert services.store.lock("user-2") is not lock

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self, services):
        for i in range(100):
            async with services.store.lock(f"user-{i}"):
                pass
        gc.collect()

        assert len(services.store._locks) == 0
