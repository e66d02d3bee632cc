"""
Tests for gateway reconciliation (sync, adopt, cancel, bulk sync).
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from src.billing.errors import GatewayError, GatewayUnavailableError, ValidationError
from src.billing.periods import add_months
from src.billing.reconciliation import map_gateway_status
from src.models.billing import GatewayKind, PlanId, Subscription, SubscriptionStatus
from tests.conftest import GATEWAY_PLAN_IDS, epoch, utc


async def _recurring(services, user_id, subscription_id, plan=PlanId.PRO):
    start = utc(2024, 3, 1)
    subscription = Subscription(
        user_id=user_id,
        plan=plan,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=start,
        current_period_end=add_months(start, 1),
        billing_duration_months=1,
        amount_paid=Decimal(499 if plan == PlanId.PRO else 999),
        gateway_kind=GatewayKind.RECURRING,
        gateway_provider="razorpay",
        gateway_subscription_id=subscription_id,
    )
    await services.store.upsert(subscription)
    return subscription


class TestStatusMapping:
    @pytest.mark.parametrize(
        "gateway_status,expected",
        [
            ("authenticated", SubscriptionStatus.ACTIVE),
            ("active", SubscriptionStatus.ACTIVE),
            ("pending", SubscriptionStatus.PAST_DUE),
            ("halted", SubscriptionStatus.PAST_DUE),
            ("cancelled", SubscriptionStatus.CANCELED),
            ("completed", SubscriptionStatus.CANCELED),
            ("expired", SubscriptionStatus.CANCELED),
            ("ACTIVE", SubscriptionStatus.ACTIVE),
        ],
    )
    def test_mapped(self, gateway_status, expected):
        assert map_gateway_status(gateway_status) == expected

    @pytest.mark.parametrize("gateway_status", ["created", "paused", "something-new"])
    def test_unmapped_leaves_status(self, gateway_status):
        assert map_gateway_status(gateway_status) is None


class TestSync:
    @pytest.mark.asyncio
    async def test_overwrites_period_from_gateway(self, services, fake_razorpay, db):
        await _recurring(services, "user-1", "sub_1")
        start, end = utc(2024, 4, 1), utc(2024, 5, 1)
        fake_razorpay.add_subscription(
            "sub_1",
            status="active",
            plan_id=GATEWAY_PLAN_IDS["pro"],
            current_start=epoch(start),
            current_end=epoch(end),
            charge_at=epoch(end),
        )

        synced = await services.reconciliation.sync("user-1")

        assert synced.status == SubscriptionStatus.ACTIVE
        assert synced.current_period_start == start
        assert synced.current_period_end == end
        assert synced.next_due_date == end
        stored = await db.get_subscription("user-1")
        assert stored.current_period_end == end

    @pytest.mark.asyncio
    async def test_halted_becomes_past_due(self, services, fake_razorpay):
        await _recurring(services, "user-1", "sub_1")
        fake_razorpay.add_subscription("sub_1", status="halted", plan_id=GATEWAY_PLAN_IDS["pro"])

        synced = await services.reconciliation.sync("user-1")

        assert synced.status == SubscriptionStatus.PAST_DUE
        assert synced.plan == PlanId.PRO

    @pytest.mark.asyncio
    async def test_created_status_leaves_row(self, services, fake_razorpay):
        original = await _recurring(services, "user-1", "sub_1")
        fake_razorpay.add_subscription("sub_1", status="created", plan_id=GATEWAY_PLAN_IDS["pro"])

        synced = await services.reconciliation.sync("user-1")

        assert synced.status == original.status
        assert synced.current_period_end == original.current_period_end

    @pytest.mark.asyncio
    async def test_plan_change_recomputes_amount(self, services, fake_razorpay, db):
        await _recurring(services, "user-1", "sub_1", plan=PlanId.PRO)
        fake_razorpay.add_subscription(
            "sub_1", status="active", plan_id=GATEWAY_PLAN_IDS["business"]
        )

        synced = await services.reconciliation.sync("user-1")

        assert synced.plan == PlanId.BUSINESS
        assert synced.amount_paid == Decimal("999")
        assert (await db.get_subscription("user-1")).plan == PlanId.BUSINESS

    @pytest.mark.asyncio
    async def test_gateway_outage_writes_nothing(self, services, fake_razorpay, db):
        await _recurring(services, "user-1", "sub_1")
        before = await db.get_subscription("user-1")
        fake_razorpay.fail_status = 500

        with pytest.raises(GatewayUnavailableError):
            await services.reconciliation.sync("user-1")

        assert await db.get_subscription("user-1") == before
        assert len(fake_razorpay.requests) == 3

    @pytest.mark.asyncio
    async def test_unknown_gateway_subscription(self, services, db):
        await _recurring(services, "user-1", "sub_missing")
        before = await db.get_subscription("user-1")

        with pytest.raises(GatewayError):
            await services.reconciliation.sync("user-1")

        assert await db.get_subscription("user-1") == before

    @pytest.mark.asyncio
    async def test_one_time_row_untouched(self, services, fake_razorpay, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)
        await services.verifier.confirm_from_webhook("razorpay", handle.order_id, "pay_1")
        before = await db.get_subscription("user-1")
        calls = len(fake_razorpay.requests)

        synced = await services.reconciliation.sync("user-1")

        assert synced == before
        assert len(fake_razorpay.requests) == calls

    @pytest.mark.asyncio
    async def test_user_without_row_gets_default(self, services, fake_razorpay, db):
        synced = await services.reconciliation.sync("user-9")

        assert synced.is_default
        assert synced.plan == PlanId.FREE
        assert fake_razorpay.requests == []
        assert await db.get_subscription("user-9") is None


class TestAdopt:
    @pytest.mark.asyncio
    async def test_adopts_active_gateway_subscription(self, services, fake_razorpay, db):
        start, end = utc(2024, 6, 1), utc(2024, 7, 1)
        fake_razorpay.add_subscription(
            "sub_7",
            status="active",
            plan_id=GATEWAY_PLAN_IDS["business"],
            current_start=epoch(start),
            current_end=epoch(end),
        )

        adopted = await services.reconciliation.adopt_recurring("user-1", "razorpay", "sub_7")

        assert adopted.plan == PlanId.BUSINESS
        assert adopted.gateway_kind == GatewayKind.RECURRING
        assert adopted.gateway_subscription_id == "sub_7"
        assert adopted.current_period_start == start
        assert adopted.current_period_end == end
        assert adopted.amount_paid == Decimal("999")
        stored = await db.get_subscription("user-1")
        assert stored.plan == PlanId.BUSINESS
        assert stored.gateway_subscription_id == "sub_7"

    @pytest.mark.asyncio
    async def test_not_started_is_not_adopted(self, services, fake_razorpay, db):
        fake_razorpay.add_subscription("sub_7", status="created")

        adopted = await services.reconciliation.adopt_recurring("user-1", "razorpay", "sub_7")

        assert adopted is None
        assert await db.get_subscription("user-1") is None

    @pytest.mark.asyncio
    async def test_unmapped_plan_uses_pending_order(self, services, fake_razorpay):
        handle = await services.orders.create_recurring_subscription("user-1", "starter")
        record = fake_razorpay.subscriptions[handle.order_id]
        record.update(status="active", plan_id="plan_retired")

        adopted = await services.reconciliation.adopt_recurring(
            "user-1", "razorpay", handle.order_id
        )

        assert adopted.plan == PlanId.STARTER


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, services, fake_razorpay):
        original = await _recurring(services, "user-1", "sub_1")
        fake_razorpay.add_subscription("sub_1", status="active", plan_id=GATEWAY_PLAN_IDS["pro"])

        canceled = await services.reconciliation.cancel("user-1", at_period_end=True)

        assert canceled.cancel_at_period_end
        assert canceled.status == SubscriptionStatus.ACTIVE
        assert services.store.effective_plan(
            canceled, original.current_period_end - timedelta(days=1)
        ) == PlanId.PRO
        sent = fake_razorpay.requests[-1]
        assert sent.url.path.endswith("/subscriptions/sub_1/cancel")

    @pytest.mark.asyncio
    async def test_cancel_immediately(self, services, fake_razorpay, db):
        original = await _recurring(services, "user-1", "sub_1")
        fake_razorpay.add_subscription("sub_1", status="active", plan_id=GATEWAY_PLAN_IDS["pro"])
        mid_cycle = original.current_period_end - timedelta(days=28)

        canceled = await services.reconciliation.cancel("user-1", at_period_end=False)

        assert canceled.status == SubscriptionStatus.CANCELED
        assert not canceled.cancel_at_period_end
        assert canceled.current_period_end == original.current_period_end
        assert (await db.get_subscription("user-1")).status == SubscriptionStatus.CANCELED
        assert services.store.effective_plan(canceled, mid_cycle) == PlanId.FREE
        assert (await services.gate.current_plan("user-1", now=mid_cycle)).id == PlanId.FREE

    @pytest.mark.asyncio
    async def test_nothing_to_cancel(self, services, fake_razorpay):
        with pytest.raises(ValidationError):
            await services.reconciliation.cancel("user-1")
        assert fake_razorpay.requests == []


class TestSyncAll:
    @pytest.mark.asyncio
    async def test_counts_successes_and_failures(self, services, fake_razorpay):
        await _recurring(services, "user-1", "sub_1")
        await _recurring(services, "user-2", "sub_2")
        await _recurring(services, "user-3", "sub_gone")
        fake_razorpay.add_subscription("sub_1", status="active", plan_id=GATEWAY_PLAN_IDS["pro"])
        fake_razorpay.add_subscription("sub_2", status="halted", plan_id=GATEWAY_PLAN_IDS["pro"])

        summary = await services.reconciliation.sync_all()

        assert summary["synced"] == 2
        assert summary["failed"] == 1
        assert summary["errors"][0]["user_id"] == "user-3"

    @pytest.mark.asyncio
    async def test_no_recurring_subscriptions(self, services):
        summary = await services.reconciliation.sync_all()

        assert summary == {"synced": 0, "failed": 0, "errors": []}
