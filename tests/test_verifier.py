"""
Tests for payment verification (signature check and exactly-once application).
"""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from src.billing.errors import ValidationError
from src.models.billing import (
    GatewayKind,
    OrderStatus,
    PlanId,
    RejectReason,
    SubscriptionStatus,
)
from tests.conftest import (
    razorpay_order_signature,
    razorpay_recurring_signature,
    tamper,
    utc,
)


async def _snapshot(db, user_id, order_id):
    return (
        await db.get_subscription(user_id),
        await db.get_payment_order(order_id),
    )


class TestVerify:
    @pytest.mark.asyncio
    async def test_pro_three_months(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 3)
        signature = razorpay_order_signature(handle.order_id, "pay_1")
        before = datetime.now(UTC)

        result = await services.verifier.verify(
            "user-1", handle.order_id, "pay_1", signature, claimed_plan="pro", claimed_duration=3
        )

        assert result.applied
        assert not result.replayed
        subscription = await db.get_subscription("user-1")
        assert subscription.plan == PlanId.PRO
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.billing_duration_months == 3
        assert subscription.amount_paid == Decimal("1497")
        assert subscription.gateway_kind == GatewayKind.ONE_TIME
        assert subscription.gateway_order_id == handle.order_id
        assert subscription.gateway_payment_id == "pay_1"
        assert subscription.cancel_at_period_end
        period = subscription.current_period_end - subscription.current_period_start
        assert timedelta(days=89) <= period <= timedelta(days=92)
        assert subscription.current_period_start >= before - timedelta(seconds=1)

        order = await db.get_payment_order(handle.order_id)
        assert order.status == OrderStatus.VERIFIED
        assert order.payment_id == "pay_1"

    @pytest.mark.asyncio
    async def test_verify_is_idempotent(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "starter", 1)
        signature = razorpay_order_signature(handle.order_id, "pay_1")

        first = await services.verifier.verify("user-1", handle.order_id, "pay_1", signature)
        after_first = await db.get_subscription("user-1")
        second = await services.verifier.verify("user-1", handle.order_id, "pay_1", signature)
        after_second = await db.get_subscription("user-1")

        assert first.applied and not first.replayed
        assert second.applied and second.replayed
        assert after_second.current_period_end == after_first.current_period_end
        assert after_second.updated_at == after_first.updated_at

    @pytest.mark.asyncio
    async def test_different_payment_id_is_already_processed(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)
        await services.verifier.verify(
            "user-1", handle.order_id, "pay_1", razorpay_order_signature(handle.order_id, "pay_1")
        )
        before = await db.get_subscription("user-1")

        result = await services.verifier.verify(
            "user-1", handle.order_id, "pay_2", razorpay_order_signature(handle.order_id, "pay_2")
        )

        assert not result.applied
        assert result.reason == RejectReason.ALREADY_PROCESSED
        assert await db.get_subscription("user-1") == before

    @pytest.mark.asyncio
    @pytest.mark.parametrize("position", [0, 17, -1])
    async def test_tampered_signature_rejected(self, services, db, position):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)
        signature = razorpay_order_signature(handle.order_id, "pay_1")
        chars = list(signature)
        chars[position] = "0" if chars[position] != "0" else "1"
        before = await _snapshot(db, "user-1", handle.order_id)

        result = await services.verifier.verify("user-1", handle.order_id, "pay_1", "".join(chars))

        assert not result.applied
        assert result.reason == RejectReason.SIGNATURE_MISMATCH
        assert await _snapshot(db, "user-1", handle.order_id) == before

    @pytest.mark.asyncio
    async def test_signature_for_other_payment_rejected(self, services):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)

        result = await services.verifier.verify(
            "user-1", handle.order_id, "pay_1", razorpay_order_signature(handle.order_id, "pay_2")
        )

        assert result.reason == RejectReason.SIGNATURE_MISMATCH

    @pytest.mark.asyncio
    async def test_unknown_order(self, services):
        result = await services.verifier.verify("user-1", "order_missing", "pay_1", "sig")

        assert result.reason == RejectReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_users_order_not_found(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)
        signature = razorpay_order_signature(handle.order_id, "pay_1")

        result = await services.verifier.verify("user-2", handle.order_id, "pay_1", signature)

        assert result.reason == RejectReason.NOT_FOUND
        assert await db.get_subscription("user-2") is None
        assert (await db.get_payment_order(handle.order_id)).status == OrderStatus.CREATED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan,months", [("business", 3), ("pro", 12)])
    async def test_client_claims_cross_checked(self, services, db, plan, months):
        handle = await services.orders.create_subscription_order("user-1", "pro", 3)
        signature = razorpay_order_signature(handle.order_id, "pay_1")

        result = await services.verifier.verify(
            "user-1",
            handle.order_id,
            "pay_1",
            signature,
            claimed_plan=plan,
            claimed_duration=months,
        )

        assert result.reason == RejectReason.ORDER_MISMATCH
        assert await db.get_subscription("user-1") is None

    @pytest.mark.asyncio
    async def test_extension_from_running_period(self, services, db):
        first = await services.orders.create_subscription_order("user-1", "pro", 1)
        await services.verifier.verify(
            "user-1", first.order_id, "pay_1", razorpay_order_signature(first.order_id, "pay_1")
        )
        running = await db.get_subscription("user-1")

        second = await services.orders.create_subscription_order("user-1", "pro", 2)
        await services.verifier.verify(
            "user-1", second.order_id, "pay_2", razorpay_order_signature(second.order_id, "pay_2")
        )
        extended = await db.get_subscription("user-1")

        assert extended.current_period_start == running.current_period_end
        assert extended.billing_duration_months == 2
        assert extended.amount_paid == Decimal("998")

    @pytest.mark.asyncio
    async def test_concurrent_verifies_apply_once(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)
        signature = razorpay_order_signature(handle.order_id, "pay_1")

        results = await asyncio.gather(
            *[
                services.verifier.verify("user-1", handle.order_id, "pay_1", signature)
                for _ in range(5)
            ]
        )

        assert all(result.applied for result in results)
        assert sum(1 for result in results if not result.replayed) == 1
        events = await db.list_audit_events("user-1")
        assert sum(1 for event in events if event["action"] == "VERIFY") == 1

    @pytest.mark.asyncio
    async def test_recurring_checkout(self, services, db):
        handle = await services.orders.create_recurring_subscription("user-1", "pro")
        signature = razorpay_recurring_signature("pay_1", handle.order_id)

        result = await services.verifier.verify("user-1", handle.order_id, "pay_1", signature)

        assert result.applied
        subscription = await db.get_subscription("user-1")
        assert subscription.gateway_kind == GatewayKind.RECURRING
        assert subscription.gateway_subscription_id == handle.order_id
        assert subscription.gateway_order_id is None
        assert not subscription.cancel_at_period_end
        assert subscription.amount_paid == Decimal("499")

    @pytest.mark.asyncio
    async def test_recurring_rejects_one_time_signature_layout(self, services):
        handle = await services.orders.create_recurring_subscription("user-1", "pro")
        signature = razorpay_order_signature(handle.order_id, "pay_1")

        result = await services.verifier.verify("user-1", handle.order_id, "pay_1", signature)

        assert result.reason == RejectReason.SIGNATURE_MISMATCH

    @pytest.mark.asyncio
    async def test_recurring_refused_while_prepaid_period_runs(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 12)
        await services.verifier.verify(
            "user-1", handle.order_id, "pay_1", razorpay_order_signature(handle.order_id, "pay_1")
        )
        prepaid = await db.get_subscription("user-1")

        with pytest.raises(ValidationError, match="prepaid plan is active"):
            await services.orders.create_recurring_subscription("user-1", "business")

        after = await db.get_subscription("user-1")
        assert after.plan == PlanId.PRO
        assert after.current_period_end == prepaid.current_period_end
        assert after.gateway_kind == GatewayKind.ONE_TIME

    @pytest.mark.asyncio
    async def test_recurring_allowed_after_prepaid_period(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)
        await services.verifier.verify(
            "user-1", handle.order_id, "pay_1", razorpay_order_signature(handle.order_id, "pay_1")
        )
        prepaid = await db.get_subscription("user-1")

        recurring = await services.orders.create_recurring_subscription(
            "user-1", "business", now=prepaid.current_period_end + timedelta(seconds=1)
        )

        assert (await db.get_payment_order(recurring.order_id)).intended_plan == PlanId.BUSINESS


class TestVerifyCatalog:
    @pytest.mark.asyncio
    async def test_catalog_verify(self, services, storefront, db):
        handle = await services.orders.create_catalog_order(
            storefront["slug"], storefront["listed"], 1
        )
        signature = razorpay_order_signature(handle.order_id, "pay_9")

        result = await services.verifier.verify_catalog(
            handle.catalog_order_id, handle.order_id, "pay_9", signature
        )
        replay = await services.verifier.verify_catalog(
            handle.catalog_order_id, handle.order_id, "pay_9", signature
        )

        assert result.applied
        assert replay.applied and replay.replayed
        order = await db.get_catalog_order(handle.catalog_order_id)
        assert order.status == OrderStatus.VERIFIED
        assert order.payment_id == "pay_9"
        assert await db.get_subscription("seller-1") is None

    @pytest.mark.asyncio
    async def test_catalog_tampered_signature(self, services, storefront, db):
        handle = await services.orders.create_catalog_order(
            storefront["slug"], storefront["listed"], 1
        )
        signature = tamper(razorpay_order_signature(handle.order_id, "pay_9"))

        result = await services.verifier.verify_catalog(
            handle.catalog_order_id, handle.order_id, "pay_9", signature
        )

        assert result.reason == RejectReason.SIGNATURE_MISMATCH
        assert (await db.get_catalog_order(handle.catalog_order_id)).status == OrderStatus.CREATED

    @pytest.mark.asyncio
    async def test_catalog_order_id_mismatch(self, services, storefront):
        first = await services.orders.create_catalog_order(
            storefront["slug"], storefront["listed"], 1
        )
        second = await services.orders.create_catalog_order(
            storefront["slug"], storefront["listed"], 1
        )
        signature = razorpay_order_signature(second.order_id, "pay_9")

        result = await services.verifier.verify_catalog(
            first.catalog_order_id, second.order_id, "pay_9", signature
        )

        assert result.reason == RejectReason.ORDER_MISMATCH

    @pytest.mark.asyncio
    async def test_catalog_unknown(self, services):
        result = await services.verifier.verify_catalog("co_missing", "order_x", "pay", "sig")

        assert result.reason == RejectReason.NOT_FOUND


class TestConfirmFromWebhook:
    @pytest.mark.asyncio
    async def test_webhook_then_client_callback_applies_once(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)

        webhook = await services.verifier.confirm_from_webhook(
            "razorpay", handle.order_id, "pay_1"
        )
        client = await services.verifier.verify(
            "user-1", handle.order_id, "pay_1", razorpay_order_signature(handle.order_id, "pay_1")
        )

        assert webhook.applied and not webhook.replayed
        assert client.applied and client.replayed

    @pytest.mark.asyncio
    async def test_unknown_order(self, services):
        result = await services.verifier.confirm_from_webhook(
            "razorpay", "order_missing", "pay_1"
        )

        assert result.reason == RejectReason.NOT_FOUND

    @pytest.mark.asyncio
    async def test_other_gateway_cannot_confirm(self, services, storefront, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)
        catalog = await services.orders.create_catalog_order(
            storefront["slug"], storefront["listed"], 1
        )

        plan_result = await services.verifier.confirm_from_webhook(
            "cashfree", handle.order_id, "pay_1"
        )
        catalog_result = await services.verifier.confirm_from_webhook(
            "cashfree", catalog.order_id, "pay_2"
        )

        assert plan_result.reason == RejectReason.NOT_FOUND
        assert catalog_result.reason == RejectReason.NOT_FOUND
        assert (await db.get_payment_order(handle.order_id)).status == OrderStatus.CREATED
        assert (await db.get_catalog_order(catalog.catalog_order_id)).status == (
            OrderStatus.CREATED
        )

    @pytest.mark.asyncio
    async def test_now_is_respected(self, services, db):
        handle = await services.orders.create_subscription_order("user-1", "pro", 1)

        await services.verifier.confirm_from_webhook(
            "razorpay", handle.order_id, "pay_1", now=utc(2024, 1, 31)
        )

        subscription = await db.get_subscription("user-1")
        assert subscription.current_period_start == utc(2024, 1, 31)
        assert subscription.current_period_end == utc(2024, 2, 29)
