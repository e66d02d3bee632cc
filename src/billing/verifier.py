"""
Payment verification.

Turns a gateway checkout callback (order id, payment id, signature) into an
exactly-once change of state:

1. Unknown order, or an order owned by someone else -> Rejected(not_found)
2. Client claims (plan, duration) differ from the pending order
   -> Rejected(order_mismatch), before any signature work
3. Already verified: same payment id -> Applied (replay, no mutation);
   different payment id -> Rejected(already_processed)
4. Provider HMAC recomputed and compared in constant time; mismatch
   -> Rejected(signature_mismatch), logged as possible tampering
5. Atomic finalization: conditional created -> verified plus the
   subscription update in one immediate transaction

Verify and sync for the same user are serialized by the store's per-user lock.
Catalog orders never touch any subscription.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal

from src.billing.periods import add_months
from src.billing.subscription_store import SubscriptionStore, check_amount_invariant
from src.gateways.registry import GatewayRegistry
from src.models.billing import (
    GatewayKind,
    OneTime,
    OrderKind,
    OrderStatus,
    PendingPaymentOrder,
    RejectReason,
    Subscription,
    SubscriptionStatus,
    VerificationResult,
)
from src.observability.metrics import track_payment_verification
from src.storage.database import BillingDatabase, FinalizeOutcome

logger = logging.getLogger(__name__)

_OUTCOME_RESULTS = {
    FinalizeOutcome.APPLIED: VerificationResult.applied_now(),
    FinalizeOutcome.REPLAYED: VerificationResult.replay(),
    FinalizeOutcome.CONFLICT: VerificationResult.rejected(RejectReason.ALREADY_PROCESSED),
    FinalizeOutcome.NOT_FOUND: VerificationResult.rejected(RejectReason.NOT_FOUND),
    FinalizeOutcome.FAILED: VerificationResult.rejected(RejectReason.NOT_FOUND),
}


def _outcome_label(result: VerificationResult) -> str:
    if result.applied:
        return "replayed" if result.replayed else "applied"
    return result.reason.value


def build_subscription(
    order: PendingPaymentOrder,
    current: Subscription | None,
    payment_id: str,
    now: datetime,
) -> Subscription:
    """
    Subscription row produced by a verified plan order.

    One-time purchases extend from the end of a still-running period (so
    buying more months never loses paid time); recurring subscriptions
    start now and are corrected by the next gateway sync. A recurring
    checkout cannot be opened while a prepaid period is still running.
    """
    start = now
    if (
        order.kind == OrderKind.ONE_TIME
        and current is not None
        and current.current_period_end > now
    ):
        start = current.current_period_end

    end = add_months(start, order.intended_duration_months)
    recurring = order.kind == OrderKind.RECURRING

    subscription = Subscription(
        user_id=order.user_id,
        plan=order.intended_plan,
        status=SubscriptionStatus.ACTIVE,
        current_period_start=start,
        current_period_end=end,
        cancel_at_period_end=not recurring,
        billing_duration_months=order.intended_duration_months,
        amount_paid=Decimal(order.amount_minor_units) / 100,
        gateway_kind=GatewayKind.RECURRING if recurring else GatewayKind.ONE_TIME,
        gateway_provider=order.provider,
        gateway_subscription_id=order.order_id if recurring else None,
        gateway_order_id=None if recurring else order.order_id,
        gateway_payment_id=payment_id,
        next_due_date=end,
    )
    check_amount_invariant(subscription)
    return subscription


class PaymentVerifier:
    """Signature check plus at-most-once application of payments."""

    def __init__(
        self,
        db: BillingDatabase,
        store: SubscriptionStore,
        gateways: GatewayRegistry,
    ):
        self.db = db
        self.store = store
        self.gateways = gateways

    async def verify(
        self,
        user_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
        claimed_plan: str | None = None,
        claimed_duration: int | None = None,
        now: datetime | None = None,
    ) -> VerificationResult:
        """
        Verify a plan checkout callback and apply it to the user's subscription.

        Args:
            user_id: Authenticated user (must own the order)
            order_id: Gateway order id (subscription id for recurring checkout)
            payment_id: Gateway payment id
            signature: Gateway callback signature
            claimed_plan: Plan the client believes it bought (cross-checked)
            claimed_duration: Duration the client believes it bought (cross-checked)
            now: Reference clock

        Returns:
            VerificationResult: Applied (possibly replayed) or Rejected(reason)
        """
        async with self.store.lock(user_id):
            result = await self._verify_locked(
                user_id, order_id, payment_id, signature, claimed_plan, claimed_duration, now
            )

        track_payment_verification("subscription", _outcome_label(result))
        return result

    async def _verify_locked(
        self,
        user_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
        claimed_plan: str | None,
        claimed_duration: int | None,
        now: datetime | None,
    ) -> VerificationResult:
        order = await self.db.get_payment_order(order_id)
        if order is None or order.user_id != user_id:
            logger.info("Verification for unknown order", extra={"order_id": order_id})
            return VerificationResult.rejected(RejectReason.NOT_FOUND)

        if (claimed_plan is not None and claimed_plan != order.intended_plan.value) or (
            claimed_duration is not None and claimed_duration != order.intended_duration_months
        ):
            logger.warning(
                "Verification claims differ from pending order",
                extra={
                    "order_id": order_id,
                    "user_id": user_id,
                    "claimed_plan": claimed_plan,
                    "claimed_duration": claimed_duration,
                },
            )
            return VerificationResult.rejected(RejectReason.ORDER_MISMATCH)

        settled = self._settled_result(order.status, order.payment_id, payment_id)
        if settled is not None:
            return settled

        adapter = self.gateways.get(order.provider)
        if not adapter.verify_signature(order.gateway_ref, payment_id, signature):
            logger.warning(
                "Payment signature mismatch (possible tampering)",
                extra={"order_id": order_id},
            )
            return VerificationResult.rejected(RejectReason.SIGNATURE_MISMATCH)

        return await self._finalize(order, payment_id, now)

    @staticmethod
    def _settled_result(
        status: OrderStatus, stored_payment_id: str | None, payment_id: str
    ) -> VerificationResult | None:
        if status == OrderStatus.VERIFIED:
            if stored_payment_id == payment_id:
                return VerificationResult.replay()
            return VerificationResult.rejected(RejectReason.ALREADY_PROCESSED)
        if status == OrderStatus.FAILED:
            return VerificationResult.rejected(RejectReason.NOT_FOUND)
        return None

    async def _finalize(
        self, order: PendingPaymentOrder, payment_id: str, now: datetime | None
    ) -> VerificationResult:
        now = now or datetime.now(UTC)
        outcome, _ = await self.db.finalize_payment_order(
            order.order_id,
            payment_id,
            lambda stored, current: build_subscription(stored, current, payment_id, now),
        )
        result = _OUTCOME_RESULTS[outcome]

        if outcome == FinalizeOutcome.APPLIED:
            logger.info(
                "Payment verified",
                extra={
                    "user_id": order.user_id,
                    "order_id": order.order_id,
                    "plan": order.intended_plan.value,
                    "duration_months": order.intended_duration_months,
                },
            )
        return result

    async def verify_catalog(
        self,
        catalog_order_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> VerificationResult:
        """
        Verify a storefront checkout callback.

        Args:
            catalog_order_id: Local catalog order id
            order_id: Gateway order id the client paid (must belong to the catalog order)
            payment_id: Gateway payment id
            signature: Gateway callback signature

        Returns:
            VerificationResult
        """
        result = await self._verify_catalog(catalog_order_id, order_id, payment_id, signature)
        track_payment_verification("catalog", _outcome_label(result))
        return result

    async def _verify_catalog(
        self,
        catalog_order_id: str,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> VerificationResult:
        catalog_order = await self.db.get_catalog_order(catalog_order_id)
        if catalog_order is None:
            return VerificationResult.rejected(RejectReason.NOT_FOUND)

        if catalog_order.order_id != order_id:
            logger.warning(
                "Catalog order id mismatch",
                extra={"catalog_order_id": catalog_order_id, "order_id": order_id},
            )
            return VerificationResult.rejected(RejectReason.ORDER_MISMATCH)

        settled = self._settled_result(catalog_order.status, catalog_order.payment_id, payment_id)
        if settled is not None:
            return settled

        adapter = self.gateways.get(catalog_order.provider)
        if not adapter.verify_signature(OneTime(order_id=order_id), payment_id, signature):
            logger.warning(
                "Payment signature mismatch (possible tampering)",
                extra={"order_id": order_id},
            )
            return VerificationResult.rejected(RejectReason.SIGNATURE_MISMATCH)

        outcome = await self.db.finalize_catalog_order(catalog_order_id, payment_id)
        if outcome == FinalizeOutcome.APPLIED:
            logger.info(
                "Catalog payment verified",
                extra={"catalog_order_id": catalog_order_id, "order_id": order_id},
            )
        return _OUTCOME_RESULTS[outcome]

    async def confirm_from_webhook(
        self, provider: str, order_id: str, payment_id: str, now: datetime | None = None
    ) -> VerificationResult:
        """
        Apply a payment reported by an authenticated (body-signed) webhook.

        Shares the atomic finalization with client verification, so a webhook
        racing the client redirect applies the payment once.

        Args:
            provider: Gateway whose webhook signature was verified; orders
                opened with another gateway are reported as not found
            order_id: Gateway order id, or gateway subscription id for recurring
            payment_id: Gateway payment id
        """
        order = await self.db.get_payment_order(order_id)
        if order is not None:
            if order.provider != provider:
                return self._provider_mismatch(provider, order_id)
            async with self.store.lock(order.user_id):
                result = await self._finalize(order, payment_id, now)
            track_payment_verification("subscription", _outcome_label(result))
            return result

        catalog_order = await self.db.get_catalog_order_by_gateway_id(order_id)
        if catalog_order is not None:
            if catalog_order.provider != provider:
                return self._provider_mismatch(provider, order_id)
            outcome = await self.db.finalize_catalog_order(
                catalog_order.catalog_order_id, payment_id
            )
            result = _OUTCOME_RESULTS[outcome]
            track_payment_verification("catalog", _outcome_label(result))
            return result

        return VerificationResult.rejected(RejectReason.NOT_FOUND)

    @staticmethod
    def _provider_mismatch(provider: str, order_id: str) -> VerificationResult:
        logger.warning(
            "Webhook provider does not match order",
            extra={"provider": provider, "order_id": order_id},
        )
        return VerificationResult.rejected(RejectReason.NOT_FOUND)
