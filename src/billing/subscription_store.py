"""
Subscription store: one current subscription per user.

Writers are limited to PaymentVerifier (through the atomic order
finalization in the database layer) and ReconciliationSync. Reads for a user
with no row return a synthesized free default that is never persisted.
"""

import asyncio
import logging
import weakref
from datetime import UTC, datetime, timedelta

from src.billing.errors import ValidationError
from src.billing.plans import get_plan
from src.config import BillingConfig
from src.models.billing import PlanId, Subscription, SubscriptionStatus
from src.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """Read, write and lock per-user subscription rows."""

    def __init__(self, db: BillingDatabase, config: BillingConfig):
        self.db = db
        self.config = config
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock(self, user_id: str) -> asyncio.Lock:
        """
        Per-user lock serializing verify and sync for the same user.

        Entries disappear once no holder or waiter references the lock, so
        the map stays bounded by the number of users with work in flight.

        Usage:
            async with store.lock(user_id):
                ...
        """
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def default_for(self, user_id: str, now: datetime | None = None) -> Subscription:
        now = now or datetime.now(UTC)
        return Subscription(
            user_id=user_id,
            plan=PlanId.FREE,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=now,
            current_period_end=now + timedelta(days=self.config.free_default_period_days),
            is_default=True,
        )

    async def get(self, user_id: str, now: datetime | None = None) -> Subscription:
        """
        Get the user's subscription, or the free default when none is stored.

        Args:
            user_id: User identifier
            now: Reference clock for the synthesized default

        Returns:
            Subscription: Persisted row or default (is_default=True)
        """
        subscription = await self.db.get_subscription(user_id)
        if subscription is None:
            return self.default_for(user_id, now)
        return subscription

    async def get_persisted(self, user_id: str) -> Subscription | None:
        return await self.db.get_subscription(user_id)

    async def find_by_gateway_subscription(self, subscription_id: str) -> Subscription | None:
        return await self.db.get_subscription_by_gateway_id(subscription_id)

    async def list_recurring(self) -> list[Subscription]:
        return await self.db.list_recurring_subscriptions()

    async def upsert(self, subscription: Subscription, action: str = "UPDATE") -> Subscription:
        """
        Persist a subscription row.

        Raises:
            ValidationError: Synthesized default passed in, or amount_paid
                inconsistent with plan price and duration
        """
        if subscription.is_default:
            raise ValidationError("The synthesized free default is never persisted")
        check_amount_invariant(subscription)

        await self.db.upsert_subscription(subscription, action=action)
        logger.info(
            "Subscription updated",
            extra={
                "user_id": subscription.user_id,
                "plan": subscription.plan.value,
                "status": subscription.status.value,
                "action": action,
            },
        )
        return subscription

    def effective_plan(self, subscription: Subscription, now: datetime | None = None) -> PlanId:
        """
        Plan whose limits apply right now.

        The stored plan applies while the paid period is running; a past_due
        row keeps it for the configured grace period. A canceled row without
        cancel_at_period_end ended immediately. Anything else (lapsed one-time
        purchase, canceled after period end) falls back to free.
        """
        now = now or datetime.now(UTC)
        if subscription.plan == PlanId.FREE or subscription.is_default:
            return PlanId.FREE
        if (
            subscription.status == SubscriptionStatus.CANCELED
            and not subscription.cancel_at_period_end
        ):
            return PlanId.FREE

        period_end = subscription.current_period_end
        if subscription.status == SubscriptionStatus.PAST_DUE:
            period_end = period_end + timedelta(days=self.config.past_due_grace_days)

        if now < period_end:
            return subscription.plan
        return PlanId.FREE


def check_amount_invariant(subscription: Subscription) -> None:
    """amount_paid must equal plan.price * billing_duration_months when both are set."""
    if subscription.amount_paid is None or subscription.billing_duration_months is None:
        return
    expected = get_plan(subscription.plan).price * subscription.billing_duration_months
    if subscription.amount_paid != expected:
        raise ValidationError(
            f"amount_paid {subscription.amount_paid} does not match "
            f"{subscription.plan.value} x {subscription.billing_duration_months} months ({expected})"
        )
