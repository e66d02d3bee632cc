"""
Reconciliation with the payment gateway.

Pulls authoritative recurring-subscription state and overwrites the local
row. Gateway status mapping:

| gateway status                  | local status |
|---------------------------------|--------------|
| authenticated, active           | active       |
| pending, halted                 | past_due     |
| cancelled, completed, expired   | canceled     |
| created (and anything unknown)  | unchanged    |

A gateway failure never writes; the local row stays as it was and the
error propagates as GatewayUnavailableError. One-time and gateway-less rows
are returned untouched.
"""

import asyncio
import logging
from datetime import UTC, datetime
from decimal import Decimal

from src.billing.errors import BillingError, GatewayUnavailableError, ValidationError
from src.billing.periods import add_months
from src.billing.plans import get_plan
from src.billing.subscription_store import SubscriptionStore
from src.gateways.base import GatewayAdapter
from src.gateways.registry import GatewayRegistry
from src.models.billing import (
    GatewayKind,
    PlanId,
    RecurringStatus,
    Subscription,
    SubscriptionStatus,
)
from src.observability.metrics import track_reconciliation
from src.storage.database import BillingDatabase

logger = logging.getLogger(__name__)

GATEWAY_STATUS_MAP = {
    "authenticated": SubscriptionStatus.ACTIVE,
    "active": SubscriptionStatus.ACTIVE,
    "pending": SubscriptionStatus.PAST_DUE,
    "halted": SubscriptionStatus.PAST_DUE,
    "cancelled": SubscriptionStatus.CANCELED,
    "completed": SubscriptionStatus.CANCELED,
    "expired": SubscriptionStatus.CANCELED,
}


def map_gateway_status(status: str) -> SubscriptionStatus | None:
    """Local status for a gateway status, or None when it should not change."""
    return GATEWAY_STATUS_MAP.get(status.lower())


def apply_recurring_status(
    subscription: Subscription,
    remote: RecurringStatus,
    remote_plan: PlanId | None,
) -> Subscription:
    """Overlay authoritative gateway state onto a local row."""
    update: dict = {"updated_at": datetime.now(UTC)}

    status = map_gateway_status(remote.status)
    if status is not None:
        update["status"] = status
    if remote.period_start is not None:
        update["current_period_start"] = remote.period_start
    if remote.period_end is not None:
        update["current_period_end"] = remote.period_end
    if remote.next_due_date is not None or status == SubscriptionStatus.CANCELED:
        update["next_due_date"] = remote.next_due_date

    if remote_plan is not None and remote_plan != subscription.plan:
        update["plan"] = remote_plan
        if subscription.billing_duration_months is not None:
            update["amount_paid"] = Decimal(
                get_plan(remote_plan).price * subscription.billing_duration_months
            )

    return subscription.model_copy(update=update)


class ReconciliationSync:
    """Sync, adopt and cancel gateway-managed recurring subscriptions."""

    def __init__(
        self,
        db: BillingDatabase,
        store: SubscriptionStore,
        gateways: GatewayRegistry,
    ):
        self.db = db
        self.store = store
        self.gateways = gateways

    def _adapter_for(self, subscription: Subscription) -> GatewayAdapter:
        return self.gateways.get(
            subscription.gateway_provider or self.gateways.subscription_provider
        )

    async def _fetch(self, adapter: GatewayAdapter, subscription_id: str) -> RecurringStatus:
        try:
            return await asyncio.to_thread(adapter.fetch_recurring_status, subscription_id)
        except GatewayUnavailableError:
            track_reconciliation("failed")
            raise

    async def sync(self, user_id: str) -> Subscription:
        """
        Refresh a user's recurring subscription from the gateway.

        Returns:
            Subscription: Updated row, the untouched local row (one-time or no
            gateway), or the free default when the user has no row

        Raises:
            GatewayUnavailableError: Gateway unreachable (nothing written)
            GatewayError: Gateway rejected the lookup (nothing written)
        """
        async with self.store.lock(user_id):
            subscription = await self.store.get_persisted(user_id)
            if subscription is None:
                track_reconciliation("skipped")
                return self.store.default_for(user_id)

            ref = subscription.gateway_ref
            if subscription.gateway_kind != GatewayKind.RECURRING or ref is None:
                track_reconciliation("skipped")
                return subscription

            adapter = self._adapter_for(subscription)
            remote = await self._fetch(adapter, ref.subscription_id)
            updated = apply_recurring_status(
                subscription, remote, adapter.resolve_plan(remote.plan)
            )
            await self.store.upsert(updated, action="SYNC")

        track_reconciliation("synced")
        logger.info(
            "Subscription synced",
            extra={
                "user_id": user_id,
                "subscription_id": ref.subscription_id,
                "gateway_status": remote.status,
                "status": updated.status.value,
            },
        )
        return updated

    async def sync_all(self) -> dict:
        """
        Sync every recurring subscription (operator-triggered).

        Returns:
            dict with synced count, failed count and per-user errors
        """
        subscriptions = await self.store.list_recurring()
        synced = 0
        errors: list[dict[str, str]] = []

        for subscription in subscriptions:
            try:
                await self.sync(subscription.user_id)
                synced += 1
            except BillingError as e:
                logger.error(
                    "Bulk sync failed for user",
                    extra={"user_id": subscription.user_id, "error": str(e)},
                )
                errors.append({"user_id": subscription.user_id, "error": str(e)})

        logger.info(
            "Bulk subscription sync complete",
            extra={"total": len(subscriptions), "synced": synced, "failed": len(errors)},
        )
        return {"synced": synced, "failed": len(errors), "errors": errors}

    async def adopt_recurring(
        self, user_id: str, provider: str, subscription_id: str
    ) -> Subscription | None:
        """
        Bind a gateway subscription to a user and apply its authoritative state.

        Used by webhooks, which may arrive before (or instead of) the client
        checkout callback.

        Returns:
            Subscription, or None when the gateway plan cannot be mapped and
            no pending order names one
        """
        adapter = self.gateways.get(provider)

        async with self.store.lock(user_id):
            remote = await self._fetch(adapter, subscription_id)
            current = await self.store.get_persisted(user_id)

            if current is not None and current.gateway_subscription_id == subscription_id:
                updated = apply_recurring_status(
                    current, remote, adapter.resolve_plan(remote.plan)
                )
                await self.store.upsert(updated, action="SYNC")
                track_reconciliation("synced")
                return updated

            status = map_gateway_status(remote.status)
            if status is None:
                logger.info(
                    "Recurring subscription not yet started; nothing to adopt",
                    extra={"user_id": user_id, "subscription_id": subscription_id},
                )
                track_reconciliation("skipped")
                return current

            plan_id = adapter.resolve_plan(remote.plan)
            if plan_id is None:
                pending = await self.db.get_payment_order(subscription_id)
                plan_id = pending.intended_plan if pending is not None else None
            if plan_id is None:
                logger.warning(
                    "Cannot map gateway plan for recurring subscription",
                    extra={"user_id": user_id, "subscription_id": subscription_id},
                )
                track_reconciliation("skipped")
                return current

            now = datetime.now(UTC)
            period_start = remote.period_start or now
            adopted = Subscription(
                user_id=user_id,
                plan=plan_id,
                status=status,
                current_period_start=period_start,
                current_period_end=remote.period_end or add_months(period_start, 1),
                cancel_at_period_end=False,
                billing_duration_months=1,
                amount_paid=get_plan(plan_id).price,
                gateway_kind=GatewayKind.RECURRING,
                gateway_provider=adapter.name,
                gateway_subscription_id=subscription_id,
                next_due_date=remote.next_due_date,
            )
            await self.store.upsert(adopted, action="ADOPT")

        track_reconciliation("synced")
        logger.info(
            "Recurring subscription adopted",
            extra={"user_id": user_id, "subscription_id": subscription_id, "plan": plan_id.value},
        )
        return adopted

    async def cancel(self, user_id: str, at_period_end: bool = True) -> Subscription:
        """
        Cancel the user's recurring subscription at the gateway.

        Args:
            user_id: User identifier
            at_period_end: Keep access until the current period ends

        Raises:
            ValidationError: No recurring subscription to cancel
            GatewayUnavailableError / GatewayError: Gateway failure (nothing written)
        """
        async with self.store.lock(user_id):
            subscription = await self.store.get_persisted(user_id)
            ref = subscription.gateway_ref if subscription is not None else None
            if (
                subscription is None
                or subscription.gateway_kind != GatewayKind.RECURRING
                or ref is None
            ):
                raise ValidationError("No recurring subscription to cancel")

            adapter = self._adapter_for(subscription)
            remote = await asyncio.to_thread(
                adapter.cancel_recurring, ref.subscription_id, at_period_end
            )
            updated = apply_recurring_status(
                subscription, remote, adapter.resolve_plan(remote.plan)
            ).model_copy(update={"cancel_at_period_end": at_period_end})
            await self.store.upsert(updated, action="CANCEL")

        logger.info(
            "Recurring subscription canceled",
            extra={
                "user_id": user_id,
                "subscription_id": ref.subscription_id,
                "at_period_end": at_period_end,
            },
        )
        return updated
