"""
Gateway webhook handling.

Handles body-signed server-to-server events from any registered gateway:
- payment captured / order paid: finalize the matching pending order
  through the same atomic path as client verification
- subscription lifecycle (activated, charged, pending, halted, cancelled,
  completed, ...): confirm the first payment if present, then pull
  authoritative state from the gateway
- payment failed: logged only (no dunning)

The signature covers the raw body, so verification runs before the body
is parsed.
"""

import json
import logging
from collections.abc import Mapping
from typing import Any

from src.billing.errors import NotFoundError, SignatureMismatch, ValidationError
from src.billing.reconciliation import ReconciliationSync
from src.billing.subscription_store import SubscriptionStore
from src.billing.verifier import PaymentVerifier
from src.gateways.base import GatewayAdapter, WebhookEvent, WebhookEventKind
from src.gateways.registry import GatewayRegistry
from src.observability.metrics import track_webhook_event
from src.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class BillingWebhookHandler:
    """Verify, parse and route gateway webhook events."""

    def __init__(
        self,
        db: BillingDatabase,
        gateways: GatewayRegistry,
        store: SubscriptionStore,
        verifier: PaymentVerifier,
        reconciliation: ReconciliationSync,
    ):
        self.db = db
        self.gateways = gateways
        self.store = store
        self.verifier = verifier
        self.reconciliation = reconciliation

    async def handle_event(
        self, provider: str, body: bytes, headers: Mapping[str, str]
    ) -> dict[str, Any]:
        """
        Process a gateway webhook.

        Args:
            provider: Gateway name from the webhook URL
            body: Raw request body (signed)
            headers: Request headers (case-insensitive mapping)

        Returns:
            dict: {"status": "processed" | "ignored", ...}

        Raises:
            NotFoundError: Unknown provider
            SignatureMismatch: Body signature invalid
            ValidationError: Body is not a JSON object
            GatewayUnavailableError: State pull failed (gateway should redeliver)
        """
        adapter = self.gateways.find(provider)
        if adapter is None:
            raise NotFoundError(f"Unknown gateway: {provider}")

        if not adapter.verify_webhook(body, headers):
            track_webhook_event(adapter.name, "unknown", "signature_mismatch")
            logger.warning("Webhook signature mismatch", extra={"provider": adapter.name})
            raise SignatureMismatch("Invalid webhook signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ValidationError("Invalid webhook payload") from e
        if not isinstance(payload, dict):
            raise ValidationError("Invalid webhook payload")

        event = adapter.parse_webhook(payload)
        logger.info(
            "Processing webhook event",
            extra={"provider": adapter.name, "event_type": event.event_type},
        )

        handlers = {
            WebhookEventKind.PAYMENT_CAPTURED: self._handle_payment_captured,
            WebhookEventKind.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            WebhookEventKind.PAYMENT_FAILED: self._handle_payment_failed,
        }
        handler = handlers.get(event.kind)
        if handler is None:
            track_webhook_event(adapter.name, event.event_type, "ignored")
            return {"status": "ignored", "event": event.event_type}

        result = await handler(adapter, event)
        track_webhook_event(adapter.name, event.event_type, result["status"])
        return result

    async def _handle_payment_captured(
        self, adapter: GatewayAdapter, event: WebhookEvent
    ) -> dict[str, Any]:
        if not event.order_id or not event.payment_id:
            return {"status": "ignored", "event": event.event_type}

        result = await self.verifier.confirm_from_webhook(
            adapter.name, event.order_id, event.payment_id
        )
        return {
            "status": "processed",
            "event": event.event_type,
            "applied": result.applied,
            "reason": result.reason.value if result.reason else None,
        }

    async def _handle_subscription_updated(
        self, adapter: GatewayAdapter, event: WebhookEvent
    ) -> dict[str, Any]:
        subscription_id = event.subscription_id
        if not subscription_id:
            return {"status": "ignored", "event": event.event_type}

        if event.payment_id:
            await self.verifier.confirm_from_webhook(
                adapter.name, subscription_id, event.payment_id
            )

        user_id = await self._resolve_user(subscription_id, event.user_id)
        if user_id is None:
            logger.warning(
                "Subscription webhook for unknown user",
                extra={"provider": adapter.name, "subscription_id": subscription_id},
            )
            return {"status": "ignored", "event": event.event_type}

        subscription = await self.reconciliation.adopt_recurring(
            user_id, adapter.name, subscription_id
        )
        return {
            "status": "processed",
            "event": event.event_type,
            "subscription_status": subscription.status.value if subscription else None,
        }

    async def _handle_payment_failed(
        self, adapter: GatewayAdapter, event: WebhookEvent
    ) -> dict[str, Any]:
        logger.warning(
            "Payment failed",
            extra={
                "provider": adapter.name,
                "order_id": event.order_id,
                "payment_id": event.payment_id,
            },
        )
        return {"status": "processed", "event": event.event_type}

    async def _resolve_user(self, subscription_id: str, noted_user_id: str | None) -> str | None:
        """Owner of a gateway subscription: stored row, then pending order, then notes."""
        subscription = await self.store.find_by_gateway_subscription(subscription_id)
        if subscription is not None:
            return subscription.user_id

        pending = await self.db.get_payment_order(subscription_id)
        if pending is not None:
            return pending.user_id

        return noted_user_id
