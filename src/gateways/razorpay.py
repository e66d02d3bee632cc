"""
Razorpay adapter (one-time orders and recurring subscriptions).

Signatures (hex HMAC-SHA256):
- one-time checkout:  HMAC(key_secret, "{order_id}|{payment_id}")
- recurring checkout: HMAC(key_secret, "{payment_id}|{subscription_id}")
- webhook:            HMAC(webhook_secret, raw_body) in X-Razorpay-Signature

REST endpoints used:
- POST /orders
- POST /subscriptions
- GET  /subscriptions/{id}
- POST /subscriptions/{id}/cancel
"""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

import httpx

from src.billing.errors import GatewayError
from src.config import GatewayConfig, RazorpayConfig
from src.gateways.base import (
    HttpGatewayAdapter,
    WebhookEvent,
    WebhookEventKind,
    hmac_sha256,
    signatures_match,
)
from src.models.billing import GatewayRef, PlanId, Recurring, RecurringStatus

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-razorpay-signature"

# Razorpay limits receipts to 40 characters
MAX_RECEIPT_LENGTH = 40


def _from_epoch(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class RazorpayGateway(HttpGatewayAdapter):
    """Razorpay REST adapter with HTTP basic auth (key_id:key_secret)."""

    name = "razorpay"
    supports_recurring = True

    def __init__(
        self,
        config: RazorpayConfig,
        gateway_config: GatewayConfig,
        transport: httpx.BaseTransport | None = None,
    ):
        self.config = config
        super().__init__(config.api_base, gateway_config, transport=transport)

    @property
    def public_key(self) -> str:
        return self.config.key_id

    def _auth(self) -> httpx.Auth:
        return httpx.BasicAuth(self.config.key_id, self.config.key_secret)

    def create_order(self, amount_minor_units: int, currency: str, meta: dict[str, Any]) -> str:
        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": str(meta.get("receipt", ""))[:MAX_RECEIPT_LENGTH],
            "notes": meta.get("notes", {}),
        }
        body = self._request("create_order", "POST", "/orders", payload)
        order_id = body.get("id")
        if not order_id:
            raise GatewayError("razorpay order response missing id", self.name)
        return order_id

    def verify_signature(
        self, ref: GatewayRef, payment_id: str, signature: str
    ) -> bool:
        if isinstance(ref, Recurring):
            message = f"{payment_id}|{ref.subscription_id}"
        else:
            message = f"{ref.order_id}|{payment_id}"
        expected = hmac_sha256(self.config.key_secret, message).hex()
        return signatures_match(expected, signature)

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.config.webhook_secret:
            logger.error("Razorpay webhook received but webhook secret is not configured")
            return False
        expected = hmac_sha256(self.config.webhook_secret, body).hex()
        return signatures_match(expected, headers.get(SIGNATURE_HEADER))

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookEvent:
        event_type = str(payload.get("event", ""))
        entities = payload.get("payload") or {}
        payment = (entities.get("payment") or {}).get("entity") or {}
        subscription = (entities.get("subscription") or {}).get("entity") or {}
        order = (entities.get("order") or {}).get("entity") or {}

        notes = subscription.get("notes") or payment.get("notes") or {}
        user_id = notes.get("user_id") if isinstance(notes, dict) else None

        if event_type.startswith("subscription."):
            kind = WebhookEventKind.SUBSCRIPTION_UPDATED
        elif event_type in ("payment.captured", "order.paid"):
            kind = WebhookEventKind.PAYMENT_CAPTURED
        elif event_type == "payment.failed":
            kind = WebhookEventKind.PAYMENT_FAILED
        else:
            kind = WebhookEventKind.IGNORED

        return WebhookEvent(
            kind=kind,
            event_type=event_type,
            order_id=payment.get("order_id") or order.get("id"),
            payment_id=payment.get("id"),
            subscription_id=subscription.get("id"),
            user_id=user_id,
        )

    def resolve_plan(self, gateway_plan_id: str | None) -> PlanId | None:
        if not gateway_plan_id:
            return None
        for plan, configured_id in self.config.plan_ids.items():
            if configured_id == gateway_plan_id:
                return PlanId(plan)
        return None

    def create_recurring(self, plan: PlanId, meta: dict[str, Any]) -> str:
        gateway_plan_id = self.config.plan_ids.get(plan.value)
        if not gateway_plan_id:
            raise GatewayError(
                f"No Razorpay plan id configured for plan '{plan.value}'", self.name
            )

        payload = {
            "plan_id": gateway_plan_id,
            "total_count": self.config.recurring_total_count,
            "customer_notify": 1,
            "notes": meta.get("notes", {}),
        }
        body = self._request("create_recurring", "POST", "/subscriptions", payload)
        subscription_id = body.get("id")
        if not subscription_id:
            raise GatewayError("razorpay subscription response missing id", self.name)
        return subscription_id

    def fetch_recurring_status(self, subscription_id: str) -> RecurringStatus:
        body = self._request("fetch_recurring", "GET", f"/subscriptions/{subscription_id}")
        return self._to_recurring_status(body)

    def cancel_recurring(self, subscription_id: str, at_period_end: bool) -> RecurringStatus:
        body = self._request(
            "cancel_recurring",
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            {"cancel_at_cycle_end": 1 if at_period_end else 0},
        )
        return self._to_recurring_status(body)

    def _to_recurring_status(self, body: dict[str, Any]) -> RecurringStatus:
        status = body.get("status")
        if not status:
            raise GatewayError("razorpay subscription response missing status", self.name)
        return RecurringStatus(
            status=status,
            period_start=_from_epoch(body.get("current_start") or body.get("start_at")),
            period_end=_from_epoch(body.get("current_end") or body.get("end_at")),
            next_due_date=_from_epoch(body.get("charge_at")),
            plan=body.get("plan_id"),
        )
