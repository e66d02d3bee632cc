"""
Cashfree adapter (one-time orders only).

- Orders: POST /pg/orders with x-client-id / x-client-secret / x-api-version
  headers; amounts are sent in major units.
- Checkout signature: base64 HMAC-SHA256(secret_key, order_id + payment_id).
- Webhook signature: base64 HMAC-SHA256(secret_key, timestamp + raw_body)
  from x-webhook-timestamp and x-webhook-signature.
"""

import base64
import logging
import uuid
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import httpx

from src.billing.errors import GatewayError
from src.config import CashfreeConfig, GatewayConfig
from src.gateways.base import (
    HttpGatewayAdapter,
    WebhookEvent,
    WebhookEventKind,
    hmac_sha256,
    signatures_match,
)
from src.models.billing import GatewayRef, Recurring

logger = logging.getLogger(__name__)


class CashfreeGateway(HttpGatewayAdapter):
    """Cashfree PG adapter."""

    name = "cashfree"
    supports_recurring = False

    def __init__(
        self,
        config: CashfreeConfig,
        gateway_config: GatewayConfig,
        transport: httpx.BaseTransport | None = None,
    ):
        self.config = config
        super().__init__(config.api_base, gateway_config, transport=transport)

    @property
    def public_key(self) -> str:
        return self.config.app_id

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-client-id": self.config.app_id,
            "x-client-secret": self.config.secret_key,
            "x-api-version": self.config.api_version,
        }

    def create_order(self, amount_minor_units: int, currency: str, meta: dict[str, Any]) -> str:
        customer = meta.get("customer") or {}
        customer_details = {
            "customer_id": str(customer.get("id") or f"cust_{uuid.uuid4().hex[:12]}"),
        }
        for source, target in (
            ("phone", "customer_phone"),
            ("email", "customer_email"),
            ("name", "customer_name"),
        ):
            if customer.get(source):
                customer_details[target] = customer[source]

        payload = {
            "order_amount": float(Decimal(amount_minor_units) / 100),
            "order_currency": currency,
            "customer_details": customer_details,
            "order_tags": {k: str(v) for k, v in (meta.get("notes") or {}).items()},
        }
        if meta.get("receipt"):
            payload["order_note"] = str(meta["receipt"])

        body = self._request("create_order", "POST", "/pg/orders", payload)
        order_id = body.get("order_id")
        if not order_id:
            raise GatewayError("cashfree order response missing order_id", self.name)
        return order_id

    def verify_signature(
        self, ref: GatewayRef, payment_id: str, signature: str
    ) -> bool:
        if isinstance(ref, Recurring):
            logger.warning(
                "Recurring signature presented to a one-time-only gateway",
                extra={"provider": self.name, "subscription_id": ref.subscription_id},
            )
            return False
        digest = hmac_sha256(self.config.secret_key, f"{ref.order_id}{payment_id}")
        return signatures_match(base64.b64encode(digest).decode("ascii"), signature)

    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        timestamp = headers.get("x-webhook-timestamp")
        if not timestamp or not self.config.secret_key:
            return False
        digest = hmac_sha256(self.config.secret_key, timestamp.encode("utf-8") + body)
        return signatures_match(
            base64.b64encode(digest).decode("ascii"), headers.get("x-webhook-signature")
        )

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookEvent:
        event_type = str(payload.get("type", ""))
        data = payload.get("data") or {}
        order = data.get("order") or {}
        payment = data.get("payment") or {}
        payment_id = payment.get("cf_payment_id")

        if event_type == "PAYMENT_SUCCESS_WEBHOOK":
            kind = WebhookEventKind.PAYMENT_CAPTURED
        elif event_type in ("PAYMENT_FAILED_WEBHOOK", "PAYMENT_USER_DROPPED_WEBHOOK"):
            kind = WebhookEventKind.PAYMENT_FAILED
        else:
            kind = WebhookEventKind.IGNORED

        return WebhookEvent(
            kind=kind,
            event_type=event_type,
            order_id=order.get("order_id"),
            payment_id=str(payment_id) if payment_id is not None else None,
            user_id=(order.get("order_tags") or {}).get("user_id"),
        )
