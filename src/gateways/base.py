"""
Payment gateway adapter interface.

Every provider implements the same contract so callers never branch on
provider identity:
- create_order: open a one-time order for an amount in minor units
- verify_signature: recompute the callback HMAC for a GatewayRef
- fetch_recurring_status / create_recurring / cancel_recurring: recurring
  subscriptions (only where supports_recurring is True)
- verify_webhook: check a body-signed server-to-server event

HTTP calls share one path (_request): bounded timeout, per-provider circuit
breaker, exponential-backoff retry on transient failures only, and
conversion of timeouts, network errors and 5xx into GatewayUnavailableError.
"""

import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel

from src.billing.errors import GatewayError, GatewayUnavailableError
from src.config import GatewayConfig
from src.models.billing import GatewayRef, PlanId, RecurringStatus
from src.observability.metrics import track_gateway_call
from src.resilience.circuit_breakers import call_with_breaker, get_gateway_breaker, with_retry

logger = logging.getLogger(__name__)


class WebhookEventKind(str, Enum):
    PAYMENT_CAPTURED = "payment_captured"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    IGNORED = "ignored"


class WebhookEvent(BaseModel):
    """Provider-neutral view of a webhook payload."""

    kind: WebhookEventKind
    event_type: str
    order_id: str | None = None
    payment_id: str | None = None
    subscription_id: str | None = None
    user_id: str | None = None


def hmac_sha256(secret: str, message: str | bytes) -> bytes:
    """Raw HMAC-SHA256 digest of message under secret."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def signatures_match(expected: str, provided: str | None) -> bool:
    """Constant-time comparison; a missing signature never matches."""
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


class GatewayAdapter(ABC):
    """Provider-neutral gateway contract."""

    name: str = ""
    supports_recurring: bool = False

    @property
    @abstractmethod
    def public_key(self) -> str:
        """Key handed to the client-side checkout widget."""

    @abstractmethod
    def create_order(self, amount_minor_units: int, currency: str, meta: dict[str, Any]) -> str:
        """
        Open a one-time order.

        Args:
            amount_minor_units: Amount in minor units (paise for INR)
            currency: ISO 4217 code
            meta: receipt, notes and customer details

        Returns:
            str: Gateway order id

        Raises:
            GatewayUnavailableError: Gateway unreachable
            GatewayError: Gateway rejected the order
        """

    @abstractmethod
    def verify_signature(
        self, ref: GatewayRef, payment_id: str, signature: str
    ) -> bool:
        """Recompute the checkout callback signature for ref and compare in constant time."""

    @abstractmethod
    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Check the signature of a raw webhook body against the provider's headers."""

    @abstractmethod
    def parse_webhook(self, payload: dict[str, Any]) -> WebhookEvent:
        """Normalize a verified webhook payload."""

    def resolve_plan(self, gateway_plan_id: str | None) -> PlanId | None:
        """Map a gateway plan id back to a local plan (None when unknown)."""
        return None

    def create_recurring(self, plan: PlanId, meta: dict[str, Any]) -> str:
        raise GatewayError(f"{self.name} does not support recurring subscriptions", self.name)

    def fetch_recurring_status(self, subscription_id: str) -> RecurringStatus:
        raise GatewayError(f"{self.name} does not support recurring subscriptions", self.name)

    def cancel_recurring(self, subscription_id: str, at_period_end: bool) -> RecurringStatus:
        raise GatewayError(f"{self.name} does not support recurring subscriptions", self.name)


class HttpGatewayAdapter(GatewayAdapter):
    """
    Base for REST gateways.

    Subclasses provide base_url, auth headers and the provider payloads; this
    class owns timeouts, the breaker, retries and error mapping.
    """

    def __init__(
        self,
        base_url: str,
        gateway_config: GatewayConfig,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Args:
            base_url: Provider API root
            gateway_config: Timeout, retry and breaker settings
            transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        self.gateway_config = gateway_config
        self._client = httpx.Client(
            base_url=base_url,
            timeout=gateway_config.timeout_seconds,
            transport=transport,
        )
        self._breaker = get_gateway_breaker(
            self.name,
            fail_max=gateway_config.breaker_fail_max,
            reset_timeout_seconds=gateway_config.breaker_reset_timeout_seconds,
        )

    def _auth(self) -> httpx.Auth | None:
        return None

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def _send_once(
        self, method: str, path: str, payload: dict[str, Any] | None
    ) -> dict[str, Any]:
        """Single HTTP attempt with error mapping."""
        try:
            response = self._client.request(
                method,
                path,
                json=payload,
                headers=self._headers(),
                auth=self._auth(),
            )
        except httpx.TimeoutException as e:
            raise GatewayUnavailableError(f"{self.name} request timed out", self.name) from e
        except httpx.TransportError as e:
            raise GatewayUnavailableError(f"{self.name} unreachable: {e}", self.name) from e

        if response.status_code >= 500:
            raise GatewayUnavailableError(
                f"{self.name} returned HTTP {response.status_code}", self.name
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"{self.name} rejected the request: {self._error_description(response)}",
                self.name,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"{self.name} returned a non-JSON response", self.name) from e

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("description"):
            return str(error["description"])
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {response.status_code}"

    def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Perform a gateway call with breaker, retry and metrics.

        Raises:
            GatewayUnavailableError: Transient failure after retries, or circuit open
            GatewayError: Gateway rejected the request
        """
        config = self.gateway_config

        @with_retry(
            max_attempts=config.retry_attempts,
            min_wait=config.retry_min_wait_seconds,
            max_wait=config.retry_max_wait_seconds,
        )
        def attempt() -> dict[str, Any]:
            return call_with_breaker(
                self._breaker, lambda: self._send_once(method, path, payload)
            )

        start_time = time.perf_counter()
        try:
            result = attempt()
        except (GatewayError, GatewayUnavailableError) as e:
            track_gateway_call(self.name, operation, False, time.perf_counter() - start_time)
            logger.warning(
                f"Gateway call failed: {self.name} {operation}",
                extra={
                    "provider": self.name,
                    "operation": operation,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            raise

        track_gateway_call(self.name, operation, True, time.perf_counter() - start_time)
        return result

    def close(self) -> None:
        self._client.close()
