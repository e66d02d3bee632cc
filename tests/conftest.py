"""
Pytest configuration and fixtures.

Provides shared fixtures for:
- Test settings (temporary SQLite path, zero retry backoff)
- A fake Razorpay REST API served through httpx.MockTransport
- Wired billing services backed by the real gateway adapters
- HTTP client against the FastAPI app, with session tokens
"""

import base64
import hashlib
import hmac
import json
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from src.auth.dependencies import SESSION_CACHE
from src.config import (
    BillingConfig,
    CashfreeConfig,
    DatabaseConfig,
    GatewayConfig,
    RazorpayConfig,
    Settings,
)
from src.gateways.cashfree import CashfreeGateway
from src.gateways.razorpay import RazorpayGateway
from src.gateways.registry import GatewayRegistry
from src.main import app
from src.models.session import SessionRole
from src.rate_limits import limiter
from src.resilience import reset_all_breakers
from src.services import BillingServices, build_services, set_services
from src.storage.database import BillingDatabase

RAZORPAY_BASE = "https://api.razorpay.test/v1"
RAZORPAY_KEY_ID = "rzp_test_key"
RAZORPAY_KEY_SECRET = "rzp_test_secret"
RAZORPAY_WEBHOOK_SECRET = "rzp_webhook_secret"

CASHFREE_BASE = "https://sandbox.cashfree.test"
CASHFREE_APP_ID = "cf_test_app"
CASHFREE_SECRET = "cf_test_secret"

GATEWAY_PLAN_IDS = {"starter": "plan_starter", "pro": "plan_pro", "business": "plan_business"}


def razorpay_order_signature(order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(RAZORPAY_KEY_SECRET.encode(), message, hashlib.sha256).hexdigest()


def razorpay_recurring_signature(payment_id: str, subscription_id: str) -> str:
    message = f"{payment_id}|{subscription_id}".encode()
    return hmac.new(RAZORPAY_KEY_SECRET.encode(), message, hashlib.sha256).hexdigest()


def razorpay_webhook_signature(body: bytes) -> str:
    return hmac.new(RAZORPAY_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


def cashfree_order_signature(order_id: str, payment_id: str) -> str:
    digest = hmac.new(
        CASHFREE_SECRET.encode(), f"{order_id}{payment_id}".encode(), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode()


def cashfree_webhook_signature(timestamp: str, body: bytes) -> str:
    digest = hmac.new(CASHFREE_SECRET.encode(), timestamp.encode() + body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def tamper(signature: str) -> str:
    """Flip the last character of a signature."""
    last = signature[-1]
    return signature[:-1] + ("0" if last != "0" else "1")


def epoch(dt: datetime) -> int:
    return int(dt.timestamp())


class FakeRazorpay:
    """
    In-memory Razorpay REST API.

    Set fail_status to make every call return that HTTP status.
    """

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None
        self._seq = 0

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:06d}"

    def add_subscription(self, subscription_id: str, **fields) -> dict:
        record = {"id": subscription_id, "status": "created", "plan_id": "plan_pro"}
        record.update(fields)
        self.subscriptions[subscription_id] = record
        return record

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(
                self.fail_status, json={"error": {"description": "Simulated failure"}}
            )

        path = request.url.path.removeprefix("/v1")
        payload = json.loads(request.content) if request.content else {}

        if request.method == "POST" and path == "/orders":
            order_id = self._next_id("order")
            self.orders[order_id] = {"id": order_id, "status": "created", **payload}
            return httpx.Response(200, json=self.orders[order_id])

        if request.method == "POST" and path == "/subscriptions":
            subscription_id = self._next_id("sub")
            record = self.add_subscription(
                subscription_id,
                plan_id=payload["plan_id"],
                total_count=payload["total_count"],
                notes=payload.get("notes", {}),
            )
            return httpx.Response(200, json=record)

        if path.startswith("/subscriptions/"):
            parts = path.split("/")
            record = self.subscriptions.get(parts[2])
            if record is None:
                return httpx.Response(
                    400, json={"error": {"description": "The id provided does not exist"}}
                )
            if request.method == "POST" and len(parts) == 4 and parts[3] == "cancel":
                if not payload.get("cancel_at_cycle_end"):
                    record["status"] = "cancelled"
            return httpx.Response(200, json=record)

        return httpx.Response(404, json={"error": {"description": "Not found"}})


class FakeCashfree:
    """In-memory Cashfree PG API (orders only)."""

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self._seq = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == "/pg/orders":
            self._seq += 1
            order_id = f"cf_order_{self._seq:06d}"
            self.orders[order_id] = {"order_id": order_id, **json.loads(request.content)}
            return httpx.Response(200, json=self.orders[order_id])
        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture(autouse=True)
def reset_global_state():
    """Close breakers and forget cached sessions between tests."""
    reset_all_breakers()
    SESSION_CACHE.clear()
    yield
    reset_all_breakers()
    SESSION_CACHE.clear()
    set_services(None)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with test credentials and no retry backoff."""
    return Settings(
        database=DatabaseConfig(path=str(tmp_path / "billing.db")),
        razorpay=RazorpayConfig(
            key_id=RAZORPAY_KEY_ID,
            key_secret=RAZORPAY_KEY_SECRET,
            webhook_secret=RAZORPAY_WEBHOOK_SECRET,
            api_base=RAZORPAY_BASE,
            plan_id_starter=GATEWAY_PLAN_IDS["starter"],
            plan_id_pro=GATEWAY_PLAN_IDS["pro"],
            plan_id_business=GATEWAY_PLAN_IDS["business"],
        ),
        cashfree=CashfreeConfig(
            app_id=CASHFREE_APP_ID,
            secret_key=CASHFREE_SECRET,
            api_base=CASHFREE_BASE,
        ),
        gateway=GatewayConfig(
            subscription_provider="razorpay",
            catalog_provider="razorpay",
            retry_attempts=3,
            retry_min_wait_seconds=0,
            retry_max_wait_seconds=0,
            breaker_fail_max=5,
        ),
        billing=BillingConfig(),
    )


@pytest_asyncio.fixture
async def db(test_settings):
    """Initialized billing database in a temporary directory."""
    database = BillingDatabase(test_settings.database.path)
    await database.initialize()
    yield database
    database.close()


@pytest.fixture
def fake_razorpay() -> FakeRazorpay:
    return FakeRazorpay()


@pytest.fixture
def fake_cashfree() -> FakeCashfree:
    return FakeCashfree()


@pytest.fixture
def razorpay_gateway(test_settings, fake_razorpay):
    gateway = RazorpayGateway(
        test_settings.razorpay,
        test_settings.gateway,
        transport=httpx.MockTransport(fake_razorpay.handler),
    )
    yield gateway
    gateway.close()


@pytest.fixture
def cashfree_gateway(test_settings, fake_cashfree):
    gateway = CashfreeGateway(
        test_settings.cashfree,
        test_settings.gateway,
        transport=httpx.MockTransport(fake_cashfree.handler),
    )
    yield gateway
    gateway.close()


@pytest.fixture
def gateways(test_settings, razorpay_gateway, cashfree_gateway) -> GatewayRegistry:
    return GatewayRegistry(
        [razorpay_gateway, cashfree_gateway],
        subscription_provider=test_settings.gateway.subscription_provider,
        catalog_provider=test_settings.gateway.catalog_provider,
    )


@pytest.fixture
def services(test_settings, db, gateways) -> BillingServices:
    return build_services(test_settings, db, gateways)


@pytest_asyncio.fixture
async def storefront(db) -> dict:
    """Public storefront 'acme' with a listed, a discounted and a hidden product."""
    await db.upsert_catalog_settings("seller-1", "acme", is_public=True)
    listed = await db.add_product("seller-1", "Notebook", Decimal("120.50"))
    discounted = await db.add_product(
        "seller-1", "Pen", Decimal("40"), catalog_price=Decimal("35")
    )
    hidden = await db.add_product("seller-1", "Internal", Decimal("10"), show_in_catalog=False)
    return {"slug": "acme", "listed": listed, "discounted": discounted, "hidden": hidden}


@pytest_asyncio.fixture
async def client(services):
    """HTTP client bound to the app with the test services (lifespan not run)."""
    limiter.reset()
    set_services(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


@pytest_asyncio.fixture
async def user_token(db) -> str:
    return await db.create_session("user-1")


@pytest_asyncio.fixture
async def admin_token(db) -> str:
    return await db.create_session("admin-1", role=SessionRole.ADMIN)


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=UTC)
