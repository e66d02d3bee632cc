"""
Billing storage using SQLite (bootstrap) with a PostgreSQL-ready schema.

Tables:
- subscriptions: one current row per user (primary key user_id)
- payment_orders: plan purchases keyed by gateway order id
- catalog_orders: storefront purchases
- customers, invoices: counted by the entitlement gate
- products, catalog_settings: storefront price lookup
- sessions: bearer sessions (SHA-256 token digests only)
- audit_log: every billing mutation

Consistency:
- Order finalization runs in one BEGIN IMMEDIATE transaction with a
  conditional created -> verified transition, so a payment is applied at
  most once even across processes sharing the file.
- Prepared statements everywhere.
"""

import hashlib
import json
import logging
import secrets
import sqlite3
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any

from src.models.billing import (
    CatalogOrder,
    CustomerContact,
    GatewayKind,
    OrderKind,
    OrderStatus,
    PendingPaymentOrder,
    PlanId,
    Subscription,
    SubscriptionStatus,
)
from src.models.session import Session, SessionRole

logger = logging.getLogger(__name__)


class FinalizeOutcome(str, Enum):
    """Result of an atomic order finalization."""

    APPLIED = "applied"  # created -> verified in this call
    REPLAYED = "replayed"  # already verified with the same payment id
    CONFLICT = "conflict"  # already verified with a different payment id
    NOT_FOUND = "not_found"  # no such order
    FAILED = "failed"  # order was marked failed and cannot be paid


def _to_iso(value: datetime | None) -> str | None:
    """Serialize as UTC ISO 8601 with fixed microsecond precision (sortable as text)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _to_decimal_text(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def _from_decimal_text(value: str | None) -> Decimal | None:
    return None if value is None else Decimal(value)


class BillingDatabase:
    """
    Billing, entitlement and session storage.

    Uses SQLite for bootstrapping; the schema maps one-to-one onto PostgreSQL.
    Methods are async so callers are ready for an async driver; the SQLite
    calls themselves are short and run inline.
    """

    def __init__(self, db_path: str = "./data/billing.db"):
        """
        Initialize billing database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Connection will be created lazily
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """
        Create tables and indexes.

        Idempotent - safe to call multiple times.
        """
        if self._initialized:
            return

        logger.info(f"Initializing billing database at {self.db_path}")

        conn = sqlite3.connect(str(self.db_path))
        try:
            conn.execute("PRAGMA journal_mode = WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    user_id TEXT PRIMARY KEY,
                    plan TEXT NOT NULL DEFAULT 'free',
                    status TEXT NOT NULL DEFAULT 'active',
                    current_period_start TEXT NOT NULL,
                    current_period_end TEXT NOT NULL,
                    cancel_at_period_end INTEGER NOT NULL DEFAULT 0,
                    billing_duration_months INTEGER,
                    amount_paid TEXT,
                    gateway_kind TEXT NOT NULL DEFAULT 'none',
                    gateway_provider TEXT,
                    gateway_subscription_id TEXT,
                    gateway_order_id TEXT,
                    gateway_payment_id TEXT,
                    next_due_date TEXT,
                    updated_at TEXT NOT NULL,

                    CHECK (plan IN ('free', 'starter', 'pro', 'business')),
                    CHECK (status IN ('active', 'canceled', 'past_due', 'free')),
                    CHECK (gateway_kind IN ('none', 'recurring', 'one_time')),
                    CHECK (cancel_at_period_end IN (0, 1)),
                    CHECK (billing_duration_months IS NULL OR billing_duration_months >= 1)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payment_orders (
                    order_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL DEFAULT 'one_time',
                    provider TEXT NOT NULL,
                    intended_plan TEXT NOT NULL,
                    intended_duration_months INTEGER NOT NULL,
                    amount_minor_units INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'created',
                    payment_id TEXT,
                    created_at TEXT NOT NULL,
                    verified_at TEXT,

                    CHECK (kind IN ('one_time', 'recurring')),
                    CHECK (status IN ('created', 'verified', 'failed')),
                    CHECK (intended_duration_months >= 1),
                    CHECK (amount_minor_units >= 0)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS catalog_orders (
                    catalog_order_id TEXT PRIMARY KEY,
                    slug TEXT NOT NULL,
                    seller_user_id TEXT NOT NULL,
                    product_id TEXT NOT NULL,
                    product_name TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    unit_price TEXT NOT NULL,
                    amount_minor_units INTEGER NOT NULL,
                    currency TEXT NOT NULL,
                    customer_contact TEXT NOT NULL DEFAULT '{}',
                    provider TEXT NOT NULL,
                    order_id TEXT UNIQUE,
                    payment_id TEXT,
                    status TEXT NOT NULL DEFAULT 'created',
                    created_at TEXT NOT NULL,
                    verified_at TEXT,

                    CHECK (status IN ('created', 'verified', 'failed')),
                    CHECK (quantity >= 1)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS customers (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS invoices (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS products (
                    product_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    price TEXT NOT NULL,
                    catalog_price TEXT,
                    show_in_catalog INTEGER NOT NULL DEFAULT 0,

                    CHECK (show_in_catalog IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS catalog_settings (
                    slug TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    is_public INTEGER NOT NULL DEFAULT 0,

                    CHECK (is_public IN (0, 1))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    token_hash TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'user',
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,

                    CHECK (role IN ('user', 'admin'))
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    user_id TEXT,
                    action TEXT NOT NULL,
                    resource_type TEXT NOT NULL,
                    resource_id TEXT,
                    details TEXT
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_gateway_sub "
                "ON subscriptions(gateway_subscription_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_kind ON subscriptions(gateway_kind)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_payment_orders_user ON payment_orders(user_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_catalog_orders_slug ON catalog_orders(slug)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_customers_user ON customers(user_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_invoices_user_created "
                "ON invoices(user_id, created_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_products_user ON products(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_user ON audit_log(user_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)")

            conn.commit()
            logger.info("Billing database initialized successfully")
            self._initialized = True

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection (creates if needed). Autocommit; transactions are explicit."""
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path), check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA busy_timeout = 5000")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT, rolling back on any exception."""
        conn = self._get_connection()
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    @staticmethod
    def _row_to_subscription(row: sqlite3.Row) -> Subscription:
        return Subscription(
            user_id=row["user_id"],
            plan=PlanId(row["plan"]),
            status=SubscriptionStatus(row["status"]),
            current_period_start=_from_iso(row["current_period_start"]),
            current_period_end=_from_iso(row["current_period_end"]),
            cancel_at_period_end=bool(row["cancel_at_period_end"]),
            billing_duration_months=row["billing_duration_months"],
            amount_paid=_from_decimal_text(row["amount_paid"]),
            gateway_kind=GatewayKind(row["gateway_kind"]),
            gateway_provider=row["gateway_provider"],
            gateway_subscription_id=row["gateway_subscription_id"],
            gateway_order_id=row["gateway_order_id"],
            gateway_payment_id=row["gateway_payment_id"],
            next_due_date=_from_iso(row["next_due_date"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _write_subscription(self, conn: sqlite3.Connection, subscription: Subscription) -> None:
        conn.execute(
            """
            INSERT INTO subscriptions (
                user_id, plan, status, current_period_start, current_period_end,
                cancel_at_period_end, billing_duration_months, amount_paid,
                gateway_kind, gateway_provider, gateway_subscription_id,
                gateway_order_id, gateway_payment_id, next_due_date, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                plan = excluded.plan,
                status = excluded.status,
                current_period_start = excluded.current_period_start,
                current_period_end = excluded.current_period_end,
                cancel_at_period_end = excluded.cancel_at_period_end,
                billing_duration_months = excluded.billing_duration_months,
                amount_paid = excluded.amount_paid,
                gateway_kind = excluded.gateway_kind,
                gateway_provider = excluded.gateway_provider,
                gateway_subscription_id = excluded.gateway_subscription_id,
                gateway_order_id = excluded.gateway_order_id,
                gateway_payment_id = excluded.gateway_payment_id,
                next_due_date = excluded.next_due_date,
                updated_at = excluded.updated_at
            """,
            (
                subscription.user_id,
                subscription.plan.value,
                subscription.status.value,
                _to_iso(subscription.current_period_start),
                _to_iso(subscription.current_period_end),
                int(subscription.cancel_at_period_end),
                subscription.billing_duration_months,
                _to_decimal_text(subscription.amount_paid),
                subscription.gateway_kind.value,
                subscription.gateway_provider,
                subscription.gateway_subscription_id,
                subscription.gateway_order_id,
                subscription.gateway_payment_id,
                _to_iso(subscription.next_due_date),
                _to_iso(datetime.now(UTC)),
            ),
        )

    async def get_subscription(self, user_id: str) -> Subscription | None:
        """
        Get the persisted subscription row for a user.

        Returns:
            Subscription or None if the user never had one
        """
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM subscriptions WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_subscription(row) if row else None

    async def get_subscription_by_gateway_id(self, subscription_id: str) -> Subscription | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE gateway_subscription_id = ?", (subscription_id,)
        ).fetchone()
        return self._row_to_subscription(row) if row else None

    async def upsert_subscription(self, subscription: Subscription, action: str) -> None:
        """
        Insert or replace the user's subscription row.

        Args:
            subscription: Full row to persist
            action: Audit action name (e.g. SYNC, CANCEL)
        """
        with self._transaction() as conn:
            self._write_subscription(conn, subscription)
            self._log_audit(
                conn,
                action=action,
                resource_type="subscription",
                user_id=subscription.user_id,
                resource_id=subscription.gateway_subscription_id or subscription.gateway_order_id,
                details={"plan": subscription.plan.value, "status": subscription.status.value},
            )

    async def list_recurring_subscriptions(self) -> list[Subscription]:
        """All rows backed by a gateway-managed recurring subscription."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM subscriptions WHERE gateway_kind = ? "
            "AND gateway_subscription_id IS NOT NULL ORDER BY user_id",
            (GatewayKind.RECURRING.value,),
        ).fetchall()
        return [self._row_to_subscription(row) for row in rows]

    # ========================================================================
    # PAYMENT ORDERS
    # ========================================================================

    @staticmethod
    def _row_to_payment_order(row: sqlite3.Row) -> PendingPaymentOrder:
        return PendingPaymentOrder(
            order_id=row["order_id"],
            user_id=row["user_id"],
            kind=OrderKind(row["kind"]),
            provider=row["provider"],
            intended_plan=PlanId(row["intended_plan"]),
            intended_duration_months=row["intended_duration_months"],
            amount_minor_units=row["amount_minor_units"],
            currency=row["currency"],
            status=OrderStatus(row["status"]),
            payment_id=row["payment_id"],
            created_at=_from_iso(row["created_at"]),
            verified_at=_from_iso(row["verified_at"]),
        )

    async def create_payment_order(self, order: PendingPaymentOrder) -> None:
        """
        Persist a pending plan purchase.

        Raises:
            sqlite3.IntegrityError: order_id already exists
        """
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO payment_orders (
                    order_id, user_id, kind, provider, intended_plan,
                    intended_duration_months, amount_minor_units, currency,
                    status, payment_id, created_at, verified_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order.order_id,
                    order.user_id,
                    order.kind.value,
                    order.provider,
                    order.intended_plan.value,
                    order.intended_duration_months,
                    order.amount_minor_units,
                    order.currency,
                    order.status.value,
                    order.payment_id,
                    _to_iso(order.created_at),
                    _to_iso(order.verified_at),
                ),
            )
            self._log_audit(
                conn,
                action="CREATE",
                resource_type="payment_order",
                user_id=order.user_id,
                resource_id=order.order_id,
                details={
                    "plan": order.intended_plan.value,
                    "duration_months": order.intended_duration_months,
                    "amount_minor_units": order.amount_minor_units,
                },
            )

    async def get_payment_order(self, order_id: str) -> PendingPaymentOrder | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)).fetchone()
        return self._row_to_payment_order(row) if row else None

    async def finalize_payment_order(
        self,
        order_id: str,
        payment_id: str,
        build_subscription: Callable[[PendingPaymentOrder, Subscription | None], Subscription],
    ) -> tuple[FinalizeOutcome, PendingPaymentOrder | None]:
        """
        Atomically mark an order verified and apply it to the user's subscription.

        The transition is conditional on status='created'; a concurrent or
        repeated call observes the verified row and reports REPLAYED or
        CONFLICT without touching the subscription.

        Args:
            order_id: Gateway order id (or subscription id for recurring orders)
            payment_id: Gateway payment id
            build_subscription: Computes the new subscription row from the
                order and the current row (None if absent). Runs inside the
                transaction.

        Returns:
            (outcome, order as stored before this call)
        """
        now = datetime.now(UTC)
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM payment_orders WHERE order_id = ?", (order_id,)
            ).fetchone()
            if row is None:
                return FinalizeOutcome.NOT_FOUND, None

            order = self._row_to_payment_order(row)
            outcome = self._settled_outcome(order.status, order.payment_id, payment_id)
            if outcome is not None:
                return outcome, order

            cursor = conn.execute(
                """
                UPDATE payment_orders
                SET status = 'verified', payment_id = ?, verified_at = ?
                WHERE order_id = ? AND status = 'created'
                """,
                (payment_id, _to_iso(now), order_id),
            )
            if cursor.rowcount != 1:
                return FinalizeOutcome.CONFLICT, order

            current_row = conn.execute(
                "SELECT * FROM subscriptions WHERE user_id = ?", (order.user_id,)
            ).fetchone()
            current = self._row_to_subscription(current_row) if current_row else None

            subscription = build_subscription(order, current)
            self._write_subscription(conn, subscription)
            self._log_audit(
                conn,
                action="VERIFY",
                resource_type="payment_order",
                user_id=order.user_id,
                resource_id=order_id,
                details={
                    "payment_id": payment_id,
                    "plan": subscription.plan.value,
                    "period_end": _to_iso(subscription.current_period_end),
                },
            )

        return FinalizeOutcome.APPLIED, order

    @staticmethod
    def _settled_outcome(
        status: OrderStatus, stored_payment_id: str | None, payment_id: str
    ) -> FinalizeOutcome | None:
        """Outcome for an order that is no longer 'created', else None."""
        if status == OrderStatus.VERIFIED:
            if stored_payment_id == payment_id:
                return FinalizeOutcome.REPLAYED
            return FinalizeOutcome.CONFLICT
        if status == OrderStatus.FAILED:
            return FinalizeOutcome.FAILED
        return None

    # ========================================================================
    # CATALOG ORDERS
    # ========================================================================

    @staticmethod
    def _row_to_catalog_order(row: sqlite3.Row) -> CatalogOrder:
        return CatalogOrder(
            catalog_order_id=row["catalog_order_id"],
            slug=row["slug"],
            seller_user_id=row["seller_user_id"],
            product_id=row["product_id"],
            product_name=row["product_name"],
            quantity=row["quantity"],
            unit_price=Decimal(row["unit_price"]),
            amount_minor_units=row["amount_minor_units"],
            currency=row["currency"],
            customer_contact=CustomerContact.model_validate_json(row["customer_contact"]),
            provider=row["provider"],
            order_id=row["order_id"],
            payment_id=row["payment_id"],
            status=OrderStatus(row["status"]),
            created_at=_from_iso(row["created_at"]),
            verified_at=_from_iso(row["verified_at"]),
        )

    async def create_catalog_order(self, order: CatalogOrder) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO catalog_orders (
                catalog_order_id, slug, seller_user_id, product_id, product_name,
                quantity, unit_price, amount_minor_units, currency, customer_contact,
                provider, order_id, payment_id, status, created_at, verified_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.catalog_order_id,
                order.slug,
                order.seller_user_id,
                order.product_id,
                order.product_name,
                order.quantity,
                str(order.unit_price),
                order.amount_minor_units,
                order.currency,
                order.customer_contact.model_dump_json(),
                order.provider,
                order.order_id,
                order.payment_id,
                order.status.value,
                _to_iso(order.created_at),
                _to_iso(order.verified_at),
            ),
        )

    async def attach_catalog_gateway_order(self, catalog_order_id: str, order_id: str) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE catalog_orders SET order_id = ? WHERE catalog_order_id = ?",
            (order_id, catalog_order_id),
        )

    async def mark_catalog_order_failed(self, catalog_order_id: str) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE catalog_orders SET status = 'failed' "
            "WHERE catalog_order_id = ? AND status = 'created'",
            (catalog_order_id,),
        )

    async def get_catalog_order(self, catalog_order_id: str) -> CatalogOrder | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM catalog_orders WHERE catalog_order_id = ?", (catalog_order_id,)
        ).fetchone()
        return self._row_to_catalog_order(row) if row else None

    async def get_catalog_order_by_gateway_id(self, order_id: str) -> CatalogOrder | None:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM catalog_orders WHERE order_id = ?", (order_id,)
        ).fetchone()
        return self._row_to_catalog_order(row) if row else None

    async def finalize_catalog_order(
        self, catalog_order_id: str, payment_id: str
    ) -> FinalizeOutcome:
        """Atomically mark a catalog order verified (created -> verified only)."""
        now = datetime.now(UTC)
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status, payment_id, seller_user_id FROM catalog_orders "
                "WHERE catalog_order_id = ?",
                (catalog_order_id,),
            ).fetchone()
            if row is None:
                return FinalizeOutcome.NOT_FOUND

            outcome = self._settled_outcome(
                OrderStatus(row["status"]), row["payment_id"], payment_id
            )
            if outcome is not None:
                return outcome

            cursor = conn.execute(
                """
                UPDATE catalog_orders
                SET status = 'verified', payment_id = ?, verified_at = ?
                WHERE catalog_order_id = ? AND status = 'created'
                """,
                (payment_id, _to_iso(now), catalog_order_id),
            )
            if cursor.rowcount != 1:
                return FinalizeOutcome.CONFLICT

            self._log_audit(
                conn,
                action="VERIFY",
                resource_type="catalog_order",
                user_id=row["seller_user_id"],
                resource_id=catalog_order_id,
                details={"payment_id": payment_id},
            )

        return FinalizeOutcome.APPLIED

    # ========================================================================
    # STOREFRONT LOOKUPS
    # ========================================================================

    async def get_catalog_product(self, slug: str, product_id: str) -> dict[str, Any] | None:
        """
        Resolve a product listed in a storefront.

        Returns:
            dict with seller_user_id, is_public, product_id, name, price,
            catalog_price (Decimal or None), show_in_catalog; None when the
            slug or product does not exist or belongs to another seller
        """
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT c.user_id AS seller_user_id, c.is_public, p.product_id, p.name,
                   p.price, p.catalog_price, p.show_in_catalog
            FROM catalog_settings c
            JOIN products p ON p.user_id = c.user_id
            WHERE c.slug = ? AND p.product_id = ?
            """,
            (slug, product_id),
        ).fetchone()
        if not row:
            return None

        return {
            "seller_user_id": row["seller_user_id"],
            "is_public": bool(row["is_public"]),
            "product_id": row["product_id"],
            "name": row["name"],
            "price": Decimal(row["price"]),
            "catalog_price": _from_decimal_text(row["catalog_price"]),
            "show_in_catalog": bool(row["show_in_catalog"]),
        }

    async def upsert_catalog_settings(self, user_id: str, slug: str, is_public: bool) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO catalog_settings (slug, user_id, is_public) VALUES (?, ?, ?)
            ON CONFLICT(slug) DO UPDATE SET is_public = excluded.is_public
            """,
            (slug, user_id, int(is_public)),
        )

    async def add_product(
        self,
        user_id: str,
        name: str,
        price: Decimal,
        catalog_price: Decimal | None = None,
        show_in_catalog: bool = True,
        product_id: str | None = None,
    ) -> str:
        """Insert a product and return its id."""
        product_id = product_id or f"prod_{uuid.uuid4().hex[:12]}"
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO products (product_id, user_id, name, price, catalog_price, show_in_catalog)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                product_id,
                user_id,
                name,
                str(price),
                _to_decimal_text(catalog_price),
                int(show_in_catalog),
            ),
        )
        return product_id

    # ========================================================================
    # USAGE COUNTS
    # ========================================================================

    async def count_customers(self, user_id: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) FROM customers WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row[0]

    async def count_invoices(self, user_id: str, start: datetime, end: datetime) -> int:
        """Count invoices created in [start, end)."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) FROM invoices WHERE user_id = ? AND created_at >= ? AND created_at < ?",
            (user_id, _to_iso(start), _to_iso(end)),
        ).fetchone()
        return row[0]

    async def add_customer(
        self, user_id: str, name: str, created_at: datetime | None = None
    ) -> str:
        customer_id = f"cust_{uuid.uuid4().hex[:12]}"
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO customers (id, user_id, name, created_at) VALUES (?, ?, ?, ?)",
            (customer_id, user_id, name, _to_iso(created_at or datetime.now(UTC))),
        )
        return customer_id

    async def add_invoice(self, user_id: str, created_at: datetime | None = None) -> str:
        invoice_id = f"inv_{uuid.uuid4().hex[:12]}"
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO invoices (id, user_id, created_at) VALUES (?, ?, ?)",
            (invoice_id, user_id, _to_iso(created_at or datetime.now(UTC))),
        )
        return invoice_id

    # ========================================================================
    # SESSIONS
    # ========================================================================

    @staticmethod
    def hash_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    async def create_session(
        self,
        user_id: str,
        role: SessionRole = SessionRole.USER,
        ttl: timedelta = timedelta(days=30),
    ) -> str:
        """
        Issue a session token.

        Returns:
            str: Plaintext token (shown once; only its SHA-256 digest is stored)
        """
        token = f"ses_{secrets.token_urlsafe(32)}"
        now = datetime.now(UTC)
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO sessions (token_hash, user_id, role, created_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (self.hash_token(token), user_id, role.value, _to_iso(now), _to_iso(now + ttl)),
            )
            self._log_audit(
                conn, action="CREATE", resource_type="session", user_id=user_id
            )
        return token

    async def get_session(self, token: str) -> Session | None:
        """Resolve an unexpired session, or None."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT user_id, role, expires_at FROM sessions WHERE token_hash = ?",
            (self.hash_token(token),),
        ).fetchone()
        if not row:
            return None

        expires_at = _from_iso(row["expires_at"])
        if expires_at <= datetime.now(UTC):
            return None

        return Session(user_id=row["user_id"], role=SessionRole(row["role"]), expires_at=expires_at)

    # ========================================================================
    # AUDIT
    # ========================================================================

    def _log_audit(
        self,
        conn: sqlite3.Connection,
        action: str,
        resource_type: str,
        user_id: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Record a mutation in the audit log (inside the caller's transaction).

        Args:
            conn: Connection with an open transaction
            action: Action performed (CREATE, VERIFY, SYNC, CANCEL)
            resource_type: subscription, payment_order, catalog_order, session
            user_id: User the mutation belongs to
            resource_id: ID of affected resource
            details: JSON-serializable details
        """
        conn.execute(
            """
            INSERT INTO audit_log (timestamp, user_id, action, resource_type, resource_id, details)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                _to_iso(datetime.now(UTC)),
                user_id,
                action,
                resource_type,
                resource_id,
                json.dumps(details) if details else None,
            ),
        )

    async def list_audit_events(self, user_id: str) -> list[dict[str, Any]]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT timestamp, action, resource_type, resource_id, details "
            "FROM audit_log WHERE user_id = ? ORDER BY id",
            (user_id,),
        ).fetchall()
        return [dict(row) for row in rows]

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
