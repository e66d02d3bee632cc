#!/usr/bin/env python3
"""
Database initialization script for the billing service.

Creates the SQLite schema (subscriptions, payment orders, catalog orders,
usage tables, sessions, audit log).

Usage:
    python scripts/init_billing_db.py [--db-path PATH] [--demo-storefront SLUG]

This script is idempotent - safe to run multiple times.
"""

import argparse
import asyncio
import logging
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.storage.database import BillingDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

EXPECTED_TABLES = {
    "subscriptions",
    "payment_orders",
    "catalog_orders",
    "customers",
    "invoices",
    "products",
    "catalog_settings",
    "sessions",
    "audit_log",
}


async def init_database(db_path: str) -> bool:
    """
    Initialize the billing database schema.

    Returns:
        bool: True if every expected table exists afterwards
    """
    db = BillingDatabase(db_path=db_path)
    try:
        await db.initialize()

        conn = db._get_connection()
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        missing = EXPECTED_TABLES - tables
        if missing:
            logger.error(f"Missing tables: {sorted(missing)}")
            return False

        for table in sorted(EXPECTED_TABLES):
            count = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            logger.info(f"  {table}: {count} rows")

        logger.info("Database initialization complete")
        return True

    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        return False

    finally:
        db.close()


async def create_demo_storefront(db_path: str, slug: str) -> None:
    """Create a public storefront with one product for checkout testing."""
    db = BillingDatabase(db_path=db_path)
    try:
        await db.initialize()
        await db.upsert_catalog_settings("demo-seller", slug, is_public=True)
        product_id = await db.add_product("demo-seller", "Demo Product", price=Decimal("499"))
        logger.info(f"Demo storefront '{slug}' ready (product id: {product_id})")
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Initialize billing database schema")
    parser.add_argument(
        "--db-path",
        default="./data/billing.db",
        help="Path to SQLite database file (default: ./data/billing.db)",
    )
    parser.add_argument(
        "--demo-storefront",
        metavar="SLUG",
        help="Also create a public storefront with a demo product",
    )
    args = parser.parse_args()

    if not asyncio.run(init_database(args.db_path)):
        logger.error("Database initialization failed")
        sys.exit(1)

    if args.demo_storefront:
        asyncio.run(create_demo_storefront(args.db_path, args.demo_storefront))

    logger.info(f"Database path: {Path(args.db_path).absolute()}")


if __name__ == "__main__":
    main()
