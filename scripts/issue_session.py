#!/usr/bin/env python3
"""
Issue a session token for local development.

Usage:
    python scripts/issue_session.py USER_ID [--admin] [--days N] [--db-path PATH]

The plaintext token is printed once; only its digest is stored.
"""

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.models.session import SessionRole
from src.storage.database import BillingDatabase

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def issue_session(db_path: str, user_id: str, role: SessionRole, days: int) -> str:
    db = BillingDatabase(db_path=db_path)
    try:
        await db.initialize()
        return await db.create_session(user_id, role=role, ttl=timedelta(days=days))
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Issue a development session token")
    parser.add_argument("user_id", help="User the session belongs to")
    parser.add_argument("--admin", action="store_true", help="Grant the admin role")
    parser.add_argument("--days", type=int, default=30, help="Session lifetime in days")
    parser.add_argument("--db-path", default="./data/billing.db")
    args = parser.parse_args()

    role = SessionRole.ADMIN if args.admin else SessionRole.USER
    token = asyncio.run(issue_session(args.db_path, args.user_id, role, args.days))

    logger.info(f"Session issued for {args.user_id} (role: {role.value})")
    print(token)
    logger.warning("SAVE THIS TOKEN - it will not be shown again!")


if __name__ == "__main__":
    main()
