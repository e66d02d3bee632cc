"""
Usage metering.

Read-only counts of the records that plan limits apply to:
- customers: lifetime count per user
- invoices: count within the current calendar month (UTC)
"""

import logging
from datetime import UTC, datetime

from src.billing.periods import month_window
from src.storage.database import BillingDatabase

logger = logging.getLogger(__name__)


class UsageMeter:
    """Count customers and monthly invoices for a user."""

    def __init__(self, db: BillingDatabase):
        self.db = db

    async def customer_count(self, user_id: str) -> int:
        return await self.db.count_customers(user_id)

    async def invoice_count_this_month(self, user_id: str, now: datetime | None = None) -> int:
        """
        Count invoices created in the calendar month containing now.

        Args:
            user_id: User identifier
            now: Reference clock (defaults to current UTC time)

        Returns:
            int: Invoices in [first instant of month, first instant of next month)
        """
        start, end = month_window(now or datetime.now(UTC))
        return await self.db.count_invoices(user_id, start, end)
