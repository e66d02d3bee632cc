"""
Storage layer for subscriptions, payment orders, sessions and usage counts.

Uses SQLite for bootstrapping (free, embedded).
Migration path to PostgreSQL for production scale.
"""

from src.storage.database import BillingDatabase, FinalizeOutcome

__all__ = ["BillingDatabase", "FinalizeOutcome"]
