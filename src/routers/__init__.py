"""
API routers for the billing service.

Routers:
- billing: plans, subscription checkout, verification, sync, webhooks
- catalog: public storefront checkout
- entitlements: quota and feature checks
- admin: operator reconciliation
"""

from src.routers.admin import router as admin_router
from src.routers.billing import router as billing_router
from src.routers.catalog import router as catalog_router
from src.routers.entitlements import router as entitlements_router

__all__ = ["admin_router", "billing_router", "catalog_router", "entitlements_router"]
