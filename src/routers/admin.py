"""
Operator endpoints (admin role required).
"""

import logging

from fastapi import APIRouter, Depends

from src.auth.dependencies import require_admin
from src.models.api import SyncAllResponse
from src.models.session import Session
from src.services import BillingServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post("/billing/sync-all", response_model=SyncAllResponse)
async def sync_all_subscriptions(
    admin: Session = Depends(require_admin),
    services: BillingServices = Depends(get_services),
) -> SyncAllResponse:
    """
    Reconcile every recurring subscription with its gateway.

    Per-user failures are reported, not raised; each failed row stays as it was.
    """
    logger.info(f"Bulk subscription sync requested by admin: {admin.user_id}")
    result = await services.reconciliation.sync_all()
    return SyncAllResponse(**result)
