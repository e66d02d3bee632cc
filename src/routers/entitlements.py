"""
Entitlement checks for other write paths.

Callers ask before creating a customer or invoice, or before using a
gated feature. A denial is a normal 200 response with a human-readable
reason. Write paths that enforce call require_allowed, which raises
LimitExceeded (403).
"""

from fastapi import APIRouter, Depends

from src.auth.dependencies import get_current_user_id
from src.models.api import EntitlementResponse
from src.services import BillingServices, get_services

router = APIRouter(prefix="/entitlements", tags=["Entitlements"])


@router.get("/customers", response_model=EntitlementResponse)
async def check_customer_entitlement(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> EntitlementResponse:
    decision = await services.gate.can_create_customer(user_id)
    return EntitlementResponse.from_decision(decision)


@router.get("/invoices", response_model=EntitlementResponse)
async def check_invoice_entitlement(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> EntitlementResponse:
    decision = await services.gate.can_create_invoice(user_id)
    return EntitlementResponse.from_decision(decision)


@router.get("/features/{feature}", response_model=EntitlementResponse)
async def check_feature_entitlement(
    feature: str,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> EntitlementResponse:
    """Unknown feature names are rejected with 422."""
    decision = await services.gate.can_use_feature(user_id, feature)
    return EntitlementResponse.from_decision(decision)
