"""
Public storefront checkout endpoints.

No session: buyers are anonymous. Prices come from the seller's product
table at order time; the client never supplies an amount. Rate limited
per client IP.
"""

import logging

from fastapi import APIRouter, Depends, Request

from src.models.api import (
    CatalogOrderRequest,
    CatalogVerifyRequest,
    CheckoutResponse,
    VerifyResponse,
)
from src.rate_limits import limiter, order_rate_limit, verify_rate_limit
from src.routers.billing import verification_response
from src.services import BillingServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/catalog", tags=["Catalog"])


@router.post("/order", response_model=CheckoutResponse)
@limiter.limit(order_rate_limit)
async def create_catalog_order(
    request: Request,
    order_request: CatalogOrderRequest,
    services: BillingServices = Depends(get_services),
) -> CheckoutResponse:
    """
    Open a storefront order for a public product.

    Raises:
        404: Storefront not public, or product missing or hidden
        422: Quantity out of range or non-positive price
    """
    handle = await services.orders.create_catalog_order(
        order_request.slug,
        order_request.product_id,
        order_request.quantity,
        order_request.customer_contact,
    )
    return CheckoutResponse.from_handle(handle)


@router.post("/verify", response_model=VerifyResponse)
@limiter.limit(verify_rate_limit)
async def verify_catalog_payment(
    request: Request,
    verify_request: CatalogVerifyRequest,
    services: BillingServices = Depends(get_services),
) -> VerifyResponse:
    """Verify a storefront checkout callback and mark the order paid."""
    result = await services.verifier.verify_catalog(
        verify_request.catalog_order_id,
        verify_request.order_id,
        verify_request.payment_id,
        verify_request.signature,
    )
    return verification_response(result)
