"""
Subscription billing API endpoints.

Security:
- All endpoints except /plans and /webhook require a session token
- user_id always comes from the session, never from the request body
- Webhooks are authenticated by the gateway's body signature
- Order creation and verification are rate limited per user
"""

import logging

from fastapi import APIRouter, Depends, Request

from src.auth.dependencies import get_current_user_id
from src.billing.errors import NotFoundError, OrderMismatch, SignatureMismatch
from src.billing.plans import list_plans
from src.models.api import (
    CancelSubscriptionRequest,
    CheckoutResponse,
    PlanResponse,
    RecurringSubscribeRequest,
    SubscriptionOrderRequest,
    SubscriptionOverviewResponse,
    SubscriptionResponse,
    UsageResponse,
    VerifyPaymentRequest,
    VerifyResponse,
)
from src.models.billing import RejectReason, Subscription, VerificationResult
from src.rate_limits import limiter, order_rate_limit, verify_rate_limit
from src.services import BillingServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


def verification_response(result: VerificationResult) -> VerifyResponse:
    """
    Map a verification result to the HTTP contract.

    Applied (including replays) and already-processed orders are
    success-shaped; every other rejection raises the matching domain error.
    """
    if result.applied:
        return VerifyResponse(applied=True)

    if result.reason == RejectReason.ALREADY_PROCESSED:
        return VerifyResponse(applied=False, reason=result.reason.value)
    if result.reason == RejectReason.SIGNATURE_MISMATCH:
        raise SignatureMismatch()
    if result.reason == RejectReason.ORDER_MISMATCH:
        raise OrderMismatch("Order details do not match the pending order")
    raise NotFoundError("Order not found")


def _snapshot(services: BillingServices, subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse.from_subscription(
        subscription, services.store.effective_plan(subscription)
    )


@router.get("/plans", response_model=list[PlanResponse])
async def get_plans() -> list[PlanResponse]:
    """Plan catalog, cheapest first."""
    return [PlanResponse.from_plan(plan) for plan in list_plans()]


@router.get("/subscription", response_model=SubscriptionOverviewResponse)
async def get_subscription(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> SubscriptionOverviewResponse:
    """
    Current subscription with effective plan and usage.

    Users without a stored subscription get the implicit free tier.
    """
    subscription = await services.store.get(user_id)
    summary = await services.gate.usage_summary(user_id)
    return SubscriptionOverviewResponse(
        subscription=_snapshot(services, subscription),
        usage=UsageResponse.from_summary(summary),
    )


@router.post("/order", response_model=CheckoutResponse)
@limiter.limit(order_rate_limit)
async def create_order(
    request: Request,  # Required by slowapi
    order_request: SubscriptionOrderRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> CheckoutResponse:
    """
    Open a one-time gateway order for N months of a paid plan.

    Raises:
        422: Unknown/free plan or duration out of range (no gateway call)
        502 / 503: Gateway rejected the order / gateway unavailable
    """
    handle = await services.orders.create_subscription_order(
        user_id, order_request.plan, order_request.duration_months
    )
    return CheckoutResponse.from_handle(handle)


@router.post("/subscribe", response_model=CheckoutResponse)
@limiter.limit(order_rate_limit)
async def create_recurring_subscription(
    request: Request,
    subscribe_request: RecurringSubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> CheckoutResponse:
    """Start a gateway-managed monthly subscription (orderId is the gateway subscription id)."""
    handle = await services.orders.create_recurring_subscription(user_id, subscribe_request.plan)
    return CheckoutResponse.from_handle(handle)


@router.post("/verify", response_model=VerifyResponse)
@limiter.limit(verify_rate_limit)
async def verify_payment(
    request: Request,
    verify_request: VerifyPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> VerifyResponse:
    """
    Verify a checkout callback and apply it to the subscription.

    Idempotent: repeating a verified callback returns applied=true without
    extending the period again.

    Raises:
        400: Signature mismatch or order details mismatch
        404: Unknown order (or another user's order)
    """
    result = await services.verifier.verify(
        user_id,
        verify_request.order_id,
        verify_request.payment_id,
        verify_request.signature,
        claimed_plan=verify_request.plan,
        claimed_duration=verify_request.duration_months,
    )
    return verification_response(result)


@router.post("/sync", response_model=SubscriptionResponse)
async def sync_subscription(
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> SubscriptionResponse:
    """
    Refresh a recurring subscription from the gateway.

    Raises:
        503: Gateway unavailable (local state unchanged)
    """
    subscription = await services.reconciliation.sync(user_id)
    return _snapshot(services, subscription)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    cancel_request: CancelSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> SubscriptionResponse:
    """Cancel the recurring subscription, by default at the end of the current period."""
    subscription = await services.reconciliation.cancel(
        user_id, at_period_end=cancel_request.cancel_at_period_end
    )
    return _snapshot(services, subscription)


@router.post("/webhook/{provider}")
async def gateway_webhook(
    provider: str,
    request: Request,
    services: BillingServices = Depends(get_services),
) -> dict:
    """
    Receive a gateway webhook.

    No session: the body signature is the authentication.

    Raises:
        400: Invalid signature
        404: Unknown provider
        503: Gateway unavailable while pulling state (gateway will redeliver)
    """
    body = await request.body()
    return await services.webhooks.handle_event(provider, body, request.headers)
