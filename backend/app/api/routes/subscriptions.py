"""
Subscription API Routes

REST API endpoints for subscription management.
Follows FastAPI best practices with dependency injection.

Domain and provider errors (NotFoundError, StripeServiceError, ...) are
translated to HTTP responses by the exception handlers in ``main.py``.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials

from app.domain.subscription import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    ChangePlanRequest,
    ChangePlanResponse,
    CheckoutResponse,
    CreateCheckoutRequest,
    PortalResponse,
    PortalSessionRequest,
    SyncResult,
    SyncSubscriptionRequest,
)
from app.api.dependencies import (
    BillingServiceDep,
    IdentityDep,
    ReconcilerDep,
    resolve_user_id_hint,
    security,
)


logger = logging.getLogger(__name__)

router = APIRouter()


def _require_user_id_hint(
    body_user_id: Optional[str],
    clerk_token: Optional[str],
    credentials: Optional[HTTPAuthorizationCredentials],
) -> str:
    user_id = resolve_user_id_hint(
        body_user_id,
        clerk_token,
        credentials.credentials if credentials else None,
    )
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing user ID. Please provide userId in request body or valid auth token.",
        )
    return user_id


# =============================================================================
# Sync Endpoint
# =============================================================================

@router.post("/subscriptions/sync", response_model=SyncResult)
async def sync_subscription(
    request: SyncSubscriptionRequest,
    reconciler: ReconcilerDep,
):
    """
    Force-sync a user's subscription from Stripe.

    Called by the client right after returning from Checkout so paid
    features unlock without waiting for the webhook.
    """
    logger.info(f"[SYNC] Sync requested for user {request.user_id}")
    return await reconciler.sync_customer(request.user_id, request.stripe_customer_id)


# =============================================================================
# Checkout & Portal Endpoints
# =============================================================================

@router.post("/subscriptions/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    request: CreateCheckoutRequest,
    identity: IdentityDep,
    billing: BillingServiceDep,
):
    """
    Create a Stripe Checkout session for subscription purchase.

    Args:
        request: Checkout request with price, plan tier, interval and URLs

    Returns:
        CheckoutResponse with checkout URL and session ID
    """
    logger.info(f"Creating checkout session for user {identity.user_id} ({request.price_id})")
    return await billing.create_checkout_session(identity, request)


@router.post("/subscriptions/portal", response_model=PortalResponse)
async def create_portal_session(
    request: PortalSessionRequest,
    billing: BillingServiceDep,
    x_clerk_token: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    """Create a Stripe Customer Portal session for self-service billing."""
    user_id = _require_user_id_hint(
        request.user_id or request.clerk_user_id, x_clerk_token, credentials
    )
    return await billing.create_portal_session(user_id, request.return_url)


# =============================================================================
# Plan Management Endpoints
# =============================================================================

@router.post("/subscriptions/change-plan", response_model=ChangePlanResponse)
async def change_plan(
    request: ChangePlanRequest,
    billing: BillingServiceDep,
    x_clerk_token: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
):
    """Switch the live subscription to another price, prorated."""
    user_id = _require_user_id_hint(request.user_id, x_clerk_token, credentials)
    return await billing.change_plan(user_id, request.new_price_id, request.new_plan_tier)


@router.post("/subscriptions/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    identity: IdentityDep,
    billing: BillingServiceDep,
):
    """
    Cancel the current subscription.

    By default the subscription runs until the end of the paid period;
    ``cancelImmediately`` ends it now.
    """
    return await billing.cancel_subscription(identity.user_id, request.cancel_immediately)
