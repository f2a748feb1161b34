"""
Webhook Handlers

Inbound webhooks from the billing and identity providers.

- POST /webhooks/stripe: subscription lifecycle and invoice events
- POST /webhooks/clerk: user created / updated / deleted

Both endpoints verify the signature over the raw body before anything
is parsed or written.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.api.dependencies import ReconcilerDep, UserLifecycleDep
from app.infrastructure.exceptions import (
    DuplicateError,
    SubscriptionCancellationError,
    WebhookVerificationError,
)
from app.infrastructure.identity.clerk_webhooks import (
    ClerkWebhookVerifier,
    extract_svix_headers,
    get_clerk_webhook_verifier,
)
from app.infrastructure.payments.stripe_service import (
    StripeService,
    get_stripe_service,
)


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Stripe
# =============================================================================

@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    reconciler: ReconcilerDep,
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Handle Stripe webhook events.

    Returns 200 once the event is applied (or was already applied).
    Any processing failure answers 400 so Stripe retries the delivery.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = stripe_service.verify_webhook_signature(payload, signature)
    except WebhookVerificationError as e:
        logger.error(f"Webhook signature verification failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Webhook signature verification failed"},
        )

    try:
        return await reconciler.handle_event(event)
    except Exception as e:
        logger.error(f"Webhook error for {event.get('type')}: {e}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": str(e)},
        )


# =============================================================================
# Clerk
# =============================================================================

@router.post("/webhooks/clerk")
async def clerk_webhook(
    request: Request,
    lifecycle: UserLifecycleDep,
    verifier: ClerkWebhookVerifier = Depends(get_clerk_webhook_verifier),
):
    """
    Handle Clerk user lifecycle events.

    409 when a new user's email belongs to another account; 500 when the
    deletion cascade could not cancel every live subscription.
    """
    headers = extract_svix_headers(request.headers)
    if headers is None:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Missing svix headers"},
        )

    payload = await request.body()
    try:
        event = verifier.verify(payload, headers)
    except WebhookVerificationError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Webhook verification failed"},
        )

    try:
        return await lifecycle.handle_event(event)
    except DuplicateError:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "Email already registered"},
        )
    except SubscriptionCancellationError as e:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=e.to_dict(),
        )
