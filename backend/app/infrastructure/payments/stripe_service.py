"""
Stripe Payment Service

Clean Architecture infrastructure service for Stripe payment processing.
Handles subscriptions, checkout sessions, customers and the billing portal.

- Hosted Checkout for minimal PCI burden
- Customer Portal for subscription management
- Signature-verified webhooks
"""

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, Optional

import stripe
from stripe import StripeError

from app.config.settings import Settings, get_settings
from app.infrastructure.exceptions import (
    BillingProviderError,
    WebhookVerificationError,
)


logger = logging.getLogger(__name__)


class StripeServiceError(BillingProviderError):
    """Raised when a Stripe API call fails."""
    pass


def _to_dict(obj: Any) -> dict[str, Any]:
    """Stripe SDK objects are dict subclasses; hand plain dicts to the domain."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


class StripeService:
    """
    Stripe payment processing service.

    The SDK is synchronous, so every call runs in a worker thread. This
    keeps the event loop free and lets independent calls (for example
    cancelling several subscriptions) overlap.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        api_version: Optional[str] = None,
    ):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._api_version = api_version

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeService":
        return cls(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
        )

    async def _call(self, operation: str, func, *args, **kwargs) -> Any:
        """Run a blocking SDK call off the loop, wrapping Stripe errors."""
        kwargs.setdefault("api_key", self._api_key)
        if self._api_version:
            kwargs.setdefault("stripe_version", self._api_version)
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            logger.error(f"Stripe {operation} failed: {message}")
            raise StripeServiceError(message, operation=operation, original_error=e)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Fetch the full subscription object (period dates included)."""
        subscription = await self._call(
            "retrieve_subscription", stripe.Subscription.retrieve, subscription_id
        )
        return _to_dict(subscription)

    async def list_subscriptions(
        self,
        customer_id: str,
        status: Optional[str] = None,
        limit: int = 1,
    ) -> list[dict[str, Any]]:
        """
        List a customer's subscriptions.

        Without ``status`` Stripe returns every non-canceled subscription,
        which is how past_due subscriptions surface during a sync.
        """
        params: dict[str, Any] = {"customer": customer_id, "limit": limit}
        if status:
            params["status"] = status

        result = await self._call("list_subscriptions", stripe.Subscription.list, **params)
        return [_to_dict(sub) for sub in result.data]

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Cancel a subscription immediately."""
        subscription = await self._call(
            "cancel_subscription", stripe.Subscription.cancel, subscription_id
        )
        logger.info(f"Cancelled Stripe subscription {subscription_id}")
        return _to_dict(subscription)

    async def modify_subscription(
        self,
        subscription_id: str,
        **params: Any,
    ) -> dict[str, Any]:
        """Update a subscription (price swap, cancel_at_period_end, metadata)."""
        subscription = await self._call(
            "modify_subscription", stripe.Subscription.modify, subscription_id, **params
        )
        return _to_dict(subscription)

    # =========================================================================
    # Customers & Sessions
    # =========================================================================

    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str],
        metadata: dict[str, str],
    ) -> str:
        """Create a Stripe customer and return its ID."""
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata=metadata,
        )
        logger.info(f"Created Stripe customer {customer['id']} for user {metadata.get('user_id')}")
        return customer["id"]

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        subscription_metadata: dict[str, str],
    ) -> dict[str, Any]:
        """Create a subscription-mode hosted Checkout Session."""
        session = await self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": subscription_metadata},
            allow_promotion_codes=True,
            billing_address_collection="auto",
        )
        logger.info(f"Created checkout session {session['id']} for customer {customer_id}")
        return _to_dict(session)

    async def create_portal_session(
        self,
        customer_id: str,
        return_url: str,
    ) -> dict[str, Any]:
        """Create a Billing Portal session for self-service management."""
        session = await self._call(
            "create_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        logger.info(f"Created portal session for customer {customer_id}")
        return _to_dict(session)

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> dict[str, Any]:
        """
        Verify the Stripe-Signature header over the raw body.

        Returns the event decoded from the verified bytes.

        Raises:
            WebhookVerificationError: missing secret/header, bad payload
                or signature mismatch.
        """
        if not signature or not self._webhook_secret:
            raise WebhookVerificationError("Stripe")

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Stripe signature verification failed: {e}")
            raise WebhookVerificationError("Stripe", original_error=e)

        return json.loads(payload)


# =============================================================================
# Dependency Provider
# =============================================================================

@lru_cache
def get_stripe_service() -> StripeService:
    """Get the Stripe service built from application settings."""
    return StripeService.from_settings(get_settings())
