"""
Billing Session Service

User-initiated billing operations: hosted Checkout, the Billing Portal,
plan changes and cancellation. Stripe stays the source of truth; local
writes made here are immediate feedback that the webhook later confirms.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from app.config.settings import Settings
from app.domain.events import StripeSubscriptionObject
from app.domain.subscription import (
    ACTIVE_STATUSES,
    CancelSubscriptionResponse,
    ChangePlanResponse,
    CheckoutResponse,
    CreateCheckoutRequest,
    PortalResponse,
    Profile,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.infrastructure.db.repositories import (
    ProfileRepository,
    SubscriptionRepository,
)
from app.infrastructure.exceptions import (
    MealSaverError,
    NotFoundError,
    ValidationError,
)
from app.infrastructure.payments.stripe_service import StripeService


logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


@dataclass(frozen=True)
class VerifiedIdentity:
    """Caller identity established from a signature-verified token."""
    user_id: str
    email: Optional[str] = None
    clerk_user_id: Optional[str] = None


class BillingSessionService:
    """Creates Stripe sessions and applies user-requested plan changes."""

    def __init__(
        self,
        profiles: ProfileRepository,
        subscriptions: SubscriptionRepository,
        stripe: StripeService,
        settings: Settings,
    ):
        self.profiles = profiles
        self.subscriptions = subscriptions
        self.stripe = stripe
        self.settings = settings

    async def _wait_for_profile(self, user_id: str) -> Profile:
        """
        Load the profile, retrying while the Clerk webhook catches up.

        A user can reach checkout seconds after sign-up, before the
        ``user.created`` webhook has written the profile row.
        """
        profile = await self.profiles.get(user_id)
        attempt = 0
        while profile is None and attempt < self.settings.profile_lookup_retries:
            attempt += 1
            logger.info(f"Profile {user_id} not found, retry {attempt}")
            await asyncio.sleep(self.settings.profile_lookup_delay_seconds)
            profile = await self.profiles.get(user_id)

        if profile is None:
            raise ValidationError("Profile not ready. Please wait a moment and try again.")
        return profile

    async def create_checkout_session(
        self,
        identity: VerifiedIdentity,
        request: CreateCheckoutRequest,
    ) -> CheckoutResponse:
        profile = await self._wait_for_profile(identity.user_id)
        clerk_user_id = identity.clerk_user_id or ""

        customer_id = profile.stripe_customer_id
        if not customer_id:
            email = request.user_email or identity.email or profile.email
            name = profile.full_name or request.user_name or (email.split("@")[0] if email else None)
            customer_id = await self.stripe.create_customer(
                email=email,
                name=name,
                metadata={"user_id": identity.user_id, "clerk_user_id": clerk_user_id},
            )
            await self.profiles.update(identity.user_id, {"stripe_customer_id": customer_id})

        metadata = {
            "user_id": identity.user_id,
            "clerk_user_id": clerk_user_id,
            "plan_tier": request.plan_tier.value,
            "billing_interval": request.billing_interval.value,
        }
        session = await self.stripe.create_checkout_session(
            customer_id=customer_id,
            price_id=request.price_id,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            metadata=metadata,
            subscription_metadata=metadata,
        )
        return CheckoutResponse(url=session["url"], session_id=session["id"])

    async def create_portal_session(self, user_id: str, return_url: str) -> PortalResponse:
        profile = await self.profiles.get(user_id)
        if profile is None or not profile.stripe_customer_id:
            raise NotFoundError("No Stripe customer found. Please subscribe first.")

        session = await self.stripe.create_portal_session(profile.stripe_customer_id, return_url)
        return PortalResponse(url=session["url"])

    async def change_plan(
        self,
        user_id: str,
        new_price_id: str,
        new_plan_tier: SubscriptionTier,
    ) -> ChangePlanResponse:
        """
        Swap the user's live subscription to a new price with proration.

        The Stripe update is authoritative; the local writes afterwards
        are best-effort since the ``subscription.updated`` webhook follows.
        """
        local = await self.subscriptions.get_latest_for_user(user_id, ACTIVE_STATUSES)
        if local is None:
            raise ValidationError("No active subscription found")

        logger.info(
            f"Changing subscription {local.stripe_subscription_id} "
            f"from {local.plan_tier.value} to {new_plan_tier.value} ({new_price_id})"
        )
        stripe_sub = StripeSubscriptionObject.model_validate(
            await self.stripe.retrieve_subscription(local.stripe_subscription_id)
        )
        if not stripe_sub.first_item_id:
            raise ValidationError("No subscription items found")

        await self.stripe.modify_subscription(
            local.stripe_subscription_id,
            items=[{"id": stripe_sub.first_item_id, "price": new_price_id}],
            proration_behavior="create_prorations",
            metadata={"plan_tier": new_plan_tier.value},
        )

        try:
            await self.subscriptions.update_by_stripe_subscription_id(
                local.stripe_subscription_id,
                {"plan_tier": new_plan_tier.value, "stripe_price_id": new_price_id},
            )
            await self.profiles.update(user_id, {"subscription_tier": new_plan_tier.value})
        except MealSaverError as e:
            logger.error(f"Local plan update failed for user {user_id}, webhook will resync: {e}")

        return ChangePlanResponse(
            success=True,
            new_plan_tier=new_plan_tier,
            message=f"Successfully changed to {new_plan_tier.value} plan",
        )

    async def cancel_subscription(
        self,
        user_id: str,
        cancel_immediately: bool = False,
    ) -> CancelSubscriptionResponse:
        """
        Cancel now or at period end.

        The tier is left alone: the ``subscription.deleted`` webhook does
        the downgrade when Stripe actually ends the subscription.
        """
        local = await self.subscriptions.get_latest_for_user(user_id, CANCELLABLE_STATUSES)
        if local is None:
            raise NotFoundError("No active subscription found")

        if cancel_immediately:
            await self.stripe.cancel_subscription(local.stripe_subscription_id)
            message = "Subscription canceled immediately"
        else:
            await self.stripe.modify_subscription(
                local.stripe_subscription_id, cancel_at_period_end=True
            )
            message = "Subscription will be canceled at the end of the billing period"

        logger.info(f"User {user_id} cancelled {local.stripe_subscription_id}: {message}")
        return CancelSubscriptionResponse(success=True, message=message)
