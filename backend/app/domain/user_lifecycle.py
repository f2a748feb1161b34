"""
User Lifecycle Service

Applies Clerk user events to the ``profiles`` table.

Deletion is all-or-nothing with respect to billing: every live Stripe
subscription must be cancelled before the profile is anonymized. If any
cancellation fails the profile is left untouched and the error is
returned so Clerk redelivers the event.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.domain.subscription import (
    ACTIVE_STATUSES,
    Profile,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.infrastructure.db.repositories import (
    ProfileRepository,
    StorageLocationRepository,
    SubscriptionRepository,
)
from app.infrastructure.exceptions import (
    DuplicateError,
    MealSaverError,
    SubscriptionCancellationError,
)
from app.infrastructure.payments.stripe_service import StripeService


logger = logging.getLogger(__name__)


# =============================================================================
# Clerk payloads
# =============================================================================

class ClerkEmailAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email_address: str


class ClerkUser(BaseModel):
    """The ``data`` object of a Clerk ``user.*`` event."""
    model_config = ConfigDict(extra="ignore")

    id: str
    email_addresses: list[ClerkEmailAddress] = Field(default_factory=list)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[int] = None  # epoch milliseconds

    @property
    def primary_email(self) -> Optional[str]:
        return self.email_addresses[0].email_address if self.email_addresses else None

    @property
    def full_name(self) -> Optional[str]:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or None

    @property
    def created_datetime(self) -> datetime:
        if self.created_at is None:
            return datetime.now(timezone.utc)
        return datetime.fromtimestamp(self.created_at / 1000, tz=timezone.utc)


# =============================================================================
# Service
# =============================================================================

class UserLifecycleService:
    """Handles ``user.created``, ``user.updated`` and ``user.deleted``."""

    def __init__(
        self,
        profiles: ProfileRepository,
        subscriptions: SubscriptionRepository,
        storage_locations: StorageLocationRepository,
        stripe: StripeService,
    ):
        self.profiles = profiles
        self.subscriptions = subscriptions
        self.storage_locations = storage_locations
        self.stripe = stripe

    async def handle_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Dispatch a verified Clerk event. Unknown types are acknowledged."""
        event_type = event.get("type")
        data = event.get("data") or {}
        logger.info(f"Clerk webhook event: {event_type}")

        if event_type == "user.created":
            await self.user_created(ClerkUser.model_validate(data))
        elif event_type == "user.updated":
            await self.user_updated(ClerkUser.model_validate(data))
        elif event_type == "user.deleted":
            await self.user_deleted(data["id"])
        else:
            logger.info(f"Unhandled Clerk event type: {event_type}")

        return {"success": True}

    async def user_created(self, user: ClerkUser) -> Profile:
        """
        Create the profile for a new Clerk user.

        Raises:
            DuplicateError: the email already belongs to another user id
        """
        email = user.primary_email

        if email:
            existing = await self.profiles.get_by_email(email)
            if existing and existing.id != user.id:
                logger.error(
                    f"Email already registered with different user ID "
                    f"(clerk id {user.id}, existing id {existing.id})"
                )
                raise DuplicateError("Email already registered", operation="insert", table="profiles")

        profile = Profile(
            id=user.id,
            email=email,
            full_name=user.full_name,
            avatar_url=user.image_url,
            subscription_tier=SubscriptionTier.BASIC,
            subscription_status=SubscriptionStatus.ACTIVE.value,
            onboarding_completed=False,
            created_at=user.created_datetime,
        )
        try:
            created = await self.profiles.insert_if_absent(profile)
        except DuplicateError as e:
            # Lost a race with another sign-up on the unique email index
            raise DuplicateError(
                "Email already registered",
                operation="upsert",
                table="profiles",
                original_error=e,
            )

        if not created:
            logger.info(f"Profile for user {user.id} already exists; redelivery ignored")
            return await self.profiles.get(user.id) or profile

        logger.info(f"Profile created for user {user.id}")

        try:
            await self.storage_locations.create_defaults(user.id)
            logger.info(f"Default storage locations created for user {user.id}")
        except MealSaverError as e:
            logger.error(f"Error creating default storage locations for {user.id}: {e}")

        return profile

    async def user_updated(self, user: ClerkUser) -> None:
        # Absent email/avatar leave the stored value alone; a blank name clears it
        fields: dict[str, Any] = {"full_name": user.full_name}
        if user.primary_email is not None:
            fields["email"] = user.primary_email
        if user.image_url is not None:
            fields["avatar_url"] = user.image_url

        await self.profiles.update(user.id, fields)
        logger.info(f"Profile updated for user {user.id}")

    async def user_deleted(self, user_id: str) -> None:
        """
        Cancel live billing, then anonymize the profile.

        Raises:
            SubscriptionCancellationError: one or more cancellations failed;
                the profile has not been modified
        """
        profile = await self.profiles.get(user_id)

        if profile and profile.stripe_customer_id:
            await self._cancel_live_subscriptions(user_id)

        await self.profiles.anonymize(user_id)
        logger.info(f"Profile deleted for user {user_id}")

    async def _cancel_live_subscriptions(self, user_id: str) -> None:
        live = await self.subscriptions.list_for_user(user_id, ACTIVE_STATUSES)
        if not live:
            return

        ids = [sub.stripe_subscription_id for sub in live]
        # Issued together; one failure does not stop the others
        results = await asyncio.gather(
            *(self.stripe.cancel_subscription(sub_id) for sub_id in ids),
            return_exceptions=True,
        )

        failures: dict[str, str] = {}
        for sub_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.error(f"Failed to cancel subscription {sub_id}: {result}")
                failures[sub_id] = str(result)
            else:
                logger.info(f"Canceled Stripe subscription: {sub_id}")

        if failures:
            raise SubscriptionCancellationError(list(failures), failures)
