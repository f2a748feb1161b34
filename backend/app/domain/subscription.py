"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, DTOs, and domain entities for the billing bounded context.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionTier(str, Enum):
    """Plan tiers. The legacy 'free' tier is rejected by the schema."""
    BASIC = "basic"
    PREMIUM = "premium"
    HOUSEHOLD_PREMIUM = "household_premium"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status, mirrored from Stripe."""
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    PAUSED = "paused"


class BillingInterval(str, Enum):
    """Billing interval for subscriptions."""
    MONTH = "month"
    YEAR = "year"


class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# Local rows in these states still correspond to a live Stripe subscription
ACTIVE_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
)

DELETED_USER_NAME = "Deleted User"


# =============================================================================
# Domain Entities
# =============================================================================

class Profile(BaseModel):
    """One row per Clerk user. The id is Clerk's opaque user id."""
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    subscription_tier: SubscriptionTier = SubscriptionTier.BASIC
    subscription_status: str = SubscriptionStatus.ACTIVE.value
    stripe_customer_id: Optional[str] = None
    onboarding_completed: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Subscription(BaseModel):
    """Local mirror of one Stripe subscription object."""
    model_config = ConfigDict(from_attributes=True, extra="ignore")

    id: Optional[str] = None
    user_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: str
    stripe_price_id: Optional[str] = None
    plan_tier: SubscriptionTier = SubscriptionTier.PREMIUM
    billing_interval: BillingInterval = BillingInterval.MONTH
    status: str = SubscriptionStatus.ACTIVE.value
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentRecord(BaseModel):
    """Append-only payment ledger entry, keyed by payment intent."""
    model_config = ConfigDict(extra="ignore")

    user_id: str
    stripe_payment_intent_id: str
    stripe_invoice_id: Optional[str] = None
    stripe_charge_id: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    status: PaymentStatus = PaymentStatus.SUCCEEDED
    description: Optional[str] = None
    receipt_url: Optional[str] = None


class WebhookLogEntry(BaseModel):
    """Audit row for one Stripe webhook delivery."""
    model_config = ConfigDict(extra="ignore")

    event_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    processed_at: Optional[datetime] = None
    error: Optional[str] = None


class StorageLocation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    name: str
    icon: str


DEFAULT_STORAGE_LOCATIONS = (
    ("Pantry", "Package"),
    ("Refrigerator", "Refrigerator"),
    ("Freezer", "Snowflake"),
)


# =============================================================================
# Plan Catalog (Business Logic)
# =============================================================================

class PlanCatalog:
    """
    Maps Stripe price IDs to plan tiers.

    The price lists come from settings so catalog changes do not need a
    deploy. Unknown price IDs map to premium, never to basic: a paying
    customer on a price we do not recognise still gets paid features.
    """

    def __init__(
        self,
        premium_price_ids: Iterable[str],
        household_price_ids: Iterable[str],
    ):
        self._premium = frozenset(premium_price_ids)
        self._household = frozenset(household_price_ids)

    @classmethod
    def from_settings(cls, settings) -> "PlanCatalog":
        return cls(
            premium_price_ids=settings.stripe_premium_price_ids,
            household_price_ids=settings.stripe_household_price_ids,
        )

    def tier_for_price(self, price_id: Optional[str]) -> SubscriptionTier:
        if price_id in self._household:
            return SubscriptionTier.HOUSEHOLD_PREMIUM
        if price_id in self._premium:
            return SubscriptionTier.PREMIUM
        return SubscriptionTier.PREMIUM


# =============================================================================
# Request/Response DTOs
# =============================================================================

class _CamelModel(BaseModel):
    """Wire models use the frontend's camelCase names."""
    model_config = ConfigDict(populate_by_name=True)


class SyncSubscriptionRequest(_CamelModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    stripe_customer_id: Optional[str] = Field(None, alias="stripeCustomerId")


class SyncResult(_CamelModel):
    """Outcome of a force sync, shown to the user as confirmation."""
    synced: bool
    tier: SubscriptionTier
    status: str
    subscription_id: Optional[str] = Field(None, alias="subscriptionId")
    current_period_end: Optional[datetime] = Field(None, alias="currentPeriodEnd")
    message: str


class CreateCheckoutRequest(_CamelModel):
    """Request DTO for creating a checkout session."""
    price_id: str = Field(..., alias="priceId", min_length=1)
    success_url: str = Field(..., alias="successUrl", min_length=1)
    cancel_url: str = Field(..., alias="cancelUrl", min_length=1)
    plan_tier: SubscriptionTier = Field(SubscriptionTier.PREMIUM, alias="planTier")
    billing_interval: BillingInterval = Field(BillingInterval.MONTH, alias="billingInterval")
    user_email: Optional[str] = Field(None, alias="userEmail")
    user_name: Optional[str] = Field(None, alias="userName")


class CheckoutResponse(_CamelModel):
    url: str
    session_id: str = Field(..., alias="sessionId")


class PortalSessionRequest(_CamelModel):
    return_url: str = Field(..., alias="returnUrl", min_length=1)
    user_id: Optional[str] = Field(None, alias="userId")
    clerk_user_id: Optional[str] = Field(None, alias="clerkUserId")


class PortalResponse(_CamelModel):
    url: str


class ChangePlanRequest(_CamelModel):
    new_price_id: str = Field(..., alias="newPriceId", min_length=1)
    new_plan_tier: SubscriptionTier = Field(..., alias="newPlanTier")
    user_id: Optional[str] = Field(None, alias="userId")


class ChangePlanResponse(_CamelModel):
    success: bool = True
    new_plan_tier: SubscriptionTier = Field(..., alias="newPlanTier")
    message: str


class CancelSubscriptionRequest(_CamelModel):
    cancel_immediately: bool = Field(False, alias="cancelImmediately")


class CancelSubscriptionResponse(_CamelModel):
    success: bool = True
    message: str
