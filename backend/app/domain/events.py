"""
Stripe Event Models

Stripe delivers dynamically shaped JSON dispatched on a ``type`` string.
This module decodes the event types we reconcile into typed models at the
boundary; everything else becomes an ``UnhandledEvent``.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def from_epoch(value: Optional[int]) -> Optional[datetime]:
    """Convert a Stripe epoch-seconds timestamp to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


# =============================================================================
# Payload objects
# =============================================================================

class CheckoutSessionObject(_StripeObject):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("user_id") or None

    @property
    def plan_tier(self) -> Optional[str]:
        return self.metadata.get("plan_tier") or None


class PriceRecurring(_StripeObject):
    interval: str = "month"


class Price(_StripeObject):
    id: str
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    recurring: Optional[PriceRecurring] = None


class SubscriptionItem(_StripeObject):
    id: Optional[str] = None
    price: Price


class SubscriptionItems(_StripeObject):
    data: list[SubscriptionItem] = Field(default_factory=list)


class StripeSubscriptionObject(_StripeObject):
    id: str
    customer: Optional[str] = None
    status: str
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[int] = None
    trial_end: Optional[int] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def first_price(self) -> Optional[Price]:
        return self.items.data[0].price if self.items.data else None

    @property
    def first_item_id(self) -> Optional[str]:
        return self.items.data[0].id if self.items.data else None

    @property
    def price_id(self) -> Optional[str]:
        price = self.first_price
        return price.id if price else None

    @property
    def billing_interval(self) -> str:
        price = self.first_price
        if price and price.recurring:
            return price.recurring.interval
        return "month"

    @property
    def unit_amount(self) -> Optional[int]:
        price = self.first_price
        return price.unit_amount if price else None

    @property
    def currency(self) -> Optional[str]:
        price = self.first_price
        return price.currency if price else None

    @property
    def period_start(self) -> Optional[datetime]:
        return from_epoch(self.current_period_start)

    @property
    def period_end(self) -> Optional[datetime]:
        return from_epoch(self.current_period_end)

    @property
    def canceled_at_datetime(self) -> Optional[datetime]:
        return from_epoch(self.canceled_at)

    @property
    def trial_end_datetime(self) -> Optional[datetime]:
        return from_epoch(self.trial_end)


class InvoiceObject(_StripeObject):
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    payment_intent: Optional[str] = None
    charge: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    description: Optional[str] = None
    hosted_invoice_url: Optional[str] = None


# =============================================================================
# Event variants
# =============================================================================

class _Event(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    raw_object: dict[str, Any] = Field(default_factory=dict)


class CheckoutSessionCompleted(_Event):
    session: CheckoutSessionObject


class SubscriptionChanged(_Event):
    """customer.subscription.created and customer.subscription.updated"""
    subscription: StripeSubscriptionObject


class SubscriptionDeleted(_Event):
    subscription: StripeSubscriptionObject


class InvoicePaymentSucceeded(_Event):
    invoice: InvoiceObject


class InvoicePaymentFailed(_Event):
    invoice: InvoiceObject


class UnhandledEvent(_Event):
    pass


StripeEvent = Union[
    CheckoutSessionCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    UnhandledEvent,
]


_EVENT_VARIANTS: dict[str, tuple[type[_Event], str, type[_StripeObject]]] = {
    "checkout.session.completed": (CheckoutSessionCompleted, "session", CheckoutSessionObject),
    "customer.subscription.created": (SubscriptionChanged, "subscription", StripeSubscriptionObject),
    "customer.subscription.updated": (SubscriptionChanged, "subscription", StripeSubscriptionObject),
    "customer.subscription.deleted": (SubscriptionDeleted, "subscription", StripeSubscriptionObject),
    "invoice.payment_succeeded": (InvoicePaymentSucceeded, "invoice", InvoiceObject),
    "invoice.payment_failed": (InvoicePaymentFailed, "invoice", InvoiceObject),
}


def parse_stripe_event(event: dict[str, Any]) -> StripeEvent:
    """
    Decode a verified Stripe event into its typed variant.

    Raises pydantic.ValidationError if a handled event type carries a
    payload that does not match its schema.
    """
    event_type = event.get("type", "")
    data_object = (event.get("data") or {}).get("object") or {}
    common = {"id": event["id"], "type": event_type, "raw_object": data_object}

    variant = _EVENT_VARIANTS.get(event_type)
    if variant is None:
        return UnhandledEvent(**common)

    event_cls, field_name, object_cls = variant
    return event_cls(**common, **{field_name: object_cls.model_validate(data_object)})
