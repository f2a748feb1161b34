"""
Subscription Reconciliation

Keeps the local ``subscriptions`` and ``profiles`` rows consistent with
Stripe. Two entry points feed the same writes:

- ``handle_event``: push path, one verified Stripe webhook event at a time
- ``sync_customer``: pull path, re-derives a user's state from Stripe on
  demand (used right after checkout, before the webhook lands)

Both paths write the subscription row first and the profile second. The
writes are not transactional; a failed profile write leaves the
subscription row in place and the next event or sync converges it.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from app.domain.events import (
    CheckoutSessionCompleted,
    InvoiceObject,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    StripeEvent,
    StripeSubscriptionObject,
    SubscriptionChanged,
    SubscriptionDeleted,
    parse_stripe_event,
)
from app.domain.subscription import (
    BillingInterval,
    PaymentRecord,
    PaymentStatus,
    PlanCatalog,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    SyncResult,
    WebhookLogEntry,
)
from app.infrastructure.db.repositories import (
    PaymentRepository,
    ProfileRepository,
    SubscriptionRepository,
    WebhookLogRepository,
)
from app.infrastructure.exceptions import MealSaverError, NotFoundError
from app.infrastructure.notifications.email_service import EmailService
from app.infrastructure.payments.stripe_service import StripeService


logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _billing_interval(value: str) -> BillingInterval:
    try:
        return BillingInterval(value)
    except ValueError:
        return BillingInterval.MONTH


class SubscriptionReconciler:
    """
    Applies Stripe subscription state to the local database.

    Every write is an upsert keyed by a Stripe identifier, so replaying
    an event (or a sync) converges on the same rows.
    """

    def __init__(
        self,
        profiles: ProfileRepository,
        subscriptions: SubscriptionRepository,
        payments: PaymentRepository,
        webhook_log: WebhookLogRepository,
        stripe: StripeService,
        catalog: PlanCatalog,
        notifier: Optional[EmailService] = None,
    ):
        self.profiles = profiles
        self.subscriptions = subscriptions
        self.payments = payments
        self.webhook_log = webhook_log
        self.stripe = stripe
        self.catalog = catalog
        self.notifier = notifier

    # =========================================================================
    # Webhook path
    # =========================================================================

    async def handle_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """
        Process one verified Stripe event.

        Returns the acknowledgement body for Stripe. Any exception raised
        here means the event was not applied; the failure is written to
        the webhook log and re-raised so Stripe redelivers.
        """
        event_id = event["id"]
        event_type = event.get("type", "")

        existing = await self.webhook_log.get(event_id)
        if existing and existing.processed:
            logger.info(f"Event {event_id} already processed, skipping")
            return {"received": True, "status": "already_processed"}

        logger.info(f"Processing webhook event: {event_type} ({event_id})")
        payload = (event.get("data") or {}).get("object") or {}

        try:
            await self._dispatch(parse_stripe_event(event))
        except Exception as e:
            logger.error(f"Error processing webhook {event_type} ({event_id}): {e}")
            await self._record_failure(event_id, event_type, payload, str(e))
            raise

        await self.webhook_log.record(
            WebhookLogEntry(
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                processed=True,
                processed_at=_utc_now(),
            )
        )
        return {"received": True}

    async def _record_failure(
        self,
        event_id: str,
        event_type: str,
        payload: dict[str, Any],
        error: str,
    ) -> None:
        try:
            await self.webhook_log.record(
                WebhookLogEntry(
                    event_id=event_id,
                    event_type=event_type,
                    payload=payload,
                    processed=False,
                    error=error,
                )
            )
        except MealSaverError as log_error:
            logger.error(f"Failed to log webhook error for {event_id}: {log_error}")

    async def _dispatch(self, event: StripeEvent) -> None:
        if isinstance(event, CheckoutSessionCompleted):
            await self._on_checkout_completed(event)
        elif isinstance(event, SubscriptionChanged):
            await self._on_subscription_changed(event.subscription)
        elif isinstance(event, SubscriptionDeleted):
            await self._on_subscription_deleted(event.subscription)
        elif isinstance(event, InvoicePaymentSucceeded):
            await self._on_payment_succeeded(event.invoice)
        elif isinstance(event, InvoicePaymentFailed):
            await self._on_payment_failed(event.invoice)
        else:
            logger.info(f"Unhandled event type: {event.type}")

    async def _on_checkout_completed(self, event: CheckoutSessionCompleted) -> None:
        session = event.session
        user_id = session.user_id
        plan_tier = session.plan_tier

        # Not every checkout is a subscription purchase
        if not user_id or not plan_tier:
            logger.warning(
                f"Checkout session {session.id} missing user_id or plan_tier metadata, ignoring"
            )
            return

        try:
            tier = SubscriptionTier(plan_tier)
        except ValueError:
            tier = None
        if tier is None or tier == SubscriptionTier.BASIC:
            logger.warning(f"Checkout session {session.id} has non-paid plan_tier '{plan_tier}', ignoring")
            return

        if not session.subscription:
            logger.info(f"Checkout session {session.id} has no subscription attached")
            return

        logger.info(f"Checkout completed for user {user_id}, plan {tier.value}")

        # The checkout payload has no period dates; fetch the full object
        raw = await self.stripe.retrieve_subscription(session.subscription)
        stripe_sub = StripeSubscriptionObject.model_validate(raw)
        customer_id = stripe_sub.customer or session.customer

        await self.subscriptions.upsert(
            self._to_subscription(user_id, customer_id, stripe_sub, tier)
        )
        await self.profiles.update(
            user_id,
            {
                "subscription_tier": tier.value,
                "subscription_status": stripe_sub.status,
                "stripe_customer_id": customer_id,
            },
        )
        logger.info(f"Subscription {stripe_sub.id} activated for user {user_id}")

        await self._notify(user_id, tier, stripe_sub)

    async def _on_subscription_changed(self, stripe_sub: StripeSubscriptionObject) -> None:
        local = await self.subscriptions.get_by_stripe_subscription_id(stripe_sub.id)
        if local is None:
            logger.info(f"Subscription {stripe_sub.id} not found locally, skipping update")
            return

        await self.subscriptions.update_by_stripe_subscription_id(
            stripe_sub.id,
            {
                "status": stripe_sub.status,
                "current_period_start": _iso(stripe_sub.period_start),
                "current_period_end": _iso(stripe_sub.period_end),
                "cancel_at_period_end": stripe_sub.cancel_at_period_end,
                "canceled_at": _iso(stripe_sub.canceled_at_datetime),
                "trial_end": _iso(stripe_sub.trial_end_datetime),
            },
        )
        # Tier follows checkout, plan change and deletion only
        await self.profiles.update(local.user_id, {"subscription_status": stripe_sub.status})
        logger.info(f"Subscription {stripe_sub.id} updated to {stripe_sub.status}")

    async def _on_subscription_deleted(self, stripe_sub: StripeSubscriptionObject) -> None:
        local = await self.subscriptions.get_by_stripe_subscription_id(stripe_sub.id)
        if local is None:
            logger.info(f"Subscription {stripe_sub.id} not found locally, skipping delete")
            return

        await self.subscriptions.update_by_stripe_subscription_id(
            stripe_sub.id,
            {
                "status": SubscriptionStatus.CANCELED.value,
                "canceled_at": _iso(_utc_now()),
            },
        )
        await self.profiles.update(
            local.user_id,
            {
                "subscription_tier": SubscriptionTier.BASIC.value,
                "subscription_status": SubscriptionStatus.CANCELED.value,
            },
        )
        logger.info(
            f"Subscription {stripe_sub.id} deleted, user {local.user_id} "
            f"downgraded from {local.plan_tier.value} to basic"
        )

    async def _on_payment_succeeded(self, invoice: InvoiceObject) -> None:
        if not invoice.subscription or not invoice.payment_intent:
            logger.info(f"Invoice {invoice.id} has no subscription or payment intent, skipping")
            return

        local = await self.subscriptions.get_by_stripe_subscription_id(invoice.subscription)
        if local is None:
            logger.warning(f"Subscription not found for invoice {invoice.id}")
            return

        await self.payments.upsert(
            PaymentRecord(
                user_id=local.user_id,
                stripe_payment_intent_id=invoice.payment_intent,
                stripe_invoice_id=invoice.id,
                stripe_charge_id=invoice.charge,
                amount=invoice.amount_paid,
                currency=invoice.currency,
                status=PaymentStatus.SUCCEEDED,
                description=invoice.description or "Subscription payment",
                receipt_url=invoice.hosted_invoice_url,
            )
        )
        logger.info(f"Payment succeeded for invoice {invoice.id}")

    async def _on_payment_failed(self, invoice: InvoiceObject) -> None:
        if not invoice.subscription:
            logger.info(f"Invoice {invoice.id} has no subscription, skipping")
            return

        local = await self.subscriptions.get_by_stripe_subscription_id(invoice.subscription)
        if local is None:
            logger.warning(f"Subscription not found for failed invoice {invoice.id}")
            return

        past_due = SubscriptionStatus.PAST_DUE.value
        await self.subscriptions.update_by_stripe_subscription_id(
            invoice.subscription, {"status": past_due}
        )
        # Grace period: the tier stays while Stripe retries the charge
        await self.profiles.update(local.user_id, {"subscription_status": past_due})

        if invoice.payment_intent:
            await self.payments.upsert(
                PaymentRecord(
                    user_id=local.user_id,
                    stripe_payment_intent_id=invoice.payment_intent,
                    stripe_invoice_id=invoice.id,
                    amount=invoice.amount_due,
                    currency=invoice.currency,
                    status=PaymentStatus.FAILED,
                    description="Failed subscription payment",
                )
            )
        logger.warning(f"Payment failed for invoice {invoice.id}, user {local.user_id} set to past_due")

    async def _notify(
        self,
        user_id: str,
        tier: SubscriptionTier,
        stripe_sub: StripeSubscriptionObject,
    ) -> None:
        """Confirmation email; never fails the event."""
        if self.notifier is None:
            return
        try:
            profile = await self.profiles.get(user_id)
        except MealSaverError as e:
            logger.error(f"Could not load profile {user_id} for subscription email: {e}")
            return
        if profile is None:
            return

        await self.notifier.send_subscription_confirmation(
            email=profile.email,
            full_name=profile.full_name,
            tier=tier.value,
            status=stripe_sub.status,
            billing_interval=stripe_sub.billing_interval,
            current_period_end=stripe_sub.period_end,
            amount=stripe_sub.unit_amount,
            currency=stripe_sub.currency,
        )

    # =========================================================================
    # Force-sync path
    # =========================================================================

    async def sync_customer(
        self,
        user_id: str,
        stripe_customer_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Re-derive a user's subscription state directly from Stripe.

        Raises:
            NotFoundError: no profile for ``user_id``
            StripeServiceError, DatabaseError: propagated, nothing rolled back
        """
        profile = await self.profiles.get(user_id)
        if profile is None:
            raise NotFoundError("Profile not found", operation="sync", table="profiles")

        customer_id = stripe_customer_id or profile.stripe_customer_id
        if not customer_id:
            logger.info(f"[SYNC] User {user_id} has no Stripe customer, basic tier")
            return SyncResult(
                synced=True,
                tier=SubscriptionTier.BASIC,
                status=SubscriptionStatus.ACTIVE.value,
                message="No Stripe customer found - basic tier",
            )

        active = await self.stripe.list_subscriptions(
            customer_id, status=SubscriptionStatus.ACTIVE.value, limit=1
        )
        trialing = await self.stripe.list_subscriptions(
            customer_id, status=SubscriptionStatus.TRIALING.value, limit=1
        )
        candidates = active + trialing

        if not candidates:
            return await self._sync_without_live_subscription(
                user_id, profile.subscription_tier, customer_id
            )

        stripe_sub = StripeSubscriptionObject.model_validate(candidates[0])
        tier = self.catalog.tier_for_price(stripe_sub.price_id)
        logger.info(f"[SYNC] Determined plan tier {tier.value} from price {stripe_sub.price_id}")

        await self.subscriptions.upsert(
            self._to_subscription(user_id, customer_id, stripe_sub, tier)
        )
        await self.profiles.update(
            user_id,
            {
                "subscription_tier": tier.value,
                "subscription_status": stripe_sub.status,
                "stripe_customer_id": customer_id,
            },
        )
        logger.info(f"[SYNC] Subscription synced for user {user_id}: {tier.value} ({stripe_sub.status})")

        return SyncResult(
            synced=True,
            tier=tier,
            status=stripe_sub.status,
            subscription_id=stripe_sub.id,
            current_period_end=stripe_sub.period_end,
            message="Subscription synced successfully from Stripe",
        )

    async def _sync_without_live_subscription(
        self,
        user_id: str,
        current_tier: SubscriptionTier,
        customer_id: str,
    ) -> SyncResult:
        # Surface past_due/unpaid instead of silently reverting to basic
        others = await self.stripe.list_subscriptions(customer_id, limit=1)
        if others:
            status = others[0].get("status", SubscriptionStatus.ACTIVE.value)
            logger.info(f"[SYNC] Found subscription with status {status} for user {user_id}")
            await self.profiles.update(user_id, {"subscription_status": status})
            return SyncResult(
                synced=True,
                tier=current_tier,
                status=status,
                message=f"Subscription found with status: {status}",
            )

        await self.profiles.update(
            user_id,
            {
                "subscription_tier": SubscriptionTier.BASIC.value,
                "subscription_status": SubscriptionStatus.ACTIVE.value,
            },
        )
        logger.info(f"[SYNC] No subscriptions for user {user_id}, reverted to basic")
        return SyncResult(
            synced=True,
            tier=SubscriptionTier.BASIC,
            status=SubscriptionStatus.ACTIVE.value,
            message="No active subscriptions found - reverted to basic",
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _to_subscription(
        user_id: str,
        customer_id: Optional[str],
        stripe_sub: StripeSubscriptionObject,
        tier: SubscriptionTier,
    ) -> Subscription:
        return Subscription(
            user_id=user_id,
            stripe_customer_id=customer_id,
            stripe_subscription_id=stripe_sub.id,
            stripe_price_id=stripe_sub.price_id,
            plan_tier=tier,
            billing_interval=_billing_interval(stripe_sub.billing_interval),
            status=stripe_sub.status,
            current_period_start=stripe_sub.period_start,
            current_period_end=stripe_sub.period_end,
            cancel_at_period_end=stripe_sub.cancel_at_period_end,
            canceled_at=stripe_sub.canceled_at_datetime,
            trial_end=stripe_sub.trial_end_datetime,
        )
