"""
Unit tests for the Stripe webhook path of SubscriptionReconciler.

Covers:
- checkout completion writes subscription + profile from the fetched object
- subscription deletion always downgrades to basic
- payment success/failure bookkeeping
- replay safety (duplicate events, repeated checkout)
- webhook log bookkeeping on success and failure
"""

import pytest
from unittest.mock import AsyncMock

from app.domain.subscription import (
    PaymentStatus,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookLogEntry,
)
from app.infrastructure.exceptions import DatabaseError
from app.infrastructure.payments.stripe_service import StripeServiceError


USER_ID = "user_2abcClerk"


def checkout_session(metadata=None, subscription="sub_123"):
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "customer": "cus_123",
        "subscription": subscription,
        "metadata": {"user_id": USER_ID, "plan_tier": "premium"} if metadata is None else metadata,
    }


def invoice(**overrides):
    body = {
        "id": "in_123",
        "object": "invoice",
        "customer": "cus_123",
        "subscription": "sub_123",
        "payment_intent": "pi_123",
        "charge": "ch_123",
        "amount_paid": 1499,
        "amount_due": 1499,
        "currency": "usd",
        "description": None,
        "hosted_invoice_url": "https://invoice.stripe.com/i/in_123",
    }
    body.update(overrides)
    return body


class TestCheckoutCompleted:

    @pytest.mark.asyncio
    async def test_checkout_creates_subscription_and_upgrades_profile(
        self, reconciler, profiles, subscriptions, mock_stripe, make_event, make_stripe_subscription
    ):
        profiles.add(id=USER_ID, email="ana@example.com")
        mock_stripe.retrieve_subscription.return_value = make_stripe_subscription()

        result = await reconciler.handle_event(
            make_event("checkout.session.completed", checkout_session())
        )

        assert result == {"received": True}
        mock_stripe.retrieve_subscription.assert_awaited_once_with("sub_123")

        row = subscriptions.rows["sub_123"]
        assert row.user_id == USER_ID
        assert row.plan_tier == SubscriptionTier.PREMIUM
        assert row.status == "active"
        assert row.current_period_end is not None

        profile = profiles.rows[USER_ID]
        assert profile.subscription_tier == SubscriptionTier.PREMIUM
        assert profile.subscription_status == "active"
        assert profile.stripe_customer_id == "cus_123"

    @pytest.mark.asyncio
    async def test_profile_tier_follows_metadata(
        self, reconciler, profiles, subscriptions, mock_stripe, make_event, make_stripe_subscription
    ):
        profiles.add(id=USER_ID)
        mock_stripe.retrieve_subscription.return_value = make_stripe_subscription(status="trialing")

        await reconciler.handle_event(
            make_event(
                "checkout.session.completed",
                checkout_session(metadata={"user_id": USER_ID, "plan_tier": "household_premium"}),
            )
        )

        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.HOUSEHOLD_PREMIUM
        assert profiles.rows[USER_ID].subscription_status == "trialing"
        assert subscriptions.rows["sub_123"].status == "trialing"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "metadata",
        [{}, {"user_id": USER_ID}, {"plan_tier": "premium"}],
    )
    async def test_missing_metadata_is_ignored(
        self, reconciler, profiles, subscriptions, webhook_log, mock_stripe, make_event, metadata
    ):
        profiles.add(id=USER_ID)

        result = await reconciler.handle_event(
            make_event("checkout.session.completed", checkout_session(metadata=metadata))
        )

        assert result == {"received": True}
        assert subscriptions.rows == {}
        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.BASIC
        mock_stripe.retrieve_subscription.assert_not_called()
        assert webhook_log.rows["evt_123"].processed is True

    @pytest.mark.asyncio
    async def test_checkout_without_subscription_changes_nothing(
        self, reconciler, profiles, subscriptions, mock_stripe, make_event
    ):
        profiles.add(id=USER_ID)

        await reconciler.handle_event(
            make_event("checkout.session.completed", checkout_session(subscription=None))
        )

        assert subscriptions.rows == {}
        mock_stripe.retrieve_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_repeated_checkout_keeps_one_row(
        self, reconciler, profiles, subscriptions, mock_stripe, make_event, make_stripe_subscription
    ):
        """Two distinct deliveries of the same purchase converge on one row."""
        profiles.add(id=USER_ID)
        mock_stripe.retrieve_subscription.return_value = make_stripe_subscription()

        await reconciler.handle_event(
            make_event("checkout.session.completed", checkout_session(), event_id="evt_a")
        )
        await reconciler.handle_event(
            make_event("checkout.session.completed", checkout_session(), event_id="evt_b")
        )

        assert list(subscriptions.rows) == ["sub_123"]
        assert subscriptions.upsert_calls == 2

    @pytest.mark.asyncio
    async def test_sends_confirmation_email(
        self, reconciler, profiles, mock_stripe, make_event, make_stripe_subscription
    ):
        notifier = AsyncMock()
        reconciler.notifier = notifier
        profiles.add(id=USER_ID, email="ana@example.com", full_name="Ana")
        mock_stripe.retrieve_subscription.return_value = make_stripe_subscription()

        await reconciler.handle_event(make_event("checkout.session.completed", checkout_session()))

        notifier.send_subscription_confirmation.assert_awaited_once()
        kwargs = notifier.send_subscription_confirmation.await_args.kwargs
        assert kwargs["email"] == "ana@example.com"
        assert kwargs["tier"] == "premium"
        assert kwargs["amount"] == 1499


class TestSubscriptionUpdates:

    @pytest.mark.asyncio
    async def test_update_for_unknown_subscription_is_noop(
        self, reconciler, profiles, subscriptions, make_event, make_stripe_subscription
    ):
        profiles.add(id=USER_ID)

        result = await reconciler.handle_event(
            make_event("customer.subscription.updated", make_stripe_subscription(sub_id="sub_unknown"))
        )

        assert result == {"received": True}
        assert subscriptions.rows == {}

    @pytest.mark.asyncio
    async def test_update_mirrors_status_and_period(
        self, reconciler, profiles, subscriptions, make_event, make_stripe_subscription
    ):
        profiles.add(id=USER_ID, subscription_tier=SubscriptionTier.PREMIUM)
        subscriptions.add(user_id=USER_ID, stripe_subscription_id="sub_123", status="active")

        payload = make_stripe_subscription(status="past_due")
        payload["cancel_at_period_end"] = True
        await reconciler.handle_event(make_event("customer.subscription.updated", payload))

        row = subscriptions.rows["sub_123"]
        assert row.status == "past_due"
        assert row.cancel_at_period_end is True
        assert row.current_period_end.year == 2025
        # Status only; tier is untouched by a plain update
        assert profiles.rows[USER_ID].subscription_status == "past_due"
        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.PREMIUM


class TestSubscriptionDeleted:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "tier",
        [SubscriptionTier.PREMIUM, SubscriptionTier.HOUSEHOLD_PREMIUM],
    )
    async def test_deletion_downgrades_to_basic(
        self, reconciler, profiles, subscriptions, make_event, make_stripe_subscription, tier
    ):
        profiles.add(id=USER_ID, subscription_tier=tier)
        subscriptions.add(user_id=USER_ID, stripe_subscription_id="sub_123", plan_tier=tier)

        await reconciler.handle_event(
            make_event("customer.subscription.deleted", make_stripe_subscription(status="canceled"))
        )

        assert subscriptions.rows["sub_123"].status == SubscriptionStatus.CANCELED.value
        assert subscriptions.rows["sub_123"].canceled_at is not None
        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.BASIC
        assert profiles.rows[USER_ID].subscription_status == "canceled"

    @pytest.mark.asyncio
    async def test_deletion_of_unknown_subscription_is_noop(
        self, reconciler, profiles, make_event, make_stripe_subscription
    ):
        profiles.add(id=USER_ID, subscription_tier=SubscriptionTier.PREMIUM)

        await reconciler.handle_event(
            make_event("customer.subscription.deleted", make_stripe_subscription(sub_id="sub_other"))
        )

        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.PREMIUM


class TestInvoices:

    @pytest.mark.asyncio
    async def test_payment_succeeded_records_payment(
        self, reconciler, subscriptions, payments, make_event
    ):
        subscriptions.add(user_id=USER_ID, stripe_subscription_id="sub_123")

        await reconciler.handle_event(make_event("invoice.payment_succeeded", invoice()))

        record = payments.rows["pi_123"]
        assert record.user_id == USER_ID
        assert record.amount == 1499
        assert record.status == PaymentStatus.SUCCEEDED
        assert record.description == "Subscription payment"
        assert record.receipt_url == "https://invoice.stripe.com/i/in_123"

    @pytest.mark.asyncio
    async def test_payment_succeeded_twice_keeps_one_record(
        self, reconciler, subscriptions, payments, make_event
    ):
        subscriptions.add(user_id=USER_ID, stripe_subscription_id="sub_123")

        await reconciler.handle_event(make_event("invoice.payment_succeeded", invoice(), event_id="evt_1"))
        await reconciler.handle_event(make_event("invoice.payment_succeeded", invoice(), event_id="evt_2"))

        assert len(payments.rows) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [{"payment_intent": None}, {"subscription": None}],
    )
    async def test_payment_succeeded_requires_ids(
        self, reconciler, subscriptions, payments, make_event, overrides
    ):
        subscriptions.add(user_id=USER_ID, stripe_subscription_id="sub_123")

        await reconciler.handle_event(make_event("invoice.payment_succeeded", invoice(**overrides)))

        assert payments.rows == {}

    @pytest.mark.asyncio
    async def test_payment_for_unknown_subscription_is_skipped(
        self, reconciler, payments, make_event
    ):
        await reconciler.handle_event(make_event("invoice.payment_succeeded", invoice()))
        assert payments.rows == {}

    @pytest.mark.asyncio
    async def test_payment_failed_sets_past_due_and_keeps_tier(
        self, reconciler, profiles, subscriptions, payments, make_event
    ):
        profiles.add(id=USER_ID, subscription_tier=SubscriptionTier.HOUSEHOLD_PREMIUM)
        subscriptions.add(
            user_id=USER_ID,
            stripe_subscription_id="sub_123",
            plan_tier=SubscriptionTier.HOUSEHOLD_PREMIUM,
        )

        await reconciler.handle_event(make_event("invoice.payment_failed", invoice(amount_due=2499)))

        assert subscriptions.rows["sub_123"].status == "past_due"
        assert profiles.rows[USER_ID].subscription_status == "past_due"
        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.HOUSEHOLD_PREMIUM
        assert payments.rows["pi_123"].status == PaymentStatus.FAILED
        assert payments.rows["pi_123"].amount == 2499


class TestWebhookLog:

    @pytest.mark.asyncio
    async def test_unhandled_event_is_acknowledged_and_logged(self, reconciler, webhook_log, make_event):
        result = await reconciler.handle_event(make_event("customer.created", {"id": "cus_1"}))

        assert result == {"received": True}
        entry = webhook_log.rows["evt_123"]
        assert entry.event_type == "customer.created"
        assert entry.processed is True
        assert entry.processed_at is not None

    @pytest.mark.asyncio
    async def test_already_processed_event_is_skipped(
        self, reconciler, profiles, webhook_log, mock_stripe, make_event
    ):
        profiles.add(id=USER_ID)
        webhook_log.rows["evt_123"] = WebhookLogEntry(
            event_id="evt_123", event_type="checkout.session.completed", processed=True
        )

        result = await reconciler.handle_event(
            make_event("checkout.session.completed", checkout_session())
        )

        assert result == {"received": True, "status": "already_processed"}
        mock_stripe.retrieve_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_event_is_retried(
        self, reconciler, profiles, subscriptions, webhook_log, mock_stripe, make_event, make_stripe_subscription
    ):
        """An unprocessed log row does not block the redelivery."""
        profiles.add(id=USER_ID)
        webhook_log.rows["evt_123"] = WebhookLogEntry(
            event_id="evt_123", event_type="checkout.session.completed", processed=False, error="boom"
        )
        mock_stripe.retrieve_subscription.return_value = make_stripe_subscription()

        await reconciler.handle_event(make_event("checkout.session.completed", checkout_session()))

        assert "sub_123" in subscriptions.rows
        assert webhook_log.rows["evt_123"].processed is True

    @pytest.mark.asyncio
    async def test_stripe_failure_is_logged_and_raised(
        self, reconciler, profiles, subscriptions, webhook_log, mock_stripe, make_event
    ):
        profiles.add(id=USER_ID)
        mock_stripe.retrieve_subscription.side_effect = StripeServiceError("No such subscription: 'sub_123'")

        with pytest.raises(StripeServiceError):
            await reconciler.handle_event(make_event("checkout.session.completed", checkout_session()))

        entry = webhook_log.rows["evt_123"]
        assert entry.processed is False
        assert "No such subscription" in entry.error
        assert subscriptions.rows == {}

    @pytest.mark.asyncio
    async def test_profile_write_failure_keeps_subscription_row(
        self, reconciler, profiles, subscriptions, webhook_log, mock_stripe, make_event, make_stripe_subscription
    ):
        """The two writes are not transactional; the first one stays."""
        profiles.add(id=USER_ID)
        mock_stripe.retrieve_subscription.return_value = make_stripe_subscription()
        profiles.update = AsyncMock(side_effect=DatabaseError("connection reset"))

        with pytest.raises(DatabaseError):
            await reconciler.handle_event(make_event("checkout.session.completed", checkout_session()))

        assert "sub_123" in subscriptions.rows
        assert webhook_log.rows["evt_123"].processed is False
