"""
Integration Tests for Webhooks (Stripe and Clerk)

Verifies:
- Signature verification failure (400) before anything is written
- Successful event processing
- Idempotency (prevent double processing)
- Clerk user lifecycle responses (409 duplicate email, 500 cancellation failure)
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config.settings import get_settings
from app.domain.subscription import SubscriptionTier, WebhookLogEntry
from app.infrastructure.payments.stripe_service import (
    StripeService,
    StripeServiceError,
    get_stripe_service,
)


USER_ID = "user_webhook"


@pytest.fixture
def stripe_service(app, make_stripe_subscription):
    """Real signature verification; subscription lookups are mocked."""
    service = StripeService(api_key="sk_test_123", webhook_secret=get_settings().stripe_webhook_secret)
    service.retrieve_subscription = AsyncMock(return_value=make_stripe_subscription())
    service.cancel_subscription = AsyncMock(return_value={"status": "canceled"})
    app.dependency_overrides[get_stripe_service] = lambda: service
    return service


def checkout_event(event_id="evt_checkout_ok", plan_tier="premium"):
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_123",
                "customer": "cus_123",
                "subscription": "sub_123",
                "metadata": {"user_id": USER_ID, "plan_tier": plan_tier},
            }
        },
    }


class TestStripeWebhooks:

    def post_signed(self, client, sign_stripe_payload, event):
        payload = json.dumps(event).encode()
        return client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": sign_stripe_payload(payload), "content-type": "application/json"},
        )

    def test_webhook_missing_signature(self, client, stripe_service, webhook_log):
        """Webhook without signature header should fail 400."""
        response = client.post("/api/webhooks/stripe", json=checkout_event())

        assert response.status_code == 400
        assert response.json() == {"error": "Webhook signature verification failed"}
        assert webhook_log.rows == {}

    def test_webhook_tampered_body(self, client, stripe_service, sign_stripe_payload, webhook_log, profiles):
        """A body that does not match its signature is rejected unprocessed."""
        profiles.add(id=USER_ID)
        payload = json.dumps(checkout_event()).encode()
        signature = sign_stripe_payload(payload)
        tampered = payload.replace(b"premium", b"household_premium")

        response = client.post(
            "/api/webhooks/stripe",
            content=tampered,
            headers={"stripe-signature": signature},
        )

        assert response.status_code == 400
        assert webhook_log.rows == {}
        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.BASIC
        stripe_service.retrieve_subscription.assert_not_called()

    def test_webhook_success_checkout(
        self, client, stripe_service, sign_stripe_payload, profiles, subscriptions, webhook_log
    ):
        """Valid checkout.session.completed upgrades the user and logs the event."""
        profiles.add(id=USER_ID, email="cook@example.com")

        response = self.post_signed(client, sign_stripe_payload, checkout_event())

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.PREMIUM
        assert profiles.rows[USER_ID].stripe_customer_id == "cus_123"
        assert subscriptions.rows["sub_123"].user_id == USER_ID
        assert webhook_log.rows["evt_checkout_ok"].processed is True

    def test_webhook_idempotency(self, client, stripe_service, sign_stripe_payload, webhook_log, profiles):
        """An event already logged as processed is acknowledged without work."""
        profiles.add(id=USER_ID)
        webhook_log.rows["evt_checkout_ok"] = WebhookLogEntry(
            event_id="evt_checkout_ok",
            event_type="checkout.session.completed",
            processed=True,
        )

        response = self.post_signed(client, sign_stripe_payload, checkout_event())

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "already_processed"}
        stripe_service.retrieve_subscription.assert_not_called()
        assert profiles.rows[USER_ID].subscription_tier == SubscriptionTier.BASIC

    def test_processing_failure_is_logged_and_retried(
        self, client, stripe_service, sign_stripe_payload, webhook_log, profiles
    ):
        profiles.add(id=USER_ID)
        stripe_service.retrieve_subscription.side_effect = StripeServiceError("No such subscription: 'sub_123'")

        response = self.post_signed(client, sign_stripe_payload, checkout_event())

        assert response.status_code == 400
        assert "No such subscription" in response.json()["error"]
        entry = webhook_log.rows["evt_checkout_ok"]
        assert entry.processed is False
        assert "No such subscription" in entry.error

    def test_unhandled_event_is_acknowledged(self, client, stripe_service, sign_stripe_payload, webhook_log):
        event = {"id": "evt_misc", "object": "event", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}

        response = self.post_signed(client, sign_stripe_payload, event)

        assert response.status_code == 200
        assert webhook_log.rows["evt_misc"].processed is True


class TestClerkWebhooks:

    def user_event(self, event_type="user.created", **data):
        body = {
            "id": USER_ID,
            "email_addresses": [{"id": "idn_1", "email_address": "cook@example.com"}],
            "first_name": "Sam",
            "last_name": "Cook",
            "image_url": None,
            "created_at": 1735689600000,
        }
        body.update(data)
        return {"type": event_type, "object": "event", "data": body}

    def post_signed(self, client, sign_clerk_payload, event, msg_id="msg_test_1"):
        payload = json.dumps(event).encode()
        return client.post(
            "/api/webhooks/clerk",
            content=payload,
            headers=sign_clerk_payload(payload, msg_id),
        )

    def test_user_created(self, client, sign_clerk_payload, profiles, storage_locations):
        response = self.post_signed(client, sign_clerk_payload, self.user_event())

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert profiles.rows[USER_ID].email == "cook@example.com"
        assert len(storage_locations.rows) == 3

    def test_missing_svix_headers(self, client, profiles):
        response = client.post("/api/webhooks/clerk", json=self.user_event())

        assert response.status_code == 400
        assert response.json() == {"error": "Missing svix headers"}
        assert profiles.rows == {}

    def test_bad_signature(self, client, sign_clerk_payload, profiles):
        payload = json.dumps(self.user_event()).encode()
        headers = sign_clerk_payload(payload)
        headers["svix-signature"] = "v1,bm90LXRoZS1yaWdodC1zaWduYXR1cmU="

        response = client.post("/api/webhooks/clerk", content=payload, headers=headers)

        assert response.status_code == 400
        assert profiles.rows == {}

    def test_duplicate_email_conflict(self, client, sign_clerk_payload, profiles):
        profiles.add(id="user_someone_else", email="cook@example.com")

        response = self.post_signed(client, sign_clerk_payload, self.user_event())

        assert response.status_code == 409
        assert response.json() == {"error": "Email already registered"}

    def test_deletion_cancellation_failure(self, app, client, sign_clerk_payload, profiles, subscriptions):
        profiles.add(id=USER_ID, email="cook@example.com", stripe_customer_id="cus_123")
        subscriptions.add(user_id=USER_ID, stripe_subscription_id="sub_live", status="active")
        failing = MagicMock(spec=StripeService)
        failing.cancel_subscription.side_effect = StripeServiceError("Stripe is unavailable")
        app.dependency_overrides[get_stripe_service] = lambda: failing

        response = self.post_signed(
            client, sign_clerk_payload, {"type": "user.deleted", "data": {"id": USER_ID, "deleted": True}}
        )

        assert response.status_code == 500
        assert response.json() == {
            "error": "Failed to cancel Stripe subscriptions",
            "failed_subscriptions": ["sub_live"],
        }
        assert profiles.rows[USER_ID].email == "cook@example.com"

    def test_deletion_anonymizes_profile(self, client, stripe_service, sign_clerk_payload, profiles, subscriptions):
        profiles.add(id=USER_ID, email="cook@example.com", stripe_customer_id="cus_123")
        subscriptions.add(user_id=USER_ID, stripe_subscription_id="sub_live", status="active")

        response = self.post_signed(
            client, sign_clerk_payload, {"type": "user.deleted", "data": {"id": USER_ID, "deleted": True}}
        )

        assert response.status_code == 200
        stripe_service.cancel_subscription.assert_awaited_once_with("sub_live")
        assert profiles.rows[USER_ID].email is None
        assert profiles.rows[USER_ID].full_name == "Deleted User"

    def test_get_not_allowed(self, client):
        response = client.get("/api/webhooks/clerk")
        assert response.status_code == 405
