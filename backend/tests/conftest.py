"""
Test configuration and fixtures for Meal Saver.

Provides shared fixtures for unit and integration tests: in-memory
repositories, a mocked Stripe service, and signing helpers for Stripe
and Clerk (Svix) webhooks.
"""

import base64
import hashlib
import hmac
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

# Settings are read at import time; configure before any app import.
os.environ["SUPABASE_URL"] = "https://testproject.supabase.co"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-service-role-key"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret-with-enough-bytes-for-hs256"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_stripe_test_secret"
os.environ["CLERK_WEBHOOK_SECRET"] = "whsec_" + base64.b64encode(
    b"clerk-test-signing-secret-0123456789"
).decode()
os.environ["ENVIRONMENT"] = "development"
os.environ["RESEND_API_KEY"] = ""

import pytest
from unittest.mock import MagicMock

from fastapi.testclient import TestClient
from svix.webhooks import Webhook

from app.config.settings import (
    DEFAULT_HOUSEHOLD_PRICE_IDS,
    DEFAULT_PREMIUM_PRICE_IDS,
    get_settings,
)
from app.domain.reconciliation import SubscriptionReconciler
from app.domain.subscription import (
    DEFAULT_STORAGE_LOCATIONS,
    PaymentRecord,
    PlanCatalog,
    Profile,
    StorageLocation,
    Subscription,
    WebhookLogEntry,
)
from app.infrastructure.exceptions import DatabaseError, DuplicateError
from app.infrastructure.payments.stripe_service import StripeService


PREMIUM_PRICE = DEFAULT_PREMIUM_PRICE_IDS[0]
HOUSEHOLD_PRICE = DEFAULT_HOUSEHOLD_PRICE_IDS[0]


# =============================================================================
# In-memory repositories
# =============================================================================

class FakeProfileRepository:
    """Dict-backed stand-in for ProfileRepository."""

    def __init__(self):
        self.rows: dict[str, Profile] = {}

    def add(self, **fields) -> Profile:
        profile = Profile(**fields)
        self.rows[profile.id] = profile
        return profile

    async def get(self, user_id: str) -> Optional[Profile]:
        return self.rows.get(user_id)

    async def get_by_email(self, email: str) -> Optional[Profile]:
        return next((p for p in self.rows.values() if p.email == email), None)

    async def insert_if_absent(self, profile: Profile) -> bool:
        for other in self.rows.values():
            if other.id != profile.id and profile.email and other.email == profile.email:
                raise DuplicateError("duplicate key value violates unique constraint \"profiles_email_unique\"")
        if profile.id in self.rows:
            return False
        self.rows[profile.id] = profile
        return True

    async def update(self, user_id: str, fields: dict[str, Any]) -> None:
        current = self.rows.get(user_id)
        if current is None:
            return
        merged = {**current.model_dump(), **fields, "updated_at": datetime.now(timezone.utc)}
        self.rows[user_id] = Profile.model_validate(merged)

    async def anonymize(self, user_id: str) -> None:
        await self.update(
            user_id,
            {"email": None, "full_name": "Deleted User", "avatar_url": None},
        )


class FakeSubscriptionRepository:
    """Dict-backed stand-in for SubscriptionRepository, keyed like the table."""

    def __init__(self):
        self.rows: dict[str, Subscription] = {}
        self.upsert_calls = 0
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add(self, **fields) -> Subscription:
        fields.setdefault("created_at", self._tick())
        subscription = Subscription(**fields)
        self.rows[subscription.stripe_subscription_id] = subscription
        return subscription

    async def get_by_stripe_subscription_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        return self.rows.get(stripe_subscription_id)

    async def list_for_user(self, user_id: str, statuses) -> list[Subscription]:
        wanted = {getattr(s, "value", s) for s in statuses}
        return [s for s in self.rows.values() if s.user_id == user_id and s.status in wanted]

    async def get_latest_for_user(self, user_id: str, statuses) -> Optional[Subscription]:
        matches = await self.list_for_user(user_id, statuses)
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return matches[0] if matches else None

    async def upsert(self, subscription: Subscription) -> None:
        self.upsert_calls += 1
        existing = self.rows.get(subscription.stripe_subscription_id)
        created_at = existing.created_at if existing else self._tick()
        self.rows[subscription.stripe_subscription_id] = subscription.model_copy(
            update={"created_at": created_at}
        )

    async def update_by_stripe_subscription_id(self, stripe_subscription_id: str, fields: dict[str, Any]) -> None:
        current = self.rows.get(stripe_subscription_id)
        if current is None:
            return
        merged = {**current.model_dump(), **fields}
        self.rows[stripe_subscription_id] = Subscription.model_validate(merged)


class FakePaymentRepository:
    def __init__(self):
        self.rows: dict[str, PaymentRecord] = {}

    async def upsert(self, record: PaymentRecord) -> None:
        self.rows[record.stripe_payment_intent_id] = record


class FakeWebhookLogRepository:
    def __init__(self):
        self.rows: dict[str, WebhookLogEntry] = {}

    async def get(self, event_id: str) -> Optional[WebhookLogEntry]:
        return self.rows.get(event_id)

    async def record(self, entry: WebhookLogEntry) -> None:
        self.rows[entry.event_id] = entry


class FakeStorageLocationRepository:
    def __init__(self):
        self.rows: list[StorageLocation] = []
        self.fail = False

    async def create_defaults(self, user_id: str) -> list[StorageLocation]:
        if self.fail:
            raise DatabaseError("insert failed", operation="insert", table="storage_locations")
        created = [StorageLocation(user_id=user_id, name=n, icon=i) for n, i in DEFAULT_STORAGE_LOCATIONS]
        self.rows.extend(created)
        return created


# =============================================================================
# Repository & service fixtures
# =============================================================================

@pytest.fixture
def profiles():
    return FakeProfileRepository()


@pytest.fixture
def subscriptions():
    return FakeSubscriptionRepository()


@pytest.fixture
def payments():
    return FakePaymentRepository()


@pytest.fixture
def webhook_log():
    return FakeWebhookLogRepository()


@pytest.fixture
def storage_locations():
    return FakeStorageLocationRepository()


@pytest.fixture
def mock_stripe():
    """StripeService double; async methods become AsyncMocks."""
    return MagicMock(spec=StripeService)


@pytest.fixture
def catalog():
    return PlanCatalog(DEFAULT_PREMIUM_PRICE_IDS, DEFAULT_HOUSEHOLD_PRICE_IDS)


@pytest.fixture
def reconciler(profiles, subscriptions, payments, webhook_log, mock_stripe, catalog):
    return SubscriptionReconciler(
        profiles=profiles,
        subscriptions=subscriptions,
        payments=payments,
        webhook_log=webhook_log,
        stripe=mock_stripe,
        catalog=catalog,
    )


# =============================================================================
# Stripe payload builders
# =============================================================================

@pytest.fixture
def make_stripe_subscription():
    """Build a Stripe subscription object as the API returns it."""

    def _make(
        sub_id: str = "sub_123",
        customer: str = "cus_123",
        status: str = "active",
        price_id: str = PREMIUM_PRICE,
        interval: str = "month",
        unit_amount: int = 1499,
        metadata: Optional[dict] = None,
    ) -> dict[str, Any]:
        return {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "items": {
                "object": "list",
                "data": [
                    {
                        "id": f"si_{sub_id}",
                        "price": {
                            "id": price_id,
                            "unit_amount": unit_amount,
                            "currency": "usd",
                            "recurring": {"interval": interval},
                        },
                    }
                ],
            },
            "current_period_start": 1735689600,  # 2025-01-01
            "current_period_end": 1738368000,  # 2025-02-01
            "cancel_at_period_end": False,
            "canceled_at": None,
            "trial_end": None,
            "metadata": metadata or {},
        }

    return _make


@pytest.fixture
def make_event():
    def _make(event_type: str, obj: dict[str, Any], event_id: str = "evt_123") -> dict[str, Any]:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }

    return _make


# =============================================================================
# Webhook signing helpers
# =============================================================================

@pytest.fixture
def sign_stripe_payload():
    """Produce a valid Stripe-Signature header for a raw body."""

    def _sign(payload: bytes, secret: Optional[str] = None) -> str:
        secret = secret or get_settings().stripe_webhook_secret
        timestamp = int(time.time())
        signed = f"{timestamp}.{payload.decode()}".encode()
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    return _sign


@pytest.fixture
def sign_clerk_payload():
    """Produce valid svix-* headers for a raw body."""

    def _sign(payload: bytes, msg_id: str = "msg_test_1") -> dict[str, str]:
        now = datetime.now(timezone.utc)
        signature = Webhook(get_settings().clerk_webhook_secret).sign(msg_id, now, payload.decode())
        return {
            "svix-id": msg_id,
            "svix-timestamp": str(int(now.timestamp())),
            "svix-signature": signature,
        }

    return _sign


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app(profiles, subscriptions, payments, webhook_log, storage_locations):
    """FastAPI application wired to the in-memory repositories."""
    from app.main import app
    from app.infrastructure.db.dependencies import (
        get_payment_repository,
        get_profile_repository,
        get_storage_location_repository,
        get_subscription_repository,
        get_webhook_log_repository,
    )
    from app.infrastructure.notifications.email_service import EmailService, get_email_service

    # Override the dependency FUNCTION, not the type alias
    app.dependency_overrides[get_profile_repository] = lambda: profiles
    app.dependency_overrides[get_subscription_repository] = lambda: subscriptions
    app.dependency_overrides[get_payment_repository] = lambda: payments
    app.dependency_overrides[get_webhook_log_repository] = lambda: webhook_log
    app.dependency_overrides[get_storage_location_repository] = lambda: storage_locations
    app.dependency_overrides[get_email_service] = lambda: EmailService(
        api_key=None, sender="test@example.com", app_url="http://test"
    )
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)
