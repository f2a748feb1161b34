"""
Repository Layer for Meal Saver

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.base_repository import (
    SupabaseRepository,
)
from app.infrastructure.db.repositories.profile_repository import (
    ProfileRepository,
)
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.db.repositories.payment_repository import (
    PaymentRepository,
)
from app.infrastructure.db.repositories.webhook_log_repository import (
    WebhookLogRepository,
)
from app.infrastructure.db.repositories.storage_location_repository import (
    StorageLocationRepository,
)


__all__ = [
    # Base
    "SupabaseRepository",
    # Repositories
    "ProfileRepository",
    "SubscriptionRepository",
    "PaymentRepository",
    "WebhookLogRepository",
    "StorageLocationRepository",
]
