"""
Database Infrastructure Package for Meal Saver

Exports the Supabase client factory, repositories and their providers.
"""

from app.infrastructure.db.database import (
    create_supabase_client,
    get_supabase_client,
)

from app.infrastructure.db.dependencies import (
    ClientDep,
    get_profile_repository,
    get_subscription_repository,
    get_payment_repository,
    get_webhook_log_repository,
    get_storage_location_repository,
    ProfileRepoDep,
    SubscriptionRepoDep,
    PaymentRepoDep,
    WebhookLogRepoDep,
    StorageLocationRepoDep,
)


__all__ = [
    # Client management
    "create_supabase_client",
    "get_supabase_client",
    # Dependencies
    "ClientDep",
    "get_profile_repository",
    "get_subscription_repository",
    "get_payment_repository",
    "get_webhook_log_repository",
    "get_storage_location_repository",
    "ProfileRepoDep",
    "SubscriptionRepoDep",
    "PaymentRepoDep",
    "WebhookLogRepoDep",
    "StorageLocationRepoDep",
]
