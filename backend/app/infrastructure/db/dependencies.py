"""
Dependency Injection Providers for Meal Saver

Provides FastAPI dependencies for the Supabase client and repositories.
Follows Dependency Inversion Principle - routes receive repositories,
never a raw client.
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from supabase import Client

from app.infrastructure.db.database import get_supabase_client
from app.infrastructure.db.repositories import (
    PaymentRepository,
    ProfileRepository,
    StorageLocationRepository,
    SubscriptionRepository,
    WebhookLogRepository,
)


# Type alias for client dependency
ClientDep = Annotated[Client, Depends(get_supabase_client)]


async def get_profile_repository(
    client: ClientDep,
) -> AsyncGenerator[ProfileRepository, None]:
    """
    Dependency provider for ProfileRepository.

    Usage:
        @router.post("/portal")
        async def portal(
            profiles: ProfileRepository = Depends(get_profile_repository)
        ):
            ...
    """
    yield ProfileRepository(client)


async def get_subscription_repository(
    client: ClientDep,
) -> AsyncGenerator[SubscriptionRepository, None]:
    yield SubscriptionRepository(client)


async def get_payment_repository(
    client: ClientDep,
) -> AsyncGenerator[PaymentRepository, None]:
    yield PaymentRepository(client)


async def get_webhook_log_repository(
    client: ClientDep,
) -> AsyncGenerator[WebhookLogRepository, None]:
    yield WebhookLogRepository(client)


async def get_storage_location_repository(
    client: ClientDep,
) -> AsyncGenerator[StorageLocationRepository, None]:
    yield StorageLocationRepository(client)


# Type aliases for repository dependencies
ProfileRepoDep = Annotated[ProfileRepository, Depends(get_profile_repository)]
SubscriptionRepoDep = Annotated[
    SubscriptionRepository,
    Depends(get_subscription_repository)
]
PaymentRepoDep = Annotated[PaymentRepository, Depends(get_payment_repository)]
WebhookLogRepoDep = Annotated[
    WebhookLogRepository,
    Depends(get_webhook_log_repository)
]
StorageLocationRepoDep = Annotated[
    StorageLocationRepository,
    Depends(get_storage_location_repository)
]
