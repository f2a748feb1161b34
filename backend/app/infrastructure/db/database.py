"""
Supabase Client for Meal Saver

The data store is Supabase Postgres reached through the PostgREST client
with the service-role key (row level security is bypassed; handlers act on
behalf of webhooks, not end users).
"""

import logging
from functools import lru_cache

from supabase import create_client, Client
from supabase.lib.client_options import ClientOptions

from app.config.settings import Settings, get_settings
from app.infrastructure.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


def create_supabase_client(settings: Settings) -> Client:
    """
    Build a service-role Supabase client from settings.

    Raises:
        ConfigurationError: if the URL or service-role key is missing.
    """
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise ConfigurationError(
            "Missing Supabase configuration",
            missing_keys=["SUPABASE_URL", "SUPABASE_SERVICE_ROLE_KEY"]
        )

    options = ClientOptions(
        postgrest_client_timeout=settings.postgrest_timeout_seconds,
        auto_refresh_token=False,
        persist_session=False,
    )
    client = create_client(
        settings.supabase_url,
        settings.supabase_service_role_key,
        options,
    )
    logger.info("Supabase client initialized")
    return client


@lru_cache
def get_supabase_client() -> Client:
    """Get the process-wide Supabase client."""
    return create_supabase_client(get_settings())
