"""
Application Settings for Meal Saver

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

import json
from functools import lru_cache
from typing import Annotated, Any, Optional
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


# Catalog price IDs live in Stripe; override via env when the catalog changes.
DEFAULT_PREMIUM_PRICE_IDS = [
    "price_1SKiIoIqliEA9Uot0fgA3c8M",  # Premium Monthly
    "price_1SIuGNIqliEA9UotGD93WZdc",  # Premium Yearly
]
DEFAULT_HOUSEHOLD_PRICE_IDS = [
    "price_1SIuGPIqliEA9UotfLjoddkj",  # Household Monthly
    "price_1SIuGSIqliEA9UotuHlR3qoH",  # Household Yearly
]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Secrets (Stripe, Clerk, Supabase service role, Resend) are never
    logged; they only flow into the clients that need them.
    """

    # Supabase Configuration
    supabase_url: str
    supabase_anon_key: Optional[str] = None
    supabase_service_role_key: str
    supabase_jwt_secret: Optional[str] = None
    postgrest_timeout_seconds: int = 10

    # Stripe Configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_api_version: str = "2023-10-16"
    # Comma-separated (price_a,price_b) or a JSON array
    stripe_premium_price_ids: Annotated[list[str], NoDecode] = DEFAULT_PREMIUM_PRICE_IDS
    stripe_household_price_ids: Annotated[list[str], NoDecode] = DEFAULT_HOUSEHOLD_PRICE_IDS

    # Clerk Configuration
    clerk_webhook_secret: str = ""
    clerk_jwks_url: Optional[str] = None
    clerk_issuer: Optional[str] = None

    # Email (Resend)
    resend_api_key: Optional[str] = None
    email_from: str = "Meal Saver <notifications@abemedia.online>"
    app_url: str = "https://mealsaver.app"

    # Gmail receipt scanning (consumed by the client-side integration)
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    # Application Settings
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    frontend_url: str = "http://localhost:5173"
    allowed_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # Checkout waits for the Clerk webhook to create the profile
    profile_lookup_retries: int = 3
    profile_lookup_delay_seconds: float = 1.0

    # Database Configuration (migrations only)
    supabase_password: Optional[str] = None
    database_url: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("stripe_premium_price_ids", "stripe_household_price_ids", mode="before")
    @classmethod
    def split_price_ids(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                return json.loads(value)
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @model_validator(mode="after")
    def validate_production_secrets(self) -> "Settings":
        """Webhook secrets are mandatory outside development."""
        if self.is_production:
            missing = [
                name
                for name, value in (
                    ("STRIPE_SECRET_KEY", self.stripe_secret_key),
                    ("STRIPE_WEBHOOK_SECRET", self.stripe_webhook_secret),
                    ("CLERK_WEBHOOK_SECRET", self.clerk_webhook_secret),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    f"Missing required production settings: {', '.join(missing)}"
                )

        if self.clerk_issuer and not self.clerk_jwks_url:
            self.clerk_jwks_url = f"{self.clerk_issuer.rstrip('/')}/.well-known/jwks.json"

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export for direct import
settings = get_settings()
