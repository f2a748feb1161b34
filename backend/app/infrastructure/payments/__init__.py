"""
Payments Infrastructure Module

Stripe payment processing and subscription management services.
"""

from app.infrastructure.payments.stripe_service import (
    StripeService,
    StripeServiceError,
    get_stripe_service,
)

__all__ = ["StripeService", "StripeServiceError", "get_stripe_service"]
