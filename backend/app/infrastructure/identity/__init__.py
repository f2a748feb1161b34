"""
Identity Provider Integration Package
"""

from app.infrastructure.identity.clerk_webhooks import (
    ClerkWebhookVerifier,
    extract_svix_headers,
    get_clerk_webhook_verifier,
)


__all__ = [
    "ClerkWebhookVerifier",
    "extract_svix_headers",
    "get_clerk_webhook_verifier",
]
