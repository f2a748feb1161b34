"""
Clerk Webhook Verification

Clerk delivers user lifecycle events through Svix. The signature covers
the raw body plus the ``svix-id`` and ``svix-timestamp`` headers, so the
body must be verified before it is parsed.
"""

import json
import logging
from functools import lru_cache
from typing import Any, Mapping, Optional

from svix.webhooks import Webhook
from svix.webhooks import WebhookVerificationError as SvixVerificationError

from app.config.settings import get_settings
from app.infrastructure.exceptions import WebhookVerificationError


logger = logging.getLogger(__name__)

SVIX_HEADERS = ("svix-id", "svix-timestamp", "svix-signature")


def extract_svix_headers(headers: Mapping[str, str]) -> Optional[dict[str, str]]:
    """Return the three Svix headers, or None if any is missing."""
    values = {name: headers.get(name) for name in SVIX_HEADERS}
    if not all(values.values()):
        return None
    return values


class ClerkWebhookVerifier:
    """Verifies Svix-signed Clerk webhook deliveries."""

    def __init__(self, secret: str):
        self._secret = secret

    def verify(self, payload: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        """
        Verify the delivery and return the decoded event.

        Raises:
            WebhookVerificationError: missing secret or signature mismatch
        """
        if not self._secret:
            logger.error("CLERK_WEBHOOK_SECRET not configured")
            raise WebhookVerificationError("Clerk")

        try:
            Webhook(self._secret).verify(payload, dict(headers))
        except (SvixVerificationError, ValueError) as e:
            logger.warning(f"Clerk webhook verification failed: {e}")
            raise WebhookVerificationError("Clerk", original_error=e)

        return json.loads(payload)


@lru_cache
def get_clerk_webhook_verifier() -> ClerkWebhookVerifier:
    return ClerkWebhookVerifier(get_settings().clerk_webhook_secret)
