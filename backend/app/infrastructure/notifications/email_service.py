"""
Email Notification Service

Sends subscription confirmation emails through the Resend HTTP API.
Delivery is best-effort: a failed send is logged and reported as False,
it never fails the billing flow that triggered it.

API Docs: https://resend.com/docs/api-reference/emails/send-email
"""

import logging
from datetime import datetime
from functools import lru_cache
from typing import Optional

import httpx

from app.config.settings import Settings, get_settings
from app.domain.subscription import SubscriptionStatus, SubscriptionTier


logger = logging.getLogger(__name__)


TIER_DISPLAY_NAMES = {
    SubscriptionTier.BASIC.value: "Basic",
    SubscriptionTier.PREMIUM.value: "Premium",
    SubscriptionTier.HOUSEHOLD_PREMIUM.value: "Household Premium",
}


def subject_for(tier: str, status: str) -> str:
    if status == SubscriptionStatus.ACTIVE.value:
        if tier in (SubscriptionTier.PREMIUM.value, SubscriptionTier.HOUSEHOLD_PREMIUM.value):
            return f"Welcome to Meal Saver {TIER_DISPLAY_NAMES[tier]}!"
        return "Welcome to Meal Saver!"
    if status == SubscriptionStatus.CANCELED.value:
        return "Subscription Canceled - Meal Saver"
    return "Meal Saver Subscription Update"


class EmailService:
    """Resend client for transactional billing email."""

    BASE_URL = "https://api.resend.com/emails"

    def __init__(
        self,
        api_key: Optional[str],
        sender: str,
        app_url: str,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self.app_url = app_url
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            api_key=settings.resend_api_key,
            sender=settings.email_from,
            app_url=settings.app_url,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _render(
        self,
        full_name: Optional[str],
        tier: str,
        billing_interval: str,
        current_period_end: Optional[datetime],
        amount: Optional[int],
        currency: Optional[str],
    ) -> str:
        name = full_name or "there"
        plan = TIER_DISPLAY_NAMES.get(tier, "Basic")
        lines = [
            f"<p>Hi {name},</p>",
            f"<p>Your Meal Saver {plan} plan is now active.</p>",
        ]
        if amount is not None:
            lines.append(
                f"<p>Billing: {amount / 100:.2f} {(currency or 'usd').upper()} per {billing_interval}.</p>"
            )
        if current_period_end:
            lines.append(f"<p>Next billing date: {current_period_end.strftime('%B %d, %Y')}</p>")
        lines.append(f'<p><a href="{self.app_url}">Open Meal Saver</a></p>')
        return "\n".join(lines)

    async def send_subscription_confirmation(
        self,
        email: Optional[str],
        full_name: Optional[str],
        tier: str,
        status: str,
        billing_interval: str = "month",
        current_period_end: Optional[datetime] = None,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> bool:
        """
        Send the confirmation email for a new or changed subscription.

        Returns:
            True if Resend accepted the message, False otherwise.
        """
        if not self.enabled:
            logger.warning("[EMAIL] RESEND_API_KEY not configured, skipping subscription email")
            return False
        if not email:
            logger.warning("[EMAIL] No recipient address, skipping subscription email")
            return False

        message = {
            "from": self.sender,
            "to": email,
            "subject": subject_for(tier, status),
            "html": self._render(
                full_name, tier, billing_interval, current_period_end, amount, currency
            ),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.BASE_URL,
                    json=message,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(f"[EMAIL] Resend returned HTTP {e.response.status_code}: {e.response.text}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"[EMAIL] Failed to reach Resend: {e}")
            return False

        logger.info(f"[EMAIL] Subscription email sent to {email}")
        return True


@lru_cache
def get_email_service() -> EmailService:
    return EmailService.from_settings(get_settings())
