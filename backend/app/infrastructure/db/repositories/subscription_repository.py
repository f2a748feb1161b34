"""
Subscription Repository

Data access layer for the ``subscriptions`` table.
One row per Stripe subscription; ``stripe_subscription_id`` is the
upsert key, so replayed webhooks converge on the same row.
"""

import logging
from typing import Any, Iterable, Optional

from app.domain.subscription import Subscription
from app.infrastructure.db.repositories.base_repository import (
    SupabaseRepository,
    utc_now_iso,
)


logger = logging.getLogger(__name__)


def _status_values(statuses: Iterable[Any]) -> list[str]:
    return [getattr(status, "value", status) for status in statuses]


class SubscriptionRepository(SupabaseRepository):
    """
    Repository for subscription data access.

    Rows are never deleted; cancellation is a status transition.
    """

    table_name = "subscriptions"

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_stripe_subscription_id(
        self,
        stripe_subscription_id: str,
    ) -> Optional[Subscription]:
        row = await self._select_one(
            "select",
            lambda: self.table()
            .select("*")
            .eq("stripe_subscription_id", stripe_subscription_id)
            .limit(1),
        )
        return Subscription.model_validate(row) if row else None

    async def list_for_user(
        self,
        user_id: str,
        statuses: Iterable[Any],
    ) -> list[Subscription]:
        """All of a user's subscriptions in the given statuses."""
        values = _status_values(statuses)
        response = await self._execute(
            "select",
            lambda: self.table().select("*").eq("user_id", user_id).in_("status", values),
        )
        return [Subscription.model_validate(row) for row in response.data or []]

    async def get_latest_for_user(
        self,
        user_id: str,
        statuses: Iterable[Any],
    ) -> Optional[Subscription]:
        """The most recently created subscription in the given statuses."""
        values = _status_values(statuses)
        row = await self._select_one(
            "select",
            lambda: self.table()
            .select("*")
            .eq("user_id", user_id)
            .in_("status", values)
            .order("created_at", desc=True)
            .limit(1),
        )
        return Subscription.model_validate(row) if row else None

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def upsert(self, subscription: Subscription) -> None:
        """Insert or update by ``stripe_subscription_id``."""
        row = subscription.model_dump(mode="json", exclude={"id", "created_at"})
        row["updated_at"] = utc_now_iso()
        await self._execute(
            "upsert",
            lambda: self.table().upsert(row, on_conflict="stripe_subscription_id"),
        )
        logger.info(
            f"Upserted subscription {subscription.stripe_subscription_id} "
            f"for user {subscription.user_id}"
        )

    async def update_by_stripe_subscription_id(
        self,
        stripe_subscription_id: str,
        fields: dict[str, Any],
    ) -> None:
        values = {**fields, "updated_at": utc_now_iso()}
        await self._execute(
            "update",
            lambda: self.table()
            .update(values)
            .eq("stripe_subscription_id", stripe_subscription_id),
        )
