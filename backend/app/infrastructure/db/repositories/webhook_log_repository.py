"""
Stripe Webhook Log Repository

Audit trail of every verified Stripe delivery, one row per event id.
"""

from typing import Optional

from app.domain.subscription import WebhookLogEntry
from app.infrastructure.db.repositories.base_repository import SupabaseRepository


class WebhookLogRepository(SupabaseRepository):
    table_name = "stripe_webhooks_log"

    async def get(self, event_id: str) -> Optional[WebhookLogEntry]:
        row = await self._select_one(
            "select",
            lambda: self.table().select("*").eq("event_id", event_id).limit(1),
        )
        return WebhookLogEntry.model_validate(row) if row else None

    async def record(self, entry: WebhookLogEntry) -> None:
        """Write the entry; a retried delivery overwrites its earlier row."""
        row = entry.model_dump(mode="json")
        await self._execute(
            "upsert",
            lambda: self.table().upsert(row, on_conflict="event_id"),
        )
