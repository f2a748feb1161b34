"""
Payment History Repository

Append-only ledger of invoice payments, keyed by payment intent.
"""

import logging

from app.domain.subscription import PaymentRecord
from app.infrastructure.db.repositories.base_repository import SupabaseRepository


logger = logging.getLogger(__name__)


class PaymentRepository(SupabaseRepository):
    table_name = "payment_history"

    async def upsert(self, record: PaymentRecord) -> None:
        """Redelivery of the same invoice event rewrites the same row."""
        row = record.model_dump(mode="json")
        await self._execute(
            "upsert",
            lambda: self.table().upsert(row, on_conflict="stripe_payment_intent_id"),
        )
        logger.info(
            f"Recorded {record.status.value} payment {record.stripe_payment_intent_id} "
            f"for user {record.user_id}"
        )
