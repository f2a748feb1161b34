"""
Profile Repository

Data access for the ``profiles`` table. Rows are keyed by the Clerk
user id, not a generated UUID.
"""

import logging
from typing import Any, Optional

from app.domain.subscription import DELETED_USER_NAME, Profile
from app.infrastructure.db.repositories.base_repository import (
    SupabaseRepository,
    utc_now_iso,
)


logger = logging.getLogger(__name__)


class ProfileRepository(SupabaseRepository):
    """Repository for user profiles."""

    table_name = "profiles"

    async def get(self, user_id: str) -> Optional[Profile]:
        row = await self._select_one(
            "select",
            lambda: self.table().select("*").eq("id", user_id).limit(1),
        )
        return Profile.model_validate(row) if row else None

    async def get_by_email(self, email: str) -> Optional[Profile]:
        row = await self._select_one(
            "select",
            lambda: self.table().select("*").eq("email", email).limit(1),
        )
        return Profile.model_validate(row) if row else None

    async def insert_if_absent(self, profile: Profile) -> bool:
        """
        Insert a profile row unless one with the same id already exists.

        Returns True when a row was written. An existing row is left as is,
        so billing fields set since the first insert survive a replay.

        Raises:
            DuplicateError: if the email belongs to another profile
        """
        row = profile.model_dump(mode="json", exclude_none=True)
        row["updated_at"] = utc_now_iso()
        response = await self._execute(
            "upsert",
            lambda: self.table().upsert(row, on_conflict="id", ignore_duplicates=True),
        )
        return bool(response.data)

    async def update(self, user_id: str, fields: dict[str, Any]) -> None:
        """Plain update; ``updated_at`` is refreshed on every write."""
        values = {**fields, "updated_at": utc_now_iso()}
        await self._execute("update", lambda: self.table().update(values).eq("id", user_id))

    async def anonymize(self, user_id: str) -> None:
        """Scrub identifying fields; the row itself is kept."""
        await self.update(
            user_id,
            {
                "email": None,
                "full_name": DELETED_USER_NAME,
                "avatar_url": None,
            },
        )
        logger.info(f"Anonymized profile {user_id}")
