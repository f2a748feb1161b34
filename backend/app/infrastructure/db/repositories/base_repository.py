"""
Base Repository for Meal Saver

Shared plumbing for the Supabase-backed repositories:
- blocking PostgREST calls run in a worker thread
- PostgREST errors are translated into the app's exception hierarchy
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from postgrest.exceptions import APIError
from supabase import Client

from app.infrastructure.exceptions import DatabaseError, DuplicateError


logger = logging.getLogger(__name__)

# Postgres SQLSTATE for unique_violation
UNIQUE_VIOLATION = "23505"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseRepository:
    """
    Base class for table repositories.

    Subclasses set ``table_name`` and build queries against ``self.table``.
    Every query goes through ``_execute`` so error handling is uniform.
    """

    table_name: str = ""

    def __init__(self, client: Client):
        self._client = client

    @property
    def client(self) -> Client:
        return self._client

    def table(self):
        return self._client.table(self.table_name)

    async def _execute(
        self,
        operation: str,
        build_query: Callable[[], Any],
    ) -> Any:
        """
        Run ``build_query().execute()`` in a thread.

        Raises:
            DuplicateError: on a unique constraint violation
            DatabaseError: on any other PostgREST failure
        """
        try:
            return await asyncio.to_thread(lambda: build_query().execute())
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicateError(
                    e.message or "Duplicate record",
                    operation=operation,
                    table=self.table_name,
                    original_error=e,
                )
            raise DatabaseError(
                e.message or f"{operation} on {self.table_name} failed",
                operation=operation,
                table=self.table_name,
                original_error=e,
            )

    async def _select_one(
        self,
        operation: str,
        build_query: Callable[[], Any],
    ) -> Optional[dict[str, Any]]:
        """Return the first row of a select, or None."""
        response = await self._execute(operation, build_query)
        rows = response.data or []
        return rows[0] if rows else None
