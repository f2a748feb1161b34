"""
Storage Location Repository
"""

from app.domain.subscription import DEFAULT_STORAGE_LOCATIONS, StorageLocation
from app.infrastructure.db.repositories.base_repository import SupabaseRepository


class StorageLocationRepository(SupabaseRepository):
    table_name = "storage_locations"

    async def create_defaults(self, user_id: str) -> list[StorageLocation]:
        """Give a new user the Pantry / Refrigerator / Freezer starter set."""
        locations = [
            StorageLocation(user_id=user_id, name=name, icon=icon)
            for name, icon in DEFAULT_STORAGE_LOCATIONS
        ]
        rows = [location.model_dump() for location in locations]
        await self._execute("insert", lambda: self.table().insert(rows))
        return locations
