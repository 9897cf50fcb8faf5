"""
Base repository class for async SQLite access.
"""
from __future__ import annotations

from typing import Generic, Optional, Type, TypeVar

from pydantic import BaseModel

from market_settler.storage.database import Database

T = TypeVar("T", bound=BaseModel)


class BaseRepository(Generic[T]):
    """
    Base class for async repositories.

    Provides common read patterns.
    Subclasses define table name and model type.
    """

    table_name: str
    model_class: Type[T]

    def __init__(self, db: Database) -> None:
        self.db = db

    def _record_to_model(self, record) -> Optional[T]:
        """Convert aiosqlite Row to Pydantic model."""
        if record is None:
            return None
        return self.model_class(**dict(record))

    def _records_to_models(self, records) -> list[T]:
        """Convert list of Rows to list of models."""
        return [self._record_to_model(r) for r in records]

    async def get_by_id(self, id_value, id_column: str = "id") -> Optional[T]:
        """Get a single record by ID."""
        query = f"SELECT * FROM {self.table_name} WHERE {id_column} = ?"
        record = await self.db.fetchrow(query, id_value)
        return self._record_to_model(record)

    async def count(self) -> int:
        """Count all records in table."""
        query = f"SELECT COUNT(*) FROM {self.table_name}"
        return await self.db.fetchval(query)
