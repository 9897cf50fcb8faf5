"""
Operations journal repository.

The journal is written ahead of every mutation of the markets table:
- begin() commits a pending row on its own
- complete() flips it inside the transaction that applies the mutation
- mark_failed() records the error when that transaction rolled back

A pending row therefore only survives a crash between begin() and the
mutation commit, which is what RecoveryManager replays.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import aiosqlite

from market_settler.storage.models import JournalEntry, JournalStatus
from market_settler.storage.repositories.base import BaseRepository


class JournalRepository(BaseRepository[JournalEntry]):
    """Repository for the operations_journal table."""

    table_name = "operations_journal"
    model_class = JournalEntry

    async def begin(
        self,
        operation: str,
        condition_id: Optional[str],
        payload: dict[str, Any],
    ) -> int:
        """Insert and commit a pending entry. Returns its id."""
        query = """
            INSERT INTO operations_journal (operation, condition_id, payload, status)
            VALUES (?, ?, ?, 'pending')
        """
        async with self.db.transaction() as conn:
            async with conn.execute(
                query, (operation, condition_id, json.dumps(payload, sort_keys=True))
            ) as cursor:
                return cursor.lastrowid

    async def complete(self, conn: aiosqlite.Connection, entry_id: int) -> None:
        """Mark an entry completed inside the caller's transaction."""
        await conn.execute(
            "UPDATE operations_journal SET status = 'completed', error = NULL WHERE id = ?",
            (entry_id,),
        )

    async def mark_failed(
        self,
        entry_id: int,
        error: str,
        conn: Optional[aiosqlite.Connection] = None,
    ) -> None:
        """Mark an entry failed with the error text."""
        query = "UPDATE operations_journal SET status = 'failed', error = ? WHERE id = ?"
        if conn is not None:
            await conn.execute(query, (error, entry_id))
        else:
            await self.db.execute(query, error, entry_id)

    async def get_pending(self) -> list[JournalEntry]:
        """Get pending entries in the order they were written."""
        query = "SELECT * FROM operations_journal WHERE status = 'pending' ORDER BY id"
        records = await self.db.fetch(query)
        return self._records_to_models(records)

    async def get_recent(self, limit: int = 50) -> list[JournalEntry]:
        """Get the most recent entries, newest first."""
        query = "SELECT * FROM operations_journal ORDER BY id DESC LIMIT ?"
        records = await self.db.fetch(query, limit)
        return self._records_to_models(records)

    async def get_for_market(self, condition_id: str) -> list[JournalEntry]:
        """Get all entries for one market, oldest first."""
        query = "SELECT * FROM operations_journal WHERE condition_id = ? ORDER BY id"
        records = await self.db.fetch(query, condition_id)
        return self._records_to_models(records)

    async def count_by_status(self) -> dict[JournalStatus, int]:
        """Count entries per status."""
        records = await self.db.fetch(
            "SELECT status, COUNT(*) AS n FROM operations_journal GROUP BY status"
        )
        counts = {status: 0 for status in JournalStatus}
        for record in records:
            counts[JournalStatus(record["status"])] = record["n"]
        return counts
