"""
Market repository.

All writes go through _apply(), which journals the operation ahead of the
mutation (see JournalRepository). Storage errors propagate to the caller
unchanged and are never retried here.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from market_settler.storage.database import Database
from market_settler.storage.models import Market, MarketStatus
from market_settler.storage.mutations import apply_mutation
from market_settler.storage.repositories.base import BaseRepository
from market_settler.storage.repositories.journal_repo import JournalRepository

logger = logging.getLogger(__name__)


class MarketRepository(BaseRepository[Market]):
    """Repository for the markets table."""

    table_name = "markets"
    model_class = Market

    def __init__(self, db: Database, journal: Optional[JournalRepository] = None) -> None:
        super().__init__(db)
        self.journal = journal or JournalRepository(db)

    async def _apply(self, operation: str, condition_id: str, payload: dict[str, Any]) -> int:
        entry_id = await self.journal.begin(operation, condition_id, payload)
        try:
            async with self.db.transaction() as conn:
                changed = await apply_mutation(conn, operation, condition_id, payload)
                await self.journal.complete(conn, entry_id)
        except Exception as e:
            logger.error(f"{operation} failed for {condition_id}: {e}")
            await self.journal.mark_failed(entry_id, str(e))
            raise
        return changed

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def upsert(self, condition_id: str, creator: str) -> bool:
        """Insert a market or update its creator. Returns True if a row changed."""
        return await self._apply("upsert", condition_id, {"creator": creator}) > 0

    async def set_end_time(self, condition_id: str, end_time: int) -> bool:
        """Store the end time (epoch seconds) and mark it known."""
        return await self._apply("set_end_time", condition_id, {"end_time": int(end_time)}) > 0

    async def set_question(self, condition_id: str, question: str) -> bool:
        return await self._apply("set_question", condition_id, {"question": question}) > 0

    async def mark_processed(self, condition_id: str) -> bool:
        """
        Mark a market processed for settlement.

        No-op unless the market is settled on the ledger or has a
        recorded winning token. Returns True if the flag was set.
        """
        return await self._apply("mark_processed", condition_id, {}) > 0

    async def set_ledger_status(self, condition_id: str, settled: bool, checked_at: int) -> bool:
        payload = {"settled": bool(settled), "checked_at": int(checked_at)}
        return await self._apply("set_ledger_status", condition_id, payload) > 0

    async def set_winning_token(self, condition_id: str, token: str) -> bool:
        return await self._apply("set_winning_token", condition_id, {"winning_token": str(token)}) > 0

    async def increment_retry(self, condition_id: str, max_retries: int) -> Optional[Market]:
        """
        Record a failed settlement attempt.

        The market becomes exhausted once retry_count reaches max_retries.
        Returns the updated market.
        """
        await self._apply("increment_retry", condition_id, {"max_retries": int(max_retries)})
        return await self.get(condition_id)

    async def reset_retry(self, condition_id: str) -> bool:
        """Administrative reset: retry_count, processed flag and status."""
        return await self._apply("reset_retry", condition_id, {}) > 0

    async def sync_retry_status(self, max_retries: int) -> int:
        """
        Bring settlement_status in line with a (possibly changed) retry ceiling.

        Unprocessed markets at or over max_retries become exhausted, those
        under it become pending again. Each change is journaled separately.
        Returns the number of markets whose status changed.
        """
        query = """
            SELECT condition_id FROM markets
            WHERE processed_for_settlement = 0
              AND ((settlement_status = 'pending' AND retry_count >= ?)
                OR (settlement_status = 'exhausted' AND retry_count < ?))
            ORDER BY condition_id
        """
        records = await self.db.fetch(query, int(max_retries), int(max_retries))

        changed = 0
        for record in records:
            changed += await self._apply(
                "sync_retry_status", record["condition_id"], {"max_retries": int(max_retries)}
            )
        if changed:
            logger.info(f"Re-derived settlement status for {changed} market(s) at max_retries={max_retries}")
        return changed

    async def record_decision(self, condition_id: str, outcome: str, reasoning: Optional[str]) -> bool:
        payload = {"outcome": outcome, "reasoning": reasoning}
        return await self._apply("record_decision", condition_id, payload) > 0

    async def record_settlement(
        self,
        condition_id: str,
        winning_token: Optional[str] = None,
        checked_at: Optional[int] = None,
    ) -> bool:
        """Mark settled on the ledger and processed in one write."""
        payload = {
            "winning_token": None if winning_token is None else str(winning_token),
            "checked_at": checked_at,
        }
        return await self._apply("record_settlement", condition_id, payload) > 0

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, condition_id: str) -> Optional[Market]:
        return await self.get_by_id(condition_id, id_column="condition_id")

    async def get_eligible(
        self,
        now: int,
        settlement_delay: int,
        max_retries: int,
    ) -> list[Market]:
        """Get markets ready for settlement, earliest end time first."""
        query = """
            SELECT * FROM markets
            WHERE end_time_known = 1
              AND end_time IS NOT NULL
              AND end_time + ? < ?
              AND processed_for_settlement = 0
              AND settled_on_ledger = 0
              AND retry_count < ?
              AND settlement_status = 'pending'
            ORDER BY end_time ASC, condition_id ASC
        """
        records = await self.db.fetch(query, int(settlement_delay), int(now), int(max_retries))
        return self._records_to_models(records)

    async def get_missing_metadata(self, limit: int = 50) -> list[Market]:
        """Get markets without a known end time or question, oldest first."""
        query = """
            SELECT * FROM markets
            WHERE end_time_known = 0 OR question IS NULL OR question = ''
            ORDER BY created_at ASC, condition_id ASC
            LIMIT ?
        """
        records = await self.db.fetch(query, int(limit))
        return self._records_to_models(records)

    async def get_all(self) -> list[Market]:
        """Get all markets by end time, unknown end times last."""
        query = """
            SELECT * FROM markets
            ORDER BY end_time IS NULL, end_time ASC, condition_id ASC
        """
        records = await self.db.fetch(query)
        return self._records_to_models(records)

    async def get_exhausted(self) -> list[Market]:
        query = "SELECT * FROM markets WHERE settlement_status = 'exhausted' ORDER BY end_time"
        records = await self.db.fetch(query)
        return self._records_to_models(records)

    async def count_by_status(self) -> dict[MarketStatus, int]:
        records = await self.db.fetch(
            "SELECT settlement_status, COUNT(*) AS n FROM markets GROUP BY settlement_status"
        )
        counts = {status: 0 for status in MarketStatus}
        for record in records:
            counts[MarketStatus(record["settlement_status"])] = record["n"]
        return counts
