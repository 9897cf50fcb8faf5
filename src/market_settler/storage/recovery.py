"""
Startup recovery of the operations journal.

Replays every pending journal entry through the shared mutation table.
Must run before any other component writes to the store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from market_settler.storage.database import Database
from market_settler.storage.mutations import apply_mutation
from market_settler.storage.repositories.journal_repo import JournalRepository

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    """Outcome of one recovery pass."""

    scanned: int = 0
    replayed: int = 0
    failed: int = 0


class RecoveryManager:
    """
    Replays pending journal entries.

    Each entry is re-applied and marked completed in one transaction,
    without writing a new journal row. Entries whose replay raises are
    marked failed and never retried. Completed and failed entries are
    left untouched.
    """

    def __init__(self, db: Database, journal: JournalRepository | None = None) -> None:
        self.db = db
        self.journal = journal or JournalRepository(db)

    async def recover(self) -> RecoveryReport:
        report = RecoveryReport()
        pending = await self.journal.get_pending()
        report.scanned = len(pending)

        if not pending:
            logger.info("Recovery: no pending journal entries")
            return report

        logger.warning(f"Recovery: replaying {len(pending)} pending journal entries")

        for entry in pending:
            try:
                async with self.db.transaction() as conn:
                    await apply_mutation(conn, entry.operation, entry.condition_id, entry.payload)
                    await self.journal.complete(conn, entry.id)
                report.replayed += 1
                logger.info(
                    f"Recovery: replayed #{entry.id} {entry.operation} for {entry.condition_id}"
                )
            except Exception as e:
                await self.journal.mark_failed(entry.id, f"replay failed: {e}")
                report.failed += 1
                logger.error(f"Recovery: entry #{entry.id} ({entry.operation}) failed: {e}")

        logger.info(
            f"Recovery complete: scanned={report.scanned} "
            f"replayed={report.replayed} failed={report.failed}"
        )
        return report
