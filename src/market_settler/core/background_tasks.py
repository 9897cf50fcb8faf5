"""
BackgroundTasksManager - Manages the settler's periodic jobs.

Handles periodic tasks like:
- Settlement of eligible markets
- Metadata backfill (missing end times and questions)
- Database backups

Each job is serialized against itself by a JobGate: a run that fires while
the previous run of the same job is still in progress is skipped.
"""
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, Iterator, List, Optional

if TYPE_CHECKING:
    from market_settler.core.settlement import SettlementPipeline, SettlementResult
    from market_settler.ingestion.service import MarketIngestor
    from market_settler.storage.database import Database
    from market_settler.storage.repositories import MarketRepository

logger = logging.getLogger(__name__)

SETTLEMENT_JOB = "settlement"
BACKFILL_JOB = "metadata_backfill"
BACKUP_JOB = "database_backup"


class JobGate:
    """
    Single-slot, skip-if-busy gate keyed by job name.

    Usage:
        with gate.hold("settlement") as acquired:
            if not acquired:
                return None
            ...
    """

    def __init__(self) -> None:
        self._active: set[str] = set()

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._active)

    def is_busy(self, name: str) -> bool:
        return name in self._active

    @contextmanager
    def hold(self, name: str) -> Iterator[bool]:
        if name in self._active:
            yield False
            return
        self._active.add(name)
        try:
            yield True
        finally:
            self._active.discard(name)


@dataclass
class BackgroundTaskConfig:
    """Configuration for background tasks."""

    # Settlement
    settlement_interval_seconds: float = 60
    settlement_enabled: bool = True
    settlement_delay_seconds: int = 120  # After market end
    settlement_pause_seconds: float = 1.0  # Between markets
    max_retries: int = 3

    # Metadata backfill
    backfill_interval_seconds: float = 120
    backfill_enabled: bool = True
    backfill_batch_size: int = 50
    backfill_pause_seconds: float = 0.2  # Between ledger calls

    # Database backup (0 disables)
    backup_interval_hours: float = 6

    # First runs after startup
    settlement_initial_delay_seconds: float = 5
    backfill_initial_delay_seconds: float = 2


class BackgroundTasksManager:
    """
    Manages background async tasks for the settler.

    Tasks run in the background; an exception in one iteration is logged
    and the job runs again on its next interval. The manager handles
    graceful shutdown.

    Usage:
        manager = BackgroundTasksManager(
            repo=market_repo,
            pipeline=settlement_pipeline,
            ingestor=ingestor,
            db=database,
            config=BackgroundTaskConfig(),
        )
        await manager.start()
        # ... settler runs ...
        await manager.stop()
    """

    def __init__(
        self,
        repo: "MarketRepository",
        pipeline: "SettlementPipeline",
        ingestor: Optional["MarketIngestor"] = None,
        db: Optional["Database"] = None,
        config: Optional[BackgroundTaskConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the background tasks manager.

        Args:
            repo: MarketRepository for eligibility queries
            pipeline: SettlementPipeline run for each eligible market
            ingestor: MarketIngestor used by the metadata backfill job
            db: Database to back up
            config: Task configuration
            clock: Returns the current epoch time in seconds
        """
        self._repo = repo
        self._pipeline = pipeline
        self._ingestor = ingestor
        self._db = db
        self._config = config or BackgroundTaskConfig()
        self._clock = clock

        self._gate = JobGate()
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        """Whether the manager is running."""
        return self._running

    @property
    def gate(self) -> JobGate:
        return self._gate

    async def start(self) -> None:
        """Start all background tasks."""
        if self._running:
            logger.warning("BackgroundTasksManager already running")
            return

        logger.info("Starting background tasks...")
        self._running = True
        self._stop_event.clear()

        if self._config.settlement_enabled:
            self._spawn(
                SETTLEMENT_JOB,
                self.run_settlement_once,
                self._config.settlement_interval_seconds,
                self._config.settlement_initial_delay_seconds,
            )

        if self._config.backfill_enabled and self._ingestor:
            self._spawn(
                BACKFILL_JOB,
                self.run_backfill_once,
                self._config.backfill_interval_seconds,
                self._config.backfill_initial_delay_seconds,
            )

        if self._config.backup_interval_hours > 0 and self._db:
            interval = self._config.backup_interval_hours * 3600
            self._spawn(BACKUP_JOB, self.run_backup_once, interval, interval)

        logger.info(f"Background tasks started: {len(self._tasks)} tasks")

    def _spawn(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval: float,
        initial_delay: float,
    ) -> None:
        task = asyncio.create_task(self._run_periodic(name, job, interval, initial_delay), name=name)
        self._tasks.append(task)
        logger.info(f"Started {name} task (interval={interval}s, first run in {initial_delay}s)")

    async def stop(self) -> None:
        """Stop all background tasks gracefully."""
        if not self._running:
            return

        logger.info("Stopping background tasks...")
        self._running = False
        self._stop_event.set()

        for task in self._tasks:
            if not task.done():
                task.cancel()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._tasks.clear()
        logger.info("Background tasks stopped")

    async def _wait(self, timeout: float) -> bool:
        """Wait for timeout or stop. Returns True if stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_periodic(
        self,
        name: str,
        job: Callable[[], Awaitable[object]],
        interval: float,
        initial_delay: float,
    ) -> None:
        delay = initial_delay

        while self._running:
            try:
                if await self._wait(delay):
                    break  # Stop requested
                delay = interval

                if not self._running:
                    break

                await job()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in {name} job: {e}")
                await asyncio.sleep(5)

    # =========================================================================
    # Jobs
    # =========================================================================

    async def run_settlement_once(self) -> Optional[List["SettlementResult"]]:
        """
        Settle all currently eligible markets, one at a time.

        Returns the results, or None if a settlement run was already in
        progress. Storage errors abort the run and propagate.
        """
        with self._gate.hold(SETTLEMENT_JOB) as acquired:
            if not acquired:
                logger.warning("Market processing already in progress. Skipping this run.")
                return None

            logger.info("Starting market processing job...")
            try:
                await self._log_status_summary()

                markets = await self._repo.get_eligible(
                    int(self._clock()),
                    self._config.settlement_delay_seconds,
                    self._config.max_retries,
                )
                logger.info(f"Found {len(markets)} markets due for processing")

                results = []
                for i, market in enumerate(markets):
                    if i > 0 and self._config.settlement_pause_seconds:
                        await asyncio.sleep(self._config.settlement_pause_seconds)
                    result = await self._pipeline.settle(market)
                    results.append(result)
                return results
            finally:
                logger.info("Market processing job finished")

    async def run_backfill_once(self) -> Optional[int]:
        """
        Fetch missing metadata for the oldest incomplete markets.

        Returns the number of markets updated, or None if skipped.
        """
        if self._ingestor is None:
            return 0

        with self._gate.hold(BACKFILL_JOB) as acquired:
            if not acquired:
                logger.warning("Metadata backfill already in progress. Skipping.")
                return None

            updated = await self._ingestor.backfill_metadata(
                limit=self._config.backfill_batch_size,
                pause=self._config.backfill_pause_seconds,
            )
            if updated:
                logger.info(f"Metadata backfill: {updated} markets updated")
            return updated

    async def run_backup_once(self) -> Optional[Path]:
        """Write a database backup. Returns its path, or None if skipped."""
        if self._db is None:
            return None

        with self._gate.hold(BACKUP_JOB) as acquired:
            if not acquired:
                logger.warning("Database backup already in progress. Skipping.")
                return None
            return await self._db.backup()

    async def _log_status_summary(self) -> None:
        counts = await self._repo.count_by_status()
        summary = ", ".join(f"{status.value}={n}" for status, n in counts.items())
        logger.info(f"Markets by status: {summary}")

        exhausted = await self._repo.get_exhausted()
        for market in exhausted:
            logger.warning(
                f"Exhausted market {market.condition_id} "
                f"(retries={market.retry_count}) needs manual reset"
            )
