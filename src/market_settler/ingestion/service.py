"""
Market ingestion service.

Turns PNP_MarketCreated events into market records:
    - Historical sync over a block range, in chunks
    - Live feed that polls new logs from the chain head
    - Metadata backfill for markets whose end time or question is missing

Ledger read failures are logged and left for the backfill job.
Storage errors always propagate.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import aiosqlite

from market_settler.storage.models import Market
from market_settler.storage.repositories import MarketRepository

from .ledger import LedgerError, LedgerReader, MarketEventSource
from .models import MarketCreatedEvent

logger = logging.getLogger(__name__)


@dataclass
class IngestionConfig:
    """Configuration for the ingestion service."""

    # Historical sync
    log_chunk_size: int = 5000

    # Live feed
    poll_interval_seconds: float = 15.0
    error_backoff_seconds: float = 5.0

    # Backfill
    backfill_batch_size: int = 50
    backfill_pause_seconds: float = 0.2


class MarketIngestor:
    """
    Applies market-created events to the store.

    Usage:
        ingestor = MarketIngestor(repo, ledger, ledger)
        await ingestor.sync_historical(start_block)
        await ingestor.start()      # live feed
        ...
        await ingestor.stop()
    """

    def __init__(
        self,
        repo: MarketRepository,
        reader: LedgerReader,
        event_source: MarketEventSource,
        config: Optional[IngestionConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo = repo
        self.reader = reader
        self.event_source = event_source
        self.config = config or IngestionConfig()
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._next_block: Optional[int] = None

        self.events_applied = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def next_block(self) -> Optional[int]:
        """First block the live feed will read next."""
        return self._next_block

    # =========================================================================
    # Event application
    # =========================================================================

    async def apply_event(self, event: MarketCreatedEvent) -> Optional[Market]:
        """
        Record one market-created event.

        Upserts the market, fetches metadata if the market is new or
        incomplete, and records a settlement that already happened on the
        ledger. Returns the stored market.
        """
        cid = event.condition_id
        existing = await self.repo.get(cid)
        await self.repo.upsert(cid, event.creator)

        if existing is None:
            logger.info(
                f"New market {cid} by {event.creator}"
                + (f" (block {event.block_number})" if event.block_number is not None else "")
            )

        market = await self.repo.get(cid)
        if market.missing_metadata:
            await self.fetch_metadata(market)

        if not market.processed_for_settlement:
            await self._record_if_presettled(cid)

        return await self.repo.get(cid)

    async def on_live(self, event: MarketCreatedEvent) -> None:
        """Apply an event from the live feed, logging anything but storage errors."""
        try:
            await self.apply_event(event)
            self.events_applied += 1
        except aiosqlite.Error:
            raise
        except Exception as e:
            logger.error(f"Error processing PNP_MarketCreated for {event.condition_id}: {e}")

    async def fetch_metadata(self, market: Market, pause: float = 0.0) -> bool:
        """
        Fetch whichever of end time and question is missing.

        End time 0 and empty questions are treated as not available yet.
        Returns True if anything was stored.
        """
        cid = market.condition_id
        stored = False

        if not market.end_time_known:
            try:
                end_time = await self.reader.get_end_time(cid)
                if end_time > 0:
                    await self.repo.set_end_time(cid, end_time)
                    logger.info(f"Market end time stored for {cid}: {end_time}")
                    stored = True
                else:
                    logger.warning(f"Market end time for {cid} is 0, will retry later")
            except LedgerError as e:
                logger.error(f"Error fetching market end time for {cid}: {e}")
            if pause and not market.question:
                await asyncio.sleep(pause)

        if not market.question:
            try:
                question = await self.reader.get_question(cid)
                if question and question.strip():
                    await self.repo.set_question(cid, question)
                    logger.info(f"Market question stored for {cid} ({len(question)} chars)")
                    stored = True
                else:
                    logger.warning(f"Market question for {cid} is empty, will retry later")
            except LedgerError as e:
                logger.error(f"Error fetching market question for {cid}: {e}")

        return stored

    async def _record_if_presettled(self, condition_id: str) -> bool:
        try:
            settled = await self.reader.is_settled(condition_id)
        except LedgerError as e:
            logger.error(f"Error checking settlement status of {condition_id}: {e}")
            return False

        if not settled:
            return False

        logger.info(f"Market {condition_id} already settled on-chain, skipping settlement")
        await self.repo.record_settlement(condition_id, checked_at=int(self._clock()))

        try:
            token = await self.reader.winning_token(condition_id)
        except LedgerError as e:
            logger.warning(f"Market {condition_id} is settled but winningTokenId is unavailable: {e}")
            return True

        if token is not None:
            await self.repo.set_winning_token(condition_id, token)
            logger.info(f"Stored winning token {token} for pre-settled market {condition_id}")
        return True

    # =========================================================================
    # Historical sync
    # =========================================================================

    async def sync_historical(self, from_block: int, to_block: Optional[int] = None) -> int:
        """
        Apply all events in [from_block, to_block] (default: chain head).

        Reads logs in chunks of log_chunk_size blocks. Returns the last block
        processed. Log query failures propagate.
        """
        if to_block is None:
            to_block = await self.event_source.latest_block()

        if from_block > to_block:
            return from_block - 1

        logger.info(f"Syncing PNP_MarketCreated events from block {from_block} to {to_block}")
        chunk = max(1, self.config.log_chunk_size)
        total = 0

        start = from_block
        while start <= to_block:
            end = min(start + chunk - 1, to_block)
            events = await self.event_source.get_market_created_events(start, end)
            for event in events:
                await self.apply_event(event)
            total += len(events)
            start = end + 1

        logger.info(f"Historical sync complete: {total} events up to block {to_block}")
        if self._next_block is None or self._next_block <= to_block:
            self._next_block = to_block + 1
        return to_block

    # =========================================================================
    # Metadata backfill
    # =========================================================================

    async def backfill_metadata(
        self,
        limit: Optional[int] = None,
        pause: Optional[float] = None,
    ) -> int:
        """
        Fetch missing metadata for the oldest incomplete markets.

        Returns the number of markets that received new data.
        """
        limit = self.config.backfill_batch_size if limit is None else limit
        pause = self.config.backfill_pause_seconds if pause is None else pause

        markets = await self.repo.get_missing_metadata(limit)
        if not markets:
            return 0

        logger.info(f"Found {len(markets)} markets missing metadata. Fetching...")
        updated = 0
        for i, market in enumerate(markets):
            if i > 0 and pause:
                await asyncio.sleep(pause)
            if await self.fetch_metadata(market, pause=pause):
                updated += 1
        return updated

    # =========================================================================
    # Live feed
    # =========================================================================

    async def start(self, from_block: Optional[int] = None) -> None:
        """Start polling for new events."""
        if self.is_running:
            return

        if from_block is not None:
            self._next_block = from_block
        elif self._next_block is None:
            self._next_block = await self.event_source.latest_block() + 1

        self._stop_event.clear()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Listening for PNP_MarketCreated events from block {self._next_block}")

    async def stop(self) -> None:
        """Stop the live feed."""
        if self._task is None:
            return

        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Live event feed stopped")

    async def poll_once(self) -> int:
        """Read and apply events from the next block to the chain head."""
        head = await self.event_source.latest_block()
        if self._next_block is None:
            self._next_block = head + 1
            return 0
        if head < self._next_block:
            return 0

        chunk = max(1, self.config.log_chunk_size)
        count = 0
        start = self._next_block
        while start <= head:
            end = min(start + chunk - 1, head)
            events = await self.event_source.get_market_created_events(start, end)
            for event in events:
                await self.on_live(event)
            count += len(events)
            # Advance per chunk so a failure does not re-read applied chunks
            self._next_block = end + 1
            start = end + 1
        return count

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Live event feed error: {e}")
                await asyncio.sleep(self.config.error_backoff_seconds)
