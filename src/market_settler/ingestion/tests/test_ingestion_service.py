"""
Tests for MarketIngestor.

Storage is a real temporary SQLite database; the ledger is an AsyncMock.
"""

import asyncio

import pytest

from market_settler.ingestion.ledger import LedgerError
from market_settler.ingestion.models import MarketCreatedEvent
from market_settler.ingestion.service import MarketIngestor
from market_settler.storage import MarketRepository, MarketStatus

CID = "0x" + "aa" * 32


@pytest.mark.asyncio
class TestApplyEvent:
    """Tests for apply_event()."""

    async def test_new_market_gets_metadata(self, ingestor: MarketIngestor, sample_event, mock_ledger):
        """A new market is stored with end time and question from the ledger."""
        market = await ingestor.apply_event(sample_event)

        assert market.condition_id == CID
        assert market.creator == sample_event.creator
        assert market.end_time == 1_700_000_100
        assert market.end_time_known is True
        assert market.question == "Will ETH close above $5000 on Friday?"
        assert market.processed_for_settlement is False
        mock_ledger.is_settled.assert_awaited_once_with(CID)

    async def test_reingest_is_idempotent(
        self, ingestor: MarketIngestor, repo: MarketRepository, sample_event, mock_ledger
    ):
        """The same event twice leaves one unchanged record and skips metadata reads."""
        first = await ingestor.apply_event(sample_event)
        second = await ingestor.apply_event(sample_event)

        assert second == first
        assert await repo.count() == 1
        assert mock_ledger.get_end_time.await_count == 1
        assert mock_ledger.get_question.await_count == 1

    async def test_zero_end_time_ignored(self, ingestor: MarketIngestor, sample_event, mock_ledger):
        mock_ledger.get_end_time.return_value = 0

        market = await ingestor.apply_event(sample_event)

        assert market.end_time_known is False
        assert market.end_time is None

    async def test_empty_question_ignored(self, ingestor: MarketIngestor, sample_event, mock_ledger):
        mock_ledger.get_question.return_value = "   "

        market = await ingestor.apply_event(sample_event)

        assert market.question is None
        assert market.missing_metadata is True

    async def test_ledger_read_failure_leaves_gap(
        self, ingestor: MarketIngestor, sample_event, mock_ledger
    ):
        """Metadata errors are logged; the market is still recorded."""
        mock_ledger.get_end_time.side_effect = LedgerError("rpc down")

        market = await ingestor.apply_event(sample_event)

        assert market is not None
        assert market.end_time_known is False
        assert market.question is not None

    async def test_presettled_market_recorded(
        self, ingestor: MarketIngestor, sample_event, mock_ledger
    ):
        """A market already settled on the ledger is marked processed with its token."""
        mock_ledger.is_settled.return_value = True
        mock_ledger.winning_token.return_value = "42"

        market = await ingestor.apply_event(sample_event)

        assert market.settled_on_ledger is True
        assert market.processed_for_settlement is True
        assert market.winning_token == "42"
        assert market.settlement_status == MarketStatus.SETTLED
        assert market.last_ledger_check == 1_700_000_000

    async def test_presettled_token_failure_still_processed(
        self, ingestor: MarketIngestor, sample_event, mock_ledger
    ):
        mock_ledger.is_settled.return_value = True
        mock_ledger.winning_token.side_effect = LedgerError("no getter")

        market = await ingestor.apply_event(sample_event)

        assert market.processed_for_settlement is True
        assert market.winning_token is None

    async def test_processed_market_not_rechecked(
        self, ingestor: MarketIngestor, sample_event, mock_ledger
    ):
        mock_ledger.is_settled.return_value = True
        await ingestor.apply_event(sample_event)
        mock_ledger.is_settled.reset_mock()

        await ingestor.apply_event(sample_event)

        mock_ledger.is_settled.assert_not_awaited()


@pytest.mark.asyncio
class TestOnLive:
    """Tests for on_live()."""

    async def test_applies_event(self, ingestor: MarketIngestor, repo: MarketRepository, sample_event):
        await ingestor.on_live(sample_event)

        assert await repo.get(CID) is not None
        assert ingestor.events_applied == 1

    async def test_unexpected_error_swallowed(
        self, ingestor: MarketIngestor, sample_event, mock_ledger
    ):
        mock_ledger.is_settled.side_effect = RuntimeError("decoder exploded")

        await ingestor.on_live(sample_event)

        assert ingestor.events_applied == 0


@pytest.mark.asyncio
class TestSyncHistorical:
    """Tests for sync_historical()."""

    async def test_reads_in_chunks(self, ingestor: MarketIngestor, mock_ledger):
        """Range 0..250 with chunk size 100 is read as three queries."""
        await ingestor.sync_historical(0, 250)

        ranges = [call.args for call in mock_ledger.get_market_created_events.await_args_list]
        assert ranges == [(0, 99), (100, 199), (200, 250)]

    async def test_defaults_to_chain_head(self, ingestor: MarketIngestor, mock_ledger):
        last = await ingestor.sync_historical(990)

        assert last == 1_000
        assert ingestor.next_block == 1_001

    async def test_applies_events(
        self, ingestor: MarketIngestor, repo: MarketRepository, mock_ledger, creator
    ):
        events = [
            MarketCreatedEvent(condition_id="0x" + f"{i:02x}" * 32, creator=creator, block_number=5)
            for i in range(3)
        ]
        mock_ledger.get_market_created_events.return_value = events

        await ingestor.sync_historical(0, 50)

        assert await repo.count() == 3

    async def test_empty_range(self, ingestor: MarketIngestor, mock_ledger):
        assert await ingestor.sync_historical(10, 5) == 9
        mock_ledger.get_market_created_events.assert_not_awaited()


@pytest.mark.asyncio
class TestBackfill:
    """Tests for backfill_metadata()."""

    async def test_fills_missing_metadata(
        self, ingestor: MarketIngestor, repo: MarketRepository, mock_ledger, creator
    ):
        await repo.upsert(CID, creator)

        updated = await ingestor.backfill_metadata()

        assert updated == 1
        market = await repo.get(CID)
        assert market.end_time_known is True
        assert market.question is not None

    async def test_respects_limit(
        self, ingestor: MarketIngestor, repo: MarketRepository, mock_ledger, creator
    ):
        for i in range(3):
            await repo.upsert("0x" + f"{i:02x}" * 32, creator)

        await ingestor.backfill_metadata(limit=2)

        assert mock_ledger.get_end_time.await_count == 2

    async def test_nothing_missing(self, ingestor: MarketIngestor, mock_ledger):
        assert await ingestor.backfill_metadata() == 0
        mock_ledger.get_end_time.assert_not_awaited()


@pytest.mark.asyncio
class TestLiveFeed:
    """Tests for the polling live feed."""

    async def test_poll_once_reads_new_blocks(self, ingestor: MarketIngestor, mock_ledger, sample_event):
        await ingestor.start(from_block=990)
        await ingestor.stop()
        mock_ledger.get_market_created_events.return_value = [sample_event]

        count = await ingestor.poll_once()

        assert count == 1
        mock_ledger.get_market_created_events.assert_awaited_with(990, 1_000)
        assert ingestor.next_block == 1_001

    async def test_poll_once_no_new_blocks(self, ingestor: MarketIngestor, mock_ledger):
        await ingestor.start(from_block=1_001)
        await ingestor.stop()

        assert await ingestor.poll_once() == 0
        mock_ledger.get_market_created_events.assert_not_awaited()

    async def test_start_stop(self, ingestor: MarketIngestor, repo: MarketRepository, mock_ledger, sample_event):
        """The running feed picks up events and stops cleanly."""
        mock_ledger.get_market_created_events.return_value = [sample_event]

        await ingestor.start(from_block=1_000)
        assert ingestor.is_running
        for _ in range(100):
            if await repo.get(CID) is not None:
                break
            await asyncio.sleep(0.01)
        await ingestor.stop()

        assert not ingestor.is_running
        assert await repo.get(CID) is not None

    async def test_poll_error_does_not_stop_feed(self, ingestor: MarketIngestor, mock_ledger):
        calls = []

        async def flaky_head():
            calls.append(1)
            if len(calls) == 1:
                raise LedgerError("timeout")
            return 1_000

        mock_ledger.latest_block.side_effect = flaky_head

        await ingestor.start(from_block=1_001)
        await asyncio.sleep(0.1)

        assert ingestor.is_running
        assert len(calls) >= 2
        await ingestor.stop()
