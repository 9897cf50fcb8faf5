"""
Test fixtures for ingestion layer.

IMPORTANT: All ledger calls must be mocked.
Never hit a real RPC endpoint in tests.
"""

from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from market_settler.ingestion.models import MarketCreatedEvent
from market_settler.ingestion.service import IngestionConfig, MarketIngestor
from market_settler.storage import Database, DatabaseConfig, MarketRepository


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    """Fresh SQLite database for each test."""
    database = Database(DatabaseConfig(path=str(tmp_path / "market_data.sqlite3")))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def repo(db: Database) -> MarketRepository:
    return MarketRepository(db)


# =============================================================================
# Ledger Fixtures
# =============================================================================


@pytest.fixture
def mock_ledger():
    """
    Mock ledger implementing LedgerReader and MarketEventSource.

    Defaults describe an open market with full metadata.
    """
    ledger = AsyncMock()
    ledger.get_end_time.return_value = 1_700_000_100
    ledger.get_question.return_value = "Will ETH close above $5000 on Friday?"
    ledger.is_settled.return_value = False
    ledger.winning_token.return_value = None
    ledger.latest_block.return_value = 1_000
    ledger.get_market_created_events.return_value = []
    return ledger


@pytest.fixture
def ingestor(repo: MarketRepository, mock_ledger) -> MarketIngestor:
    config = IngestionConfig(
        log_chunk_size=100,
        poll_interval_seconds=0.01,
        error_backoff_seconds=0.01,
        backfill_pause_seconds=0.0,
    )
    return MarketIngestor(repo, mock_ledger, mock_ledger, config, clock=lambda: 1_700_000_000)


# =============================================================================
# Event Fixtures
# =============================================================================


@pytest.fixture
def creator():
    return "0x1111111111111111111111111111111111111111"


@pytest.fixture
def sample_event(creator):
    """A market-created event for condition 0xaa..aa."""
    return MarketCreatedEvent(
        condition_id="0x" + "AA" * 32,
        creator=creator,
        block_number=950,
        tx_hash="0x" + "12" * 32,
    )
