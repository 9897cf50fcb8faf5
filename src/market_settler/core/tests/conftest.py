"""
Core layer test fixtures.

Core tests verify orchestration logic against a real temporary SQLite
store, with the ledger, oracle and audit sink mocked.
"""
from typing import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from market_settler.core.oracle import OracleAnswer
from market_settler.core.settlement import SettlementConfig, SettlementPipeline
from market_settler.ingestion.ledger import SettlementReceipt
from market_settler.storage import Database, DatabaseConfig, MarketRepository


# =============================================================================
# Time
# =============================================================================


@pytest.fixture
def now() -> int:
    return 1_700_000_000


@pytest.fixture
def clock(now):
    """Mutable clock: set clock.now to move time."""
    class Clock:
        def __init__(self, value):
            self.now = value

        def __call__(self):
            return self.now

    return Clock(now)


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    database = Database(DatabaseConfig(path=str(tmp_path / "market_data.sqlite3")))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def repo(db: Database) -> MarketRepository:
    return MarketRepository(db)


@pytest.fixture
def condition_id() -> str:
    return "0x" + "aa" * 32


@pytest.fixture
def creator() -> str:
    return "0x1111111111111111111111111111111111111111"


@pytest.fixture
def make_market(repo: MarketRepository, creator, now):
    """Create a market that ended long enough ago to be eligible."""
    async def _make(condition_id, end_time=None, question="Will it rain in Paris on 1 May?"):
        await repo.upsert(condition_id, creator)
        await repo.set_end_time(condition_id, end_time if end_time is not None else now - 1_000)
        if question:
            await repo.set_question(condition_id, question)
        return await repo.get(condition_id)

    return _make


# =============================================================================
# Collaborator Mocks
# =============================================================================


@pytest.fixture
def mock_ledger():
    """Mock LedgerReader + LedgerWriter for an open YES/NO market."""
    ledger = AsyncMock()
    ledger.is_settled.return_value = False
    ledger.get_question.return_value = "Will it rain in Paris on 1 May?"
    ledger.winning_token.return_value = None

    async def outcome_token(condition_id, outcome):
        return {"YES": "41", "NO": "42"}[outcome]

    ledger.outcome_token.side_effect = outcome_token
    ledger.settle.return_value = SettlementReceipt(
        tx_hash="0x" + "ab" * 32, block_number=1234, settler="0x2222222222222222222222222222222222222222"
    )
    return ledger


@pytest.fixture
def mock_oracle():
    oracle = AsyncMock()
    oracle.ask.return_value = OracleAnswer(answer="NO", reasoning="It did not rain.")
    return oracle


@pytest.fixture
def mock_audit():
    audit = AsyncMock()
    audit.record.return_value = True
    return audit


@pytest.fixture
def settlement_config() -> SettlementConfig:
    return SettlementConfig(max_retries=3)


@pytest.fixture
def pipeline(repo, mock_ledger, mock_oracle, mock_audit, settlement_config, clock) -> SettlementPipeline:
    return SettlementPipeline(
        repo, mock_ledger, mock_ledger, mock_oracle, mock_audit, settlement_config, clock=clock
    )
