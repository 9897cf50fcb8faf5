"""
Integration test fixtures.

These fixtures wire the real store, ingestor, settlement pipeline and
scheduler together. Only the chain and the oracle are replaced, by small
in-memory fakes that keep state the way the real services do.
"""

from dataclasses import dataclass, field
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio

from market_settler.core import (
    BackgroundTaskConfig,
    BackgroundTasksManager,
    OracleAnswer,
    OracleError,
    SettlementConfig,
    SettlementPipeline,
)
from market_settler.ingestion import (
    IngestionConfig,
    LedgerError,
    MarketCreatedEvent,
    MarketIngestor,
    SettlementReceipt,
)
from market_settler.storage import Database, DatabaseConfig, MarketRepository

# Mark all tests in this directory as integration tests
pytestmark = pytest.mark.integration

T0 = 1_700_000_000
SETTLER = "0x2222222222222222222222222222222222222222"


# =============================================================================
# Fakes
# =============================================================================


@dataclass
class FakeMarket:
    end_time: int = 0
    question: str = ""
    yes_token: int = 42
    no_token: int = 41
    settled: bool = False
    winning_token: int = 0


class FakeLedger:
    """In-memory PNP factory: event log, per-market state and settleMarket."""

    def __init__(self) -> None:
        self.head = 0
        self.markets: dict[str, FakeMarket] = {}
        self.events: list[MarketCreatedEvent] = []
        self.settle_calls: list[tuple[str, str]] = []
        self.fail_settle = False
        self.connected = False

    def create_market(
        self, condition_id: str, creator: str, block: int, end_time: int, question: str
    ) -> None:
        self.markets[condition_id] = FakeMarket(end_time=end_time, question=question)
        self.events.append(MarketCreatedEvent(condition_id=condition_id, creator=creator, block_number=block))
        self.head = max(self.head, block)

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def latest_block(self) -> int:
        return self.head

    async def get_market_created_events(self, from_block: int, to_block: int) -> list[MarketCreatedEvent]:
        return [e for e in self.events if from_block <= e.block_number <= to_block]

    def _market(self, condition_id: str) -> FakeMarket:
        try:
            return self.markets[condition_id]
        except KeyError:
            raise LedgerError(f"unknown market {condition_id}")

    async def get_end_time(self, condition_id: str) -> int:
        return self._market(condition_id).end_time

    async def get_question(self, condition_id: str) -> str:
        return self._market(condition_id).question

    async def is_settled(self, condition_id: str) -> bool:
        return self._market(condition_id).settled

    async def winning_token(self, condition_id: str) -> Optional[str]:
        token = self._market(condition_id).winning_token
        return str(token) if token else None

    async def outcome_token(self, condition_id: str, outcome: str) -> str:
        market = self._market(condition_id)
        return str(market.yes_token if outcome.upper() == "YES" else market.no_token)

    async def settle(self, condition_id: str, winning_token: str) -> SettlementReceipt:
        self.settle_calls.append((condition_id, winning_token))
        if self.fail_settle:
            raise LedgerError("execution reverted")
        market = self._market(condition_id)
        market.settled = True
        market.winning_token = int(winning_token)
        self.head += 1
        return SettlementReceipt(tx_hash="0x" + "cd" * 32, block_number=self.head, settler=SETTLER)


@dataclass
class FakeOracle:
    """Answers every question with one outcome, or fails the next N calls."""
    answer: Optional[str] = "YES"
    reasoning: str = "The event happened."
    failures: int = 0
    questions: list = field(default_factory=list)

    async def ask(self, question, outcomes):
        self.questions.append(question)
        if self.failures > 0:
            self.failures -= 1
            raise OracleError("503 Service Unavailable")
        return OracleAnswer(answer=self.answer, reasoning=self.reasoning)


@dataclass
class RecordingAuditSink:
    records: list = field(default_factory=list)

    async def record(self, decision) -> bool:
        self.records.append(decision)
        return True


class Clock:
    def __init__(self, value: int) -> None:
        self.now = value

    def __call__(self) -> int:
        return self.now


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> Clock:
    return Clock(T0)


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "data" / "market_data.sqlite3")


@pytest_asyncio.fixture
async def db(db_path) -> AsyncGenerator[Database, None]:
    database = Database(DatabaseConfig(path=db_path))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def repo(db: Database) -> MarketRepository:
    return MarketRepository(db)


@pytest.fixture
def ingestor(repo, ledger, clock) -> MarketIngestor:
    return MarketIngestor(repo, ledger, ledger, IngestionConfig(log_chunk_size=100), clock=clock)


@pytest.fixture
def task_config() -> BackgroundTaskConfig:
    return BackgroundTaskConfig(
        settlement_delay_seconds=60,
        settlement_pause_seconds=0,
        max_retries=3,
        backfill_pause_seconds=0,
    )


@pytest.fixture
def pipeline(repo, ledger, oracle, audit, clock) -> SettlementPipeline:
    return SettlementPipeline(
        repo, ledger, ledger, oracle, audit, SettlementConfig(max_retries=3), clock=clock
    )


@pytest.fixture
def manager(repo, pipeline, ingestor, db, task_config, clock) -> BackgroundTasksManager:
    return BackgroundTasksManager(
        repo=repo,
        pipeline=pipeline,
        ingestor=ingestor,
        db=db,
        config=task_config,
        clock=clock,
    )


@pytest.fixture
def creator() -> str:
    return "0x1111111111111111111111111111111111111111"


@pytest.fixture
def condition_id() -> str:
    return "0x" + "aa" * 32
