"""
Test fixtures for async SQLite storage tests.

Each test gets a fresh database file under pytest's tmp_path.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from market_settler.storage.database import Database, DatabaseConfig
from market_settler.storage.repositories import JournalRepository, MarketRepository


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture
def db_config(tmp_path) -> DatabaseConfig:
    """Database config pointing at a temporary file."""
    return DatabaseConfig(path=str(tmp_path / "data" / "market_data.sqlite3"))


@pytest_asyncio.fixture
async def db(db_config: DatabaseConfig) -> AsyncGenerator[Database, None]:
    """Fresh database for each test."""
    database = Database(db_config)
    await database.initialize()
    yield database
    await database.close()


# =============================================================================
# REPOSITORY FIXTURES
# =============================================================================


@pytest.fixture
def journal_repo(db: Database) -> JournalRepository:
    return JournalRepository(db)


@pytest.fixture
def market_repo(db: Database, journal_repo: JournalRepository) -> MarketRepository:
    return MarketRepository(db, journal_repo)


# =============================================================================
# SAMPLE DATA
# =============================================================================


@pytest.fixture
def condition_id() -> str:
    return "0x" + "aa" * 32


@pytest.fixture
def other_condition_id() -> str:
    return "0x" + "bb" * 32


@pytest.fixture
def creator() -> str:
    return "0x1111111111111111111111111111111111111111"
