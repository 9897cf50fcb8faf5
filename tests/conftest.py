"""
Shared test fixtures for cross-component tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/market_settler/{component}/tests/conftest.py
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio

from market_settler.main import REQUIRED_ENV, SettlerConfig
from market_settler.storage import Database, DatabaseConfig, MarketRepository

CONFIG_ENV = REQUIRED_ENV + (
    "PNP_FACTORY_ABI_PATH",
    "POA_CHAIN",
    "PPLX_MODEL",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "SUPABASE_TABLE_NAME",
    "DB_FILE_PATH",
    "DB_BACKUP_INTERVAL_HOURS",
    "DB_BACKUP_KEEP",
    "SETTLEMENT_DELAY_MINUTES",
    "MAX_RETRIES",
    "SETTLEMENT_INTERVAL_SECONDS",
    "SETTLEMENT_PAUSE_SECONDS",
    "BACKFILL_INTERVAL_SECONDS",
    "BACKFILL_BATCH_SIZE",
    "BACKFILL_PAUSE_SECONDS",
    "START_BLOCK",
    "SYNC_HISTORY_ON_STARTUP",
    "EVENT_POLL_INTERVAL_SECONDS",
    "LOG_CHUNK_SIZE",
    "CONFIRMATION_TIMEOUT_SECONDS",
)


# =============================================================================
# Environment Fixtures
# =============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """Environment with every settler variable removed."""
    for name in CONFIG_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "data" / "market_data.sqlite3")


@pytest.fixture
def full_env(clean_env, db_path):
    """Environment with all required variables set and the store in tmp_path."""
    clean_env.setenv("RPC_URL", "http://localhost:8545")
    clean_env.setenv("PRIVATE_KEY", "0x" + "01" * 32)
    clean_env.setenv("SETTLER_PRIVATE_KEY", "0x" + "02" * 32)
    clean_env.setenv("PNP_FACTORY_CONTRACT_ADDRESS", "0x" + "33" * 20)
    clean_env.setenv("PPLX_API_KEY", "pplx-test")
    clean_env.setenv("DB_FILE_PATH", db_path)
    return clean_env


@pytest.fixture
def settler_config(db_path) -> SettlerConfig:
    return SettlerConfig(
        rpc_url="http://localhost:8545",
        private_key="0x" + "01" * 32,
        settler_private_key="0x" + "02" * 32,
        contract_address="0x" + "33" * 20,
        pplx_api_key="pplx-test",
        db_file_path=db_path,
        backup_interval_hours=0,
    )


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db(db_path) -> AsyncGenerator[Database, None]:
    """Fresh SQLite store at db_path for each test."""
    database = Database(DatabaseConfig(path=db_path))
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
