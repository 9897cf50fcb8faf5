"""
Async SQLite database connection management.

The settler is a single-instance process working against a local file, so
instead of a pool there is exactly one aiosqlite connection. Every
statement runs under one asyncio lock: a transaction holds the lock from
BEGIN to COMMIT, so no other coroutine can observe uncommitted rows.
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# Millisecond ISO-8601 UTC, used for created_at/updated_at defaults
SQL_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS markets (
    condition_id TEXT PRIMARY KEY,
    creator TEXT NOT NULL,
    question TEXT,
    end_time INTEGER,
    end_time_known INTEGER NOT NULL DEFAULT 0,
    processed_for_settlement INTEGER NOT NULL DEFAULT 0,
    settled_on_ledger INTEGER NOT NULL DEFAULT 0,
    last_ledger_check INTEGER,
    winning_token TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    settlement_status TEXT NOT NULL DEFAULT 'pending',
    decided_outcome TEXT,
    decision_reasoning TEXT,
    created_at TEXT NOT NULL DEFAULT ({SQL_NOW}),
    updated_at TEXT NOT NULL DEFAULT ({SQL_NOW})
);

CREATE INDEX IF NOT EXISTS idx_markets_eligibility
    ON markets (processed_for_settlement, settled_on_ledger, end_time);

CREATE TRIGGER IF NOT EXISTS markets_touch_updated_at
AFTER UPDATE ON markets
FOR EACH ROW
WHEN NEW.updated_at IS OLD.updated_at
BEGIN
    UPDATE markets SET updated_at = {SQL_NOW}
    WHERE condition_id = OLD.condition_id;
END;

CREATE TABLE IF NOT EXISTS operations_journal (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation TEXT NOT NULL,
    condition_id TEXT,
    payload TEXT NOT NULL DEFAULT '{{}}',
    status TEXT NOT NULL DEFAULT 'pending',
    error TEXT,
    timestamp TEXT NOT NULL DEFAULT ({SQL_NOW})
);

CREATE INDEX IF NOT EXISTS idx_journal_status
    ON operations_journal (status, id);
"""


class DatabaseConfig(BaseModel):
    """SQLite database configuration."""

    model_config = ConfigDict(frozen=True)

    path: str = os.environ.get("DB_FILE_PATH", "./data/market_data.sqlite3")
    busy_timeout_ms: int = 5000
    journal_mode: str = "WAL"
    synchronous: str = "FULL"

    # Backups
    backup_dir: Optional[str] = None  # Defaults to <db dir>/backups
    backup_keep: int = 5

    @property
    def is_memory(self) -> bool:
        return self.path == ":memory:"

    @property
    def resolved_backup_dir(self) -> Path:
        if self.backup_dir:
            return Path(self.backup_dir)
        return Path(self.path).parent / "backups"


class Database:
    """
    Async SQLite connection manager.

    Usage:
        db = Database(DatabaseConfig(path="./data/markets.sqlite3"))
        await db.initialize()

        rows = await db.fetch("SELECT * FROM markets WHERE retry_count > ?", 0)

        async with db.transaction() as conn:
            await conn.execute("UPDATE markets SET ...")
            # Commits on success, rolls back on exception

        await db.close()

    Code running inside transaction() must use the yielded connection;
    calling execute()/fetch() on the Database from inside a transaction
    would wait on the lock the transaction already holds.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None) -> None:
        self.config = config or DatabaseConfig()
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        """Check if the connection is open."""
        return self._conn is not None

    async def initialize(self) -> None:
        """Open the connection, apply pragmas and create the schema."""
        if self._conn is not None:
            return

        if not self.config.is_memory:
            db_dir = Path(self.config.path).parent
            if not db_dir.exists():
                db_dir.mkdir(parents=True, exist_ok=True)
                logger.info(f"Created database directory: {db_dir}")

        # isolation_level=None: autocommit, transactions are explicit BEGIN/COMMIT
        self._conn = await aiosqlite.connect(self.config.path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute(f"PRAGMA journal_mode = {self.config.journal_mode}")
        await self._conn.execute(f"PRAGMA synchronous = {self.config.synchronous}")
        await self._conn.execute(f"PRAGMA busy_timeout = {int(self.config.busy_timeout_ms)}")
        await self._conn.executescript(SCHEMA)

        logger.info(f"Connected to SQLite database at {self.config.path}")

    async def close(self) -> None:
        """Checkpoint the WAL and close the connection."""
        if self._conn is None:
            return

        async with self._lock:
            try:
                if not self.config.is_memory:
                    await self._conn.execute("PRAGMA wal_checkpoint(FULL)")
            except aiosqlite.Error as e:
                logger.warning(f"WAL checkpoint on close failed: {e}")
            await self._conn.close()
            self._conn = None
        logger.info("Database connection closed")

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Get exclusive use of the connection.

        Use for reads or statements that are a transaction on their own.
        """
        conn = self._require_connection()
        async with self._lock:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Get the connection inside BEGIN IMMEDIATE ... COMMIT.

        Commits on successful exit, rolls back on exception or cancellation.
        """
        conn = self._require_connection()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            committed = False
            try:
                yield conn
                await conn.execute("COMMIT")
                committed = True
            finally:
                if not committed:
                    try:
                        await conn.execute("ROLLBACK")
                    except aiosqlite.Error as rollback_error:
                        logger.error(f"Error rolling back transaction: {rollback_error}")

    async def health_check(self) -> bool:
        """Return True if a trivial query succeeds."""
        if not self.is_connected:
            return False

        try:
            return await self.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    async def execute(self, query: str, *args: Any) -> int:
        """Execute a statement and return the number of changed rows."""
        async with self.connection() as conn:
            async with conn.execute(query, args) as cursor:
                return cursor.rowcount

    async def fetch(self, query: str, *args: Any) -> list[aiosqlite.Row]:
        """Fetch all rows matching query."""
        async with self.connection() as conn:
            async with conn.execute(query, args) as cursor:
                return list(await cursor.fetchall())

    async def fetchrow(self, query: str, *args: Any) -> Optional[aiosqlite.Row]:
        """Fetch a single row."""
        async with self.connection() as conn:
            async with conn.execute(query, args) as cursor:
                return await cursor.fetchone()

    async def fetchval(self, query: str, *args: Any) -> Any:
        """Fetch the first column of the first row."""
        row = await self.fetchrow(query, *args)
        return None if row is None else row[0]

    async def backup(self, now: Optional[datetime] = None) -> Path:
        """
        Write a consistent copy of the database to the backup directory.

        Keeps the newest `backup_keep` copies and deletes older ones.
        Returns the path of the new backup.
        """
        if self.config.is_memory:
            raise RuntimeError("Cannot back up an in-memory database")

        backup_dir = self.config.resolved_backup_dir
        backup_dir.mkdir(parents=True, exist_ok=True)

        stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = backup_dir / f"market_data_{stamp}.sqlite3"

        async with self.connection() as conn:
            await conn.execute("PRAGMA wal_checkpoint(FULL)")
            async with aiosqlite.connect(backup_path) as target:
                await conn.backup(target)

        backups = sorted(backup_dir.glob("market_data_*.sqlite3"), reverse=True)
        for stale in backups[self.config.backup_keep:]:
            stale.unlink(missing_ok=True)

        logger.info(f"Database backup created: {backup_path}")
        return backup_path
