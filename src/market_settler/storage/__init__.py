"""
Storage Layer - Async SQLite database, journal and repositories.

This is the foundation layer that all other components depend on.
Built on aiosqlite with a write-ahead operations journal.

Public API:
    Database, DatabaseConfig - Connection management, schema, backups
    Market, JournalEntry, MarketStatus, JournalStatus - Models
    MarketRepository, JournalRepository - Repositories
    RecoveryManager, RecoveryReport - Startup journal replay
    UnknownOperationError - Journal entry with no mutation function
"""
from market_settler.storage.database import Database, DatabaseConfig
from market_settler.storage.models import JournalEntry, JournalStatus, Market, MarketStatus
from market_settler.storage.mutations import MUTATIONS, UnknownOperationError, apply_mutation
from market_settler.storage.recovery import RecoveryManager, RecoveryReport
from market_settler.storage.repositories import JournalRepository, MarketRepository

__all__ = [
    # Database
    "Database",
    "DatabaseConfig",
    # Models
    "Market",
    "MarketStatus",
    "JournalEntry",
    "JournalStatus",
    # Mutations
    "MUTATIONS",
    "UnknownOperationError",
    "apply_mutation",
    # Repositories
    "MarketRepository",
    "JournalRepository",
    # Recovery
    "RecoveryManager",
    "RecoveryReport",
]
