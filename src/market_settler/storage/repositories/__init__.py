"""
Repository exports.
"""
from market_settler.storage.repositories.journal_repo import JournalRepository
from market_settler.storage.repositories.market_repo import MarketRepository

__all__ = [
    "JournalRepository",
    "MarketRepository",
]
