"""
Ingestion Layer - PNP factory events and ledger reads.

Public API:
    MarketIngestor, IngestionConfig - Event application, historical sync,
        live feed and metadata backfill
    Web3Ledger, LedgerConfig - web3 adapter for the PNP factory contract
    LedgerReader, LedgerWriter, MarketEventSource - Adapter interfaces
    LedgerError, SettlementTransactionError - Ledger failures
    MarketCreatedEvent, normalize_condition_id - Event model
"""

from .ledger import (
    OUTCOME_TOKEN_GETTERS,
    PNP_FACTORY_ABI,
    LedgerConfig,
    LedgerError,
    LedgerReader,
    LedgerWriter,
    MarketEventSource,
    SettlementReceipt,
    SettlementTransactionError,
    Web3Ledger,
    load_abi,
)
from .models import MarketCreatedEvent, normalize_condition_id
from .service import IngestionConfig, MarketIngestor

__all__ = [
    # Service
    "MarketIngestor",
    "IngestionConfig",
    # Ledger
    "Web3Ledger",
    "LedgerConfig",
    "LedgerReader",
    "LedgerWriter",
    "MarketEventSource",
    "LedgerError",
    "SettlementTransactionError",
    "SettlementReceipt",
    "PNP_FACTORY_ABI",
    "OUTCOME_TOKEN_GETTERS",
    "load_abi",
    # Models
    "MarketCreatedEvent",
    "normalize_condition_id",
]
