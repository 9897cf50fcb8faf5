"""
Pydantic models matching the SQLite schema in storage/database.py.

Table names and field names match the database columns so rows convert
directly with Model(**dict(row)).

Token ids are uint256 on the ledger and are always kept as decimal strings.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator


# =============================================================================
# STATUS TAGS
# =============================================================================


class MarketStatus(str, Enum):
    """Settlement status of a market."""

    PENDING = "pending"
    SETTLED = "settled"
    EXHAUSTED = "exhausted"


class JournalStatus(str, Enum):
    """Status of a journal entry."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# MARKETS
# =============================================================================


class Market(BaseModel):
    """A tracked prediction market."""

    model_config = ConfigDict(frozen=True)

    condition_id: str
    creator: str
    question: Optional[str] = None
    end_time: Optional[int] = None
    end_time_known: bool = False
    processed_for_settlement: bool = False
    settled_on_ledger: bool = False
    last_ledger_check: Optional[int] = None
    winning_token: Optional[str] = None
    retry_count: int = 0
    settlement_status: MarketStatus = MarketStatus.PENDING
    decided_outcome: Optional[str] = None
    decision_reasoning: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def missing_metadata(self) -> bool:
        """True when end time or question still has to be fetched."""
        return not self.end_time_known or not self.question

    @property
    def is_exhausted(self) -> bool:
        return self.settlement_status == MarketStatus.EXHAUSTED

    def is_eligible(self, now: int, settlement_delay: int, max_retries: int) -> bool:
        """
        Check the settlement eligibility predicate for this market.

        Mirrors the WHERE clause of MarketRepository.get_eligible().
        """
        return (
            self.end_time_known
            and self.end_time is not None
            and self.end_time + settlement_delay < now
            and not self.processed_for_settlement
            and not self.settled_on_ledger
            and self.retry_count < max_retries
            and self.settlement_status == MarketStatus.PENDING
        )


# =============================================================================
# OPERATIONS JOURNAL
# =============================================================================


class JournalEntry(BaseModel):
    """One row of the operations journal."""

    model_config = ConfigDict(frozen=True)

    id: int
    operation: str
    condition_id: Optional[str] = None
    # Decoded JSON object, or the raw text when the stored payload is not valid JSON
    payload: Any = None
    status: JournalStatus = JournalStatus.PENDING
    error: Optional[str] = None
    timestamp: Optional[str] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _parse_payload(cls, value: Any) -> Any:
        if isinstance(value, (str, bytes)):
            if not value:
                return {}
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value
