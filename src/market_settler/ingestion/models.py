"""
Data models for the ingestion layer.

These models represent:
- PNP_MarketCreated events read from the factory contract
- Condition id normalization shared by every adapter

Condition ids are bytes32 on the ledger. Everywhere else they are the
lower-case 0x-prefixed 64 hex character string, which is also the
primary key of the markets table.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

_CONDITION_ID_RE = re.compile(r"^[0-9a-f]{64}$")


def normalize_condition_id(value: Union[str, bytes, bytearray]) -> str:
    """
    Normalize a condition id to lower-case 0x + 64 hex chars.

    Accepts raw 32-byte values (as decoded from logs) or hex strings with
    or without the 0x prefix.

    Raises:
        ValueError: value is not a 32-byte identifier
    """
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError(f"Condition id must be 32 bytes, got {len(value)}")
        return "0x" + bytes(value).hex()

    text = str(value).strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    if not _CONDITION_ID_RE.match(text):
        raise ValueError(f"Invalid condition id: {value!r}")
    return "0x" + text


@dataclass(frozen=True)
class MarketCreatedEvent:
    """
    A PNP_MarketCreated log entry.

    Attributes:
        condition_id: Normalized market condition id
        creator: Checksummed address of the market creator
        block_number: Block the event was emitted in (if known)
        tx_hash: Hash of the emitting transaction (if known)
    """
    condition_id: str
    creator: str
    block_number: Optional[int] = None
    tx_hash: Optional[str] = None

    def __post_init__(self):
        # Normalize on construction so every consumer sees the storage key
        object.__setattr__(self, "condition_id", normalize_condition_id(self.condition_id))
        if not self.creator:
            raise ValueError("Event creator must not be empty")
