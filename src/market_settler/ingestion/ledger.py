"""
Ledger adapter for the PNP factory contract.

Exposes three narrow interfaces used by the rest of the settler:
    - MarketEventSource: PNP_MarketCreated logs and the chain head
    - LedgerReader: per-market reads (end time, question, settlement state,
      outcome token ids)
    - LedgerWriter: settleMarket transactions

Web3Ledger implements all three on top of web3's AsyncWeb3. Every failure
of the underlying provider is raised as LedgerError so callers only need
to handle one exception type.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.middleware import ExtraDataToPOAMiddleware

from .models import MarketCreatedEvent, normalize_condition_id

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """A ledger read or write failed."""


class SettlementTransactionError(LedgerError):
    """settleMarket was rejected, reverted or not confirmed."""


# Minimal factory ABI: only what the settler calls
PNP_FACTORY_ABI: list[dict[str, Any]] = json.loads('''
[
  {"type": "function", "name": "getMarketEndTime", "stateMutability": "view",
   "inputs": [{"name": "conditionId", "type": "bytes32"}],
   "outputs": [{"name": "", "type": "uint256"}]},
  {"type": "function", "name": "marketQuestion", "stateMutability": "view",
   "inputs": [{"name": "conditionId", "type": "bytes32"}],
   "outputs": [{"name": "", "type": "string"}]},
  {"type": "function", "name": "marketSettled", "stateMutability": "view",
   "inputs": [{"name": "conditionId", "type": "bytes32"}],
   "outputs": [{"name": "", "type": "bool"}]},
  {"type": "function", "name": "getYesTokenId", "stateMutability": "view",
   "inputs": [{"name": "conditionId", "type": "bytes32"}],
   "outputs": [{"name": "", "type": "uint256"}]},
  {"type": "function", "name": "getNoTokenId", "stateMutability": "view",
   "inputs": [{"name": "conditionId", "type": "bytes32"}],
   "outputs": [{"name": "", "type": "uint256"}]},
  {"type": "function", "name": "winningTokenId", "stateMutability": "view",
   "inputs": [{"name": "conditionId", "type": "bytes32"}],
   "outputs": [{"name": "", "type": "uint256"}]},
  {"type": "function", "name": "settleMarket", "stateMutability": "nonpayable",
   "inputs": [{"name": "conditionId", "type": "bytes32"},
              {"name": "_winningTokenId", "type": "uint256"}],
   "outputs": []},
  {"type": "event", "name": "PNP_MarketCreated", "anonymous": false,
   "inputs": [{"name": "conditionId", "type": "bytes32", "indexed": true},
              {"name": "marketCreator", "type": "address", "indexed": true}]}
]
''')

# Outcome label -> contract getter for its token id
OUTCOME_TOKEN_GETTERS = {
    "YES": "getYesTokenId",
    "NO": "getNoTokenId",
}


@dataclass(frozen=True)
class SettlementReceipt:
    """Confirmed settleMarket transaction."""
    tx_hash: str
    block_number: int
    settler: str


# =============================================================================
# INTERFACES
# =============================================================================


@runtime_checkable
class MarketEventSource(Protocol):
    """Source of PNP_MarketCreated events."""

    async def latest_block(self) -> int:
        ...

    async def get_market_created_events(
        self, from_block: int, to_block: int
    ) -> list[MarketCreatedEvent]:
        ...


@runtime_checkable
class LedgerReader(Protocol):
    """Per-market reads from the factory contract."""

    async def get_end_time(self, condition_id: str) -> int:
        ...

    async def get_question(self, condition_id: str) -> str:
        ...

    async def is_settled(self, condition_id: str) -> bool:
        ...

    async def winning_token(self, condition_id: str) -> Optional[str]:
        ...

    async def outcome_token(self, condition_id: str, outcome: str) -> str:
        ...


@runtime_checkable
class LedgerWriter(Protocol):
    """Submits settlement transactions."""

    async def settle(self, condition_id: str, winning_token: str) -> SettlementReceipt:
        ...


# =============================================================================
# WEB3 IMPLEMENTATION
# =============================================================================


@dataclass
class LedgerConfig:
    """Configuration for Web3Ledger."""
    rpc_url: str
    contract_address: str
    settler_private_key: Optional[str] = None
    reader_private_key: Optional[str] = None
    abi_path: Optional[str] = None
    poa_chain: bool = False
    confirmation_timeout: float = 300.0
    log_chunk_size: int = 5000


def load_abi(abi_path: Optional[str]) -> list[dict[str, Any]]:
    """Load the factory ABI from a JSON file, or use the embedded one."""
    if not abi_path:
        return PNP_FACTORY_ABI

    data = json.loads(Path(abi_path).read_text())
    # Accept both a bare ABI list and a compiler artifact with an "abi" key
    if isinstance(data, dict):
        data = data["abi"]
    return data


class Web3Ledger:
    """
    PNP factory contract over an async JSON-RPC provider.

    Usage:
        ledger = Web3Ledger(LedgerConfig(rpc_url=..., contract_address=...))
        await ledger.connect()
        end_time = await ledger.get_end_time(condition_id)
        await ledger.close()
    """

    def __init__(self, config: LedgerConfig, w3: Optional[AsyncWeb3] = None) -> None:
        self.config = config
        self._w3 = w3
        self._contract = None
        self._chain_id: Optional[int] = None
        self._settler = None

    @property
    def w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise LedgerError("Ledger not connected. Call connect() first.")
        return self._w3

    @property
    def contract(self):
        if self._contract is None:
            raise LedgerError("Ledger not connected. Call connect() first.")
        return self._contract

    async def connect(self) -> None:
        """Create the provider and contract and check the connection."""
        if self._w3 is None:
            self._w3 = AsyncWeb3(AsyncHTTPProvider(self.config.rpc_url))
            if self.config.poa_chain:
                self._w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        try:
            if not await self._w3.is_connected():
                raise LedgerError(f"Failed to connect to RPC at {self.config.rpc_url}")
            self._chain_id = await self._w3.eth.chain_id
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"Failed to connect to RPC: {e}") from e

        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(self.config.contract_address),
            abi=load_abi(self.config.abi_path),
        )

        if self.config.reader_private_key:
            reader = self._w3.eth.account.from_key(self.config.reader_private_key)
            self._w3.eth.default_account = reader.address
            logger.info(f"Reader wallet: {reader.address}")
        if self.config.settler_private_key:
            self._settler = self._w3.eth.account.from_key(self.config.settler_private_key)
            logger.info(f"Settler wallet: {self._settler.address}")

        logger.info(
            f"Connected to chain {self._chain_id}, "
            f"PNP factory at {self._contract.address}"
        )

    async def close(self) -> None:
        """Close the provider session."""
        if self._w3 is not None:
            disconnect = getattr(self._w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()

    async def _call(self, fn_name: str, condition_id: str) -> Any:
        cid = Web3.to_bytes(hexstr=normalize_condition_id(condition_id))
        try:
            return await getattr(self.contract.functions, fn_name)(cid).call()
        except Exception as e:
            raise LedgerError(f"{fn_name}({condition_id}) failed: {e}") from e

    # -------------------------------------------------------------------------
    # LedgerReader
    # -------------------------------------------------------------------------

    async def get_end_time(self, condition_id: str) -> int:
        """Market end time in epoch seconds (0 if the contract has none)."""
        return int(await self._call("getMarketEndTime", condition_id))

    async def get_question(self, condition_id: str) -> str:
        return await self._call("marketQuestion", condition_id) or ""

    async def is_settled(self, condition_id: str) -> bool:
        return bool(await self._call("marketSettled", condition_id))

    async def winning_token(self, condition_id: str) -> Optional[str]:
        """Winning token id as a decimal string, None while unknown (zero)."""
        token = int(await self._call("winningTokenId", condition_id))
        return str(token) if token != 0 else None

    async def outcome_token(self, condition_id: str, outcome: str) -> str:
        """Token id for an outcome label, as a decimal string."""
        getter = OUTCOME_TOKEN_GETTERS.get(outcome.upper())
        if getter is None:
            raise LedgerError(f"No token getter for outcome {outcome!r}")
        return str(int(await self._call(getter, condition_id)))

    # -------------------------------------------------------------------------
    # LedgerWriter
    # -------------------------------------------------------------------------

    async def settle(self, condition_id: str, winning_token: str) -> SettlementReceipt:
        """
        Submit settleMarket signed by the settler wallet and wait for one
        confirmation.

        Raises:
            SettlementTransactionError: no settler key, send failure,
                timeout or reverted receipt
        """
        if self._settler is None:
            raise SettlementTransactionError("Settler private key not configured")

        cid = Web3.to_bytes(hexstr=normalize_condition_id(condition_id))
        settler = self._settler.address

        try:
            nonce = await self.w3.eth.get_transaction_count(settler, "pending")
            tx = await self.contract.functions.settleMarket(cid, int(winning_token)).build_transaction({
                "chainId": self._chain_id,
                "from": settler,
                "nonce": nonce,
            })
            signed_tx = self.w3.eth.account.sign_transaction(
                tx, private_key=self.config.settler_private_key
            )
            tx_hash = await self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
            logger.info(
                f"settleMarket sent for {condition_id} (token {winning_token}): "
                f"{Web3.to_hex(tx_hash)}"
            )
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.confirmation_timeout
            )
        except Exception as e:
            raise SettlementTransactionError(f"settleMarket({condition_id}) failed: {e}") from e

        if receipt["status"] != 1:
            raise SettlementTransactionError(
                f"settleMarket({condition_id}) reverted in tx {Web3.to_hex(tx_hash)}"
            )

        return SettlementReceipt(
            tx_hash=Web3.to_hex(tx_hash),
            block_number=int(receipt["blockNumber"]),
            settler=settler,
        )

    # -------------------------------------------------------------------------
    # MarketEventSource
    # -------------------------------------------------------------------------

    async def latest_block(self) -> int:
        try:
            return int(await self.w3.eth.block_number)
        except Exception as e:
            raise LedgerError(f"eth_blockNumber failed: {e}") from e

    async def get_market_created_events(
        self, from_block: int, to_block: int
    ) -> list[MarketCreatedEvent]:
        """PNP_MarketCreated events in [from_block, to_block], in log order."""
        try:
            logs = await self.contract.events.PNP_MarketCreated.get_logs(
                from_block=from_block, to_block=to_block
            )
        except Exception as e:
            raise LedgerError(f"get_logs({from_block}..{to_block}) failed: {e}") from e

        events = []
        for log in logs:
            args = log["args"]
            try:
                events.append(MarketCreatedEvent(
                    condition_id=args["conditionId"],
                    creator=args["marketCreator"],
                    block_number=log.get("blockNumber"),
                    tx_hash=Web3.to_hex(log["transactionHash"]) if log.get("transactionHash") else None,
                ))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed PNP_MarketCreated log: {e}")
        return events
