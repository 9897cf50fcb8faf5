"""
Settlement pipeline.

Takes one eligible market through:

    ELIGIBLE -> CHECKING_LEDGER -> {ALREADY_SETTLED | NEEDS_DECISION}
    NEEDS_DECISION -> DECISION_PENDING -> {DECISION_REJECTED | DECISION_ACCEPTED}
    DECISION_ACCEPTED -> RESOLVING_TOKEN -> COMMITTING -> {SETTLED | ATTEMPT_FAILED}

Ledger and oracle failures end the attempt as ATTEMPT_FAILED and count as
one retry. A rejected decision also counts as one retry. Storage errors
are not caught here and abort the caller's run.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Sequence

from market_settler.core.oracle import DecisionOracle, OracleError
from market_settler.ingestion.ledger import LedgerError, LedgerReader, LedgerWriter
from market_settler.monitoring.audit import AuditSink, DecisionRecord, NullAuditSink
from market_settler.storage.models import Market
from market_settler.storage.repositories import MarketRepository

logger = logging.getLogger(__name__)


class SettlementState(str, Enum):
    """Pipeline states of one settlement attempt."""
    ELIGIBLE = "eligible"
    CHECKING_LEDGER = "checking_ledger"
    ALREADY_SETTLED = "already_settled"
    NEEDS_DECISION = "needs_decision"
    DECISION_PENDING = "decision_pending"
    DECISION_REJECTED = "decision_rejected"
    DECISION_ACCEPTED = "decision_accepted"
    RESOLVING_TOKEN = "resolving_token"
    COMMITTING = "committing"
    SETTLED = "settled"
    ATTEMPT_FAILED = "attempt_failed"


@dataclass
class SettlementResult:
    """Outcome of one settlement attempt."""
    condition_id: str
    state: SettlementState
    outcome: Optional[str] = None
    reasoning: Optional[str] = None
    winning_token: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    retry_count: Optional[int] = None
    exhausted: bool = False

    @property
    def success(self) -> bool:
        return self.state in (SettlementState.SETTLED, SettlementState.ALREADY_SETTLED)


@dataclass
class SettlementConfig:
    """Configuration for the settlement pipeline."""
    max_retries: int = 3
    outcomes: tuple[str, ...] = ("YES", "NO")
    # Outcome used when the oracle cannot decide
    default_outcome: str = "NO"


def auto_resolution_note(outcome: str, reasoning: str) -> str:
    """Reasoning stored for an undecided market resolved to the default outcome."""
    return (
        f"[Auto-resolved to {outcome}: the oracle could not determine the outcome. "
        f"Original reasoning follows.] {reasoning}"
    )


def match_outcome(answer: str, outcomes: Sequence[str]) -> Optional[str]:
    """Canonical outcome matching answer case-insensitively, or None."""
    wanted = answer.strip().upper()
    for outcome in outcomes:
        if outcome.upper() == wanted:
            return outcome
    return None


class SettlementPipeline:
    """
    Runs settlement attempts for single markets.

    Usage:
        pipeline = SettlementPipeline(repo, ledger, ledger, oracle, audit)
        result = await pipeline.settle(market)
    """

    def __init__(
        self,
        repo: MarketRepository,
        reader: LedgerReader,
        writer: LedgerWriter,
        oracle: DecisionOracle,
        audit: Optional[AuditSink] = None,
        config: Optional[SettlementConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo = repo
        self.reader = reader
        self.writer = writer
        self.oracle = oracle
        self.audit = audit or NullAuditSink()
        self.config = config or SettlementConfig()
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _enter(self, condition_id: str, state: SettlementState) -> SettlementState:
        logger.debug(f"{condition_id}: {state.value}")
        return state

    async def settle(self, market: Market) -> SettlementResult:
        """Run one settlement attempt for an eligible market."""
        cid = market.condition_id
        self._enter(cid, SettlementState.ELIGIBLE)
        logger.info(f"Processing market {cid}")

        # --- CHECKING_LEDGER ---
        self._enter(cid, SettlementState.CHECKING_LEDGER)
        try:
            settled = await self.reader.is_settled(cid)
        except LedgerError as e:
            return await self._fail(cid, SettlementState.ATTEMPT_FAILED, f"Ledger status check failed: {e}")

        now = self._now()
        await self.repo.set_ledger_status(cid, settled, now)

        if settled:
            return await self._record_already_settled(cid, now)

        # --- NEEDS_DECISION ---
        self._enter(cid, SettlementState.NEEDS_DECISION)
        question = market.question
        if not question:
            question = await self._fetch_question(cid)
            if not question:
                return await self._fail(cid, SettlementState.ATTEMPT_FAILED, "Missing market question")

        # --- DECISION_PENDING ---
        self._enter(cid, SettlementState.DECISION_PENDING)
        try:
            answer = await self.oracle.ask(question, list(self.config.outcomes))
        except OracleError as e:
            return await self._fail(cid, SettlementState.ATTEMPT_FAILED, f"Oracle failed: {e}")

        if answer.answer is None:
            outcome = self.config.default_outcome
            reasoning = auto_resolution_note(outcome, answer.reasoning)
            logger.warning(f"Oracle could not decide {cid}, auto-resolving to {outcome}")
        else:
            outcome = match_outcome(answer.answer, self.config.outcomes)
            reasoning = answer.reasoning
            if outcome is None:
                return await self._fail(
                    cid,
                    SettlementState.DECISION_REJECTED,
                    f"Oracle answer {answer.answer!r} is not one of {list(self.config.outcomes)}",
                    reasoning=reasoning,
                )

        # --- DECISION_ACCEPTED ---
        self._enter(cid, SettlementState.DECISION_ACCEPTED)
        await self.repo.record_decision(cid, outcome, reasoning)
        await self._audit(market, question, outcome, reasoning)

        # --- RESOLVING_TOKEN ---
        self._enter(cid, SettlementState.RESOLVING_TOKEN)
        try:
            token = await self.reader.outcome_token(cid, outcome)
        except LedgerError as e:
            return await self._fail(
                cid, SettlementState.ATTEMPT_FAILED, f"Token lookup failed: {e}",
                outcome=outcome, reasoning=reasoning,
            )

        # --- COMMITTING ---
        self._enter(cid, SettlementState.COMMITTING)
        try:
            receipt = await self.writer.settle(cid, token)
        except LedgerError as e:
            return await self._fail(
                cid, SettlementState.ATTEMPT_FAILED, f"settleMarket failed: {e}",
                outcome=outcome, reasoning=reasoning,
            )

        await self.repo.record_settlement(cid, token, self._now())
        logger.info(
            f"Market {cid} settled as {outcome} (token {token}) "
            f"in tx {receipt.tx_hash}, block {receipt.block_number}"
        )
        return SettlementResult(
            condition_id=cid,
            state=self._enter(cid, SettlementState.SETTLED),
            outcome=outcome,
            reasoning=reasoning,
            winning_token=token,
            tx_hash=receipt.tx_hash,
        )

    async def _record_already_settled(self, cid: str, now: int) -> SettlementResult:
        logger.info(f"Market {cid} already settled on-chain, marking processed")
        await self.repo.record_settlement(cid, checked_at=now)

        token = None
        try:
            token = await self.reader.winning_token(cid)
        except LedgerError as e:
            logger.warning(f"Could not fetch winning token for settled market {cid}: {e}")
        if token is not None:
            await self.repo.set_winning_token(cid, token)

        return SettlementResult(
            condition_id=cid,
            state=self._enter(cid, SettlementState.ALREADY_SETTLED),
            winning_token=token,
        )

    async def _fetch_question(self, cid: str) -> Optional[str]:
        logger.warning(f"Market question missing for {cid}, fetching before processing")
        try:
            question = await self.reader.get_question(cid)
        except LedgerError as e:
            logger.error(f"Error fetching market question for {cid}: {e}")
            return None
        if not question or not question.strip():
            return None
        await self.repo.set_question(cid, question)
        return question

    async def _audit(self, market: Market, question: str, outcome: str, reasoning: str) -> None:
        record = DecisionRecord(
            condition_id=market.condition_id,
            question=question,
            answer=outcome,
            reasoning=reasoning,
            market_creation_time=market.created_at,
            settlement_time=datetime.fromtimestamp(self._now(), tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
        )
        try:
            await self.audit.record(record)
        except Exception as e:
            logger.error(f"Audit sink failed for {market.condition_id}: {e}")

    async def _fail(
        self,
        cid: str,
        state: SettlementState,
        error: str,
        outcome: Optional[str] = None,
        reasoning: Optional[str] = None,
    ) -> SettlementResult:
        updated = await self.repo.increment_retry(cid, self.config.max_retries)
        retry_count = updated.retry_count if updated else None
        exhausted = bool(updated and updated.is_exhausted)

        logger.error(f"Settlement attempt for {cid} failed ({state.value}): {error}")
        if exhausted:
            logger.warning(
                f"Market {cid} exhausted after {retry_count} attempts; "
                f"use reset-market to retry it"
            )

        return SettlementResult(
            condition_id=cid,
            state=self._enter(cid, state),
            outcome=outcome,
            reasoning=reasoning,
            error=error,
            retry_count=retry_count,
            exhausted=exhausted,
        )


# =============================================================================
# ADMINISTRATIVE RESET
# =============================================================================


@dataclass
class ResetResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None


async def reset_failed_market(repo: MarketRepository, condition_id: str) -> ResetResult:
    """
    Make a failed market eligible for settlement again.

    Only markets that exist, are not processed and have at least one
    failed attempt can be reset.
    """
    market = await repo.get(condition_id)
    if market is None:
        logger.error(f"Cannot reset market {condition_id}: not found")
        return ResetResult(success=False, error="Market not found")

    if market.processed_for_settlement:
        logger.warning(f"Cannot reset market {condition_id}: already processed")
        return ResetResult(success=False, error="Market is already processed")

    if market.retry_count <= 0:
        logger.warning(f"Cannot reset market {condition_id}: no failed attempts recorded")
        return ResetResult(success=False, error="Market has no failed attempts")

    await repo.reset_retry(condition_id)
    logger.info(f"Market {condition_id} reset for reprocessing")
    return ResetResult(success=True, message="Market reset for reprocessing")
