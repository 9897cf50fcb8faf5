"""
Audit trail for oracle decisions.

Accepted decisions are upserted into a Supabase table keyed by
condition_id. Recording is best-effort: failures are logged and reported
as False, never raised. Reading a record back (fetch) is an operator
action and raises AuditError on failure.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import aiohttp

logger = logging.getLogger(__name__)


class AuditError(Exception):
    """The audit store could not be read."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class DecisionRecord:
    """One audited oracle decision."""
    condition_id: str
    question: str
    answer: str
    reasoning: str
    market_creation_time: Optional[str] = None
    settlement_time: Optional[str] = None

    def to_row(self, now: Optional[datetime] = None) -> dict:
        created = (now or datetime.now(timezone.utc)).isoformat().replace("+00:00", "Z")
        return {
            "condition_id": self.condition_id,
            "question": self.question,
            "answer": self.answer,
            "reasoning": self.reasoning,
            "created_at": created,
            "market_creation_time": self.market_creation_time,
            "settlement_time": self.settlement_time,
        }


class AuditSink(Protocol):
    async def record(self, decision: DecisionRecord) -> bool:
        ...


class NullAuditSink:
    """Audit sink used when no backend is configured."""

    async def record(self, decision: DecisionRecord) -> bool:
        return False


@dataclass
class SupabaseConfig:
    url: str
    api_key: str
    table_name: str = "market_ai_reasoning"
    timeout: float = 15.0


class SupabaseAuditSink:
    """Upserts decisions through Supabase's PostgREST endpoint and reads them back."""

    def __init__(
        self,
        config: SupabaseConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=config.timeout)

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    @property
    def table_url(self) -> str:
        return f"{self.config.url.rstrip('/')}/rest/v1/{self.config.table_name}"

    def _headers(self) -> dict:
        return {
            "apikey": self.config.api_key,
            "Authorization": f"Bearer {self.config.api_key}",
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _post(self, url: str, rows: list[dict], headers: dict, params: dict) -> int:
        """POST rows and return the response status."""
        session = self._get_session()
        async with session.post(url, json=rows, headers=headers, params=params) as response:
            if response.status >= 400:
                text = await response.text()
                logger.error(f"Supabase error {response.status}: {text[:200]}")
            return response.status

    async def _get(self, url: str, headers: dict, params: dict) -> Any:
        """GET and return the parsed JSON reply."""
        session = self._get_session()
        try:
            async with session.get(url, headers=headers, params=params) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise AuditError(
                        f"Supabase error {response.status}: {text[:200]}",
                        status_code=response.status,
                    )
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise AuditError("Supabase request timed out") from e
        except aiohttp.ClientError as e:
            raise AuditError(f"Supabase request failed: {e}") from e
        except ValueError as e:
            raise AuditError(f"Supabase returned invalid JSON: {e}") from e

    async def fetch(self, condition_id: str) -> Optional[dict]:
        """
        Read back the audited decision for one market.

        Returns:
            The stored row, or None if the market has no record

        Raises:
            AuditError: request failed or the reply is not a list of rows
        """
        params = {"condition_id": f"eq.{condition_id}", "select": "*"}
        rows = await self._get(self.table_url, self._headers(), params)
        if not isinstance(rows, list):
            raise AuditError(f"Unexpected Supabase reply: {str(rows)[:200]}")
        return rows[0] if rows else None

    async def record(self, decision: DecisionRecord) -> bool:
        headers = self._headers()
        headers["Prefer"] = "resolution=merge-duplicates,return=minimal"
        params = {"on_conflict": "condition_id"}

        try:
            status = await self._post(self.table_url, [decision.to_row()], headers, params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to store oracle reasoning for {decision.condition_id}: {e}")
            return False

        if status >= 400:
            logger.error(f"Failed to store oracle reasoning for {decision.condition_id}: HTTP {status}")
            return False

        logger.info(f"Stored oracle reasoning for {decision.condition_id}")
        return True


def build_audit_sink(
    url: Optional[str],
    api_key: Optional[str],
    table_name: Optional[str] = None,
) -> AuditSink:
    """Supabase sink when url and key are set, otherwise a NullAuditSink."""
    if not url or not api_key:
        logger.warning("Supabase configuration is missing. Oracle reasoning will not be audited.")
        return NullAuditSink()
    config = SupabaseConfig(url=url, api_key=api_key)
    if table_name:
        config.table_name = table_name
    return SupabaseAuditSink(config)
