"""
AI decision oracle.

Asks a chat-completions model which outcome a market resolved to.
The model must reply with a JSON object:

    {"answer": "<one of the outcomes, or null>", "reasoning": "<text>"}

Replies wrapped in markdown fences or preceded by <think> blocks are
cleaned before parsing. A reply without a JSON object, without reasoning,
or without an answer (absent or blank) is an OracleError; only an explicit
null means undecided. Whether the answer is one of the outcomes is left to
the caller.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

import aiohttp

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert analyst with real-time access to information across the world.
You are tasked with answering the question based on the information available.
Prediction market data: {"question": <QUESTION>, "outcomes": ["string", "string"]} is given to you.
Analyze the given question and respond in the following JSON format:
{
    "answer": "your direct answer here",
    "reasoning": "your detailed analysis and reasoning here referring to real-time, up-to-date information"
}
Ensure the response is valid JSON.
"answer" must be exactly one of the outcomes, or null if the outcome cannot be determined.
The market question refers to an event that has already passed at the time of analysis."""

_THINK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class OracleError(Exception):
    """The oracle request failed or returned an unusable reply."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class OracleAnswer:
    """Parsed oracle reply. answer is None when the model could not decide."""
    answer: Optional[str]
    reasoning: str


class DecisionOracle(Protocol):
    """Decides which outcome a market question resolved to."""

    async def ask(self, question: str, outcomes: Sequence[str]) -> OracleAnswer:
        ...


def parse_oracle_response(raw: str) -> OracleAnswer:
    """
    Parse a model reply into an OracleAnswer.

    Raises:
        OracleError: no JSON object, invalid JSON, missing reasoning, or an
            answer that is absent or blank (only an explicit null is undecided)
    """
    if not raw or not raw.strip():
        raise OracleError("Oracle response is empty")

    cleaned = _THINK_RE.sub("", raw).strip()
    cleaned = _FENCE_RE.sub("", cleaned).strip()

    try:
        data = json.loads(cleaned)
    except ValueError:
        # Fall back to the outermost {...} in the text
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise OracleError(f"No JSON object in oracle response: {raw[:150]!r}")
        try:
            data = json.loads(cleaned[start:end + 1])
        except ValueError as e:
            raise OracleError(f"Invalid JSON in oracle response: {e}") from e

    if not isinstance(data, dict):
        raise OracleError("Oracle response is not a JSON object")

    reasoning = data.get("reasoning")
    if not reasoning or not str(reasoning).strip():
        raise OracleError("Oracle response is missing reasoning")

    if "answer" not in data:
        raise OracleError("Oracle response is missing answer")

    # Only an explicit null means "cannot be determined"
    answer = data["answer"]
    if answer is not None:
        answer = str(answer).strip()
        if not answer:
            raise OracleError("Oracle response has an empty answer")

    return OracleAnswer(answer=answer, reasoning=str(reasoning))


@dataclass
class OracleConfig:
    """Configuration for PerplexityOracle."""
    api_key: str
    base_url: str = "https://api.perplexity.ai"
    model: str = "sonar"
    temperature: float = 0.7
    timeout: float = 60.0


class PerplexityOracle:
    """
    DecisionOracle backed by Perplexity's OpenAI-compatible chat API.

    Usage:
        oracle = PerplexityOracle(OracleConfig(api_key=...))
        answer = await oracle.ask(question, ["YES", "NO"])
        await oracle.close()
    """

    def __init__(
        self,
        config: OracleConfig,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """
        Args:
            config: Oracle configuration
            session: Optional aiohttp session (created on first request if not provided)
        """
        self.config = config
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=config.timeout)

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def _post(self, url: str, body: dict[str, Any], headers: dict[str, str]) -> Any:
        """POST a JSON body and return the parsed JSON reply."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        try:
            async with self._session.post(url, json=body, headers=headers) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise OracleError(
                        f"Oracle API error: {response.status} - {text[:200]}",
                        status_code=response.status,
                    )
                return await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise OracleError("Oracle request timed out") from e
        except aiohttp.ClientError as e:
            raise OracleError(f"Oracle request failed: {e}") from e
        except ValueError as e:
            raise OracleError(f"Oracle returned invalid JSON: {e}") from e

    async def ask(self, question: str, outcomes: Sequence[str]) -> OracleAnswer:
        body = {
            "model": self.config.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": json.dumps({"question": question, "outcomes": list(outcomes)})},
            ],
            "temperature": self.config.temperature,
        }
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        url = f"{self.config.base_url.rstrip('/')}/chat/completions"

        logger.info(f"Asking oracle: {question[:100]}")
        data = await self._post(url, body, headers)

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise OracleError(f"Unexpected oracle response shape: {e}") from e

        logger.debug(f"Oracle raw response: {content}")
        return parse_oracle_response(content)
