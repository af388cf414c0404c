from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Protocol

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .chunker import estimate_tokens
from .llm_client import LlmTimeoutError, MalformedResponseError, RateLimitExceeded
from .schemas import CallMode, PipelineConfig, UsageCounters

logger = logging.getLogger(__name__)

RESPONSE_LIST_KEYS: Dict[str, tuple] = {
    "extract": ("courses", "records", "data"),
    "map": ("mappings", "results", "data"),
}


class InferenceBackend(Protocol):
    async def submit(
        self,
        messages: List[Dict[str, Any]],
        mode: CallMode,
        json_schema: Optional[Dict] = None,
    ) -> str:
        """Submit one prompt and return the raw response text.

        Raises:
            RateLimitExceeded: the service signalled 429.
            LlmError: any other failure.
        """
        ...


@dataclass
class RequestLogEntry:
    timestamp: str
    mode: str
    label: Optional[str]
    attempt: int
    outcome: str
    elapsed_s: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RequestLog:
    """Bounded ring buffer of recent external calls, for debugging."""

    def __init__(self, capacity: int = 50):
        self._entries: Deque[RequestLogEntry] = deque(maxlen=capacity)

    def append(self, entry: RequestLogEntry) -> None:
        self._entries.append(entry)

    def entries(self) -> List[RequestLogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def _strip_fences(text: str) -> str:
    s = text.strip()
    if "```json" in s:
        s = s.split("```json", 1)[1].split("```", 1)[0]
    elif s.startswith("```"):
        s = s.split("```", 2)[1]
    return s.strip()


def parse_records(text: str, mode: CallMode) -> List[Dict[str, Any]]:
    """
    Pull the record list out of a model response.

    Accepts a JSON object holding the list under a known key, a bare JSON list,
    or a list embedded in surrounding prose.
    """
    s = _strip_fences(text or "")
    if not s:
        raise MalformedResponseError("Empty response body", raw_text=text or "")

    parsed: Any = None
    try:
        parsed = json.loads(s)
    except json.JSONDecodeError:
        first = s.find("[")
        if first == -1:
            raise MalformedResponseError("No JSON array found in response", raw_text=text)
        try:
            parsed, _ = json.JSONDecoder().raw_decode(s[first:])
        except json.JSONDecodeError as e:
            raise MalformedResponseError(f"Invalid JSON returned: {e}", raw_text=text)

    if isinstance(parsed, dict):
        items = None
        for key in RESPONSE_LIST_KEYS[mode]:
            if isinstance(parsed.get(key), list):
                items = parsed[key]
                break
        if items is None:
            items = next((v for v in parsed.values() if isinstance(v, list)), None)
        if items is None:
            raise MalformedResponseError("Response object holds no record list", raw_text=text)
        parsed = items

    if not isinstance(parsed, list):
        raise MalformedResponseError(f"Expected a JSON list, got {type(parsed).__name__}", raw_text=text)
    return [item for item in parsed if isinstance(item, dict)]


class ResilientCaller:
    """
    Run one extraction/mapping call with a hard timeout and bounded retries.

    - timeouts, transient and other errors: retried with exponential backoff,
      then given up on with an empty result
    - rate limits: raised immediately as RateLimitExceeded
    - malformed bodies: empty result, not retried
    """

    def __init__(
        self,
        backend: InferenceBackend,
        config: Optional[PipelineConfig] = None,
        request_log: Optional[RequestLog] = None,
    ):
        self.backend = backend
        self.config = config or PipelineConfig()
        self.request_log = request_log
        self.usage = UsageCounters()

    def _record(self, mode: str, label: Optional[str], attempt: int, outcome: str, started: float,
                error: Optional[BaseException] = None) -> None:
        if self.request_log is None:
            return
        self.request_log.append(
            RequestLogEntry(
                timestamp=datetime.now(timezone.utc).isoformat(),
                mode=mode,
                label=label,
                attempt=attempt,
                outcome=outcome,
                elapsed_s=round(time.monotonic() - started, 3),
                error=str(error) if error is not None else None,
            )
        )

    async def _attempt(
        self,
        messages: List[Dict[str, Any]],
        mode: CallMode,
        json_schema: Optional[Dict],
        label: Optional[str],
        attempt: int,
    ) -> str:
        started = time.monotonic()
        self.usage.calls_attempted += 1
        self.usage.estimated_prompt_tokens += sum(estimate_tokens(str(m.get("content", ""))) for m in messages)
        try:
            text = await asyncio.wait_for(
                self.backend.submit(messages, mode, json_schema),
                timeout=self.config.call_timeout_s,
            )
        except asyncio.TimeoutError as e:
            self._record(mode, label, attempt, "timeout", started, e)
            raise LlmTimeoutError(f"{mode} call exceeded {self.config.call_timeout_s}s") from e
        except RateLimitExceeded as e:
            self._record(mode, label, attempt, "rate_limited", started, e)
            raise
        except Exception as e:
            self._record(mode, label, attempt, "error", started, e)
            raise
        self.usage.calls_succeeded += 1
        self._record(mode, label, attempt, "ok", started)
        return text

    async def call(
        self,
        messages: List[Dict[str, Any]],
        mode: CallMode,
        json_schema: Optional[Dict] = None,
        label: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(multiplier=self.config.backoff_initial_s, max=self.config.backoff_max_s),
            retry=(
                retry_if_exception_type(Exception)
                & retry_if_not_exception_type((RateLimitExceeded, MalformedResponseError))
            ),
        )
        text: Optional[str] = None
        try:
            async for attempt in retrying:
                with attempt:
                    text = await self._attempt(
                        messages, mode, json_schema, label, attempt.retry_state.attempt_number
                    )
        except RateLimitExceeded:
            raise
        except MalformedResponseError as e:
            logger.warning("Malformed %s response for %s: %s", mode, label or "call", e)
            return []
        except Exception as e:
            logger.warning(
                "Giving up on %s call %s after %d attempts: %s",
                mode, label or "", self.config.max_attempts, e,
            )
            return []

        try:
            return parse_records(text or "", mode)
        except MalformedResponseError as e:
            logger.warning("Malformed %s response for %s: %s | %s", mode, label or "call", e, (text or "")[:200])
            return []
