from __future__ import annotations

from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from .schemas import CallMode, Credential, PipelineConfig


class LlmError(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class LlmTimeoutError(LlmError):
    pass


class LlmTransientError(LlmError):
    pass


class MalformedResponseError(LlmError):
    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class RateLimitExceeded(LlmError):
    """The service asked us to back off. Never retried automatically."""

    def __init__(self, message: str, retry_after: float, key_id: Optional[str] = None):
        super().__init__(message, status=429)
        self.retry_after = retry_after
        self.key_id = key_id
        self.partial_records: List[Any] = []


def _retry_after_seconds(exc: openai.APIStatusError, default: float) -> float:
    headers = getattr(getattr(exc, "response", None), "headers", None) or {}
    for name in ("retry-after", "x-ratelimit-reset-requests"):
        val = headers.get(name)
        if not val:
            continue
        try:
            return float(str(val).rstrip("s"))
        except ValueError:
            continue
    return default


class LlmJSONClient:
    """One credential's view of the chat completions API, returning raw text."""

    def __init__(
        self,
        credential: Optional[Credential] = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.0,
        timeout: float = 60,
        default_retry_after: float = 60.0,
    ):
        api_key = credential.api_key if credential is not None and credential.api_key else None
        # SDK-level retries are disabled; the resilient caller owns retry policy
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.key_id = credential.key_id if credential is not None else None
        self.model = model
        self.temperature = temperature
        self.default_retry_after = default_retry_after

    @classmethod
    def for_credential(cls, credential: Credential, config: Optional[PipelineConfig] = None) -> "LlmJSONClient":
        config = config or PipelineConfig()
        return cls(
            credential=credential,
            model=config.model,
            temperature=config.temperature,
            timeout=config.call_timeout_s,
            default_retry_after=config.default_rate_limit_wait_s,
        )

    async def submit(
        self,
        messages: List[Dict[str, Any]],
        mode: CallMode,
        json_schema: Optional[Dict] = None,
    ) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=messages,
                response_format=(
                    {"type": "json_schema", "json_schema": json_schema}
                    if json_schema is not None
                    else {"type": "json_object"}
                ),
            )
        except openai.RateLimitError as e:
            raise RateLimitExceeded(
                f"Rate limit reached for {mode} call: {e}",
                retry_after=_retry_after_seconds(e, self.default_retry_after),
                key_id=self.key_id,
            ) from e
        except openai.APITimeoutError as e:
            raise LlmTimeoutError(f"OpenAI request timed out: {e}") from e
        except openai.APIConnectionError as e:
            raise LlmTransientError(f"OpenAI connection failed: {e}") from e
        except openai.InternalServerError as e:
            raise LlmTransientError(f"OpenAI server error: {e}", status=e.status_code) from e
        except openai.APIStatusError as e:
            raise LlmError(f"OpenAI request failed: {e}", status=e.status_code) from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise MalformedResponseError(f"No content in response: {e}") from e
        if not content:
            raise MalformedResponseError("Empty content in response")
        return content
