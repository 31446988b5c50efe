from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from kami.core.credentials import CredentialPool, mask_key
from kami.core.errors import (
    CompletionError,
    InvalidCompletionRequestError,
    PoolExhaustedError,
    RateLimitError,
    RequestTooLargeError,
)
from kami.core.metrics import metrics

logger = logging.getLogger(__name__)

_RATE_LIMIT_RE = re.compile(r"rate[_\s-]?limit", flags=re.IGNORECASE)


@dataclass
class CompletionRequest:
    messages: list[dict[str, str]]
    model: str
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stream: bool = False

    def to_payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages,
            "temperature": self.temperature,
            "stream": self.stream,
        }
        if self.max_tokens:
            body["max_tokens"] = self.max_tokens
        if self.top_p is not None:
            body["top_p"] = self.top_p
        return body


@dataclass
class CompletionResult:
    content: str
    model: str
    attempts: int
    credential: str
    tokens: int = 0
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


def is_rate_limit_message(message: str | None) -> bool:
    return bool(message) and _RATE_LIMIT_RE.search(message or "") is not None


def _extract_content(data: dict) -> str:
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0]
        if isinstance(choice, dict):
            message = choice.get("message")
            if isinstance(message, dict):
                content = message.get("content")
                if content is not None:
                    return str(content)
            text = choice.get("text")
            if text is not None:
                return str(text)
    return ""


def _extract_tokens(data: dict) -> int:
    usage = data.get("usage")
    if isinstance(usage, dict):
        total = usage.get("total_tokens")
        if isinstance(total, int) and total > 0:
            return total
    return 0


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            code = error.get("code") or error.get("type")
            return f"{code}: {error['message']}" if code else str(error["message"])
        if isinstance(error, str):
            return error
    return response.text[:300]


def _classify_http_error(status_code: int, message: str) -> CompletionError:
    if status_code == 429 or is_rate_limit_message(message):
        return RateLimitError(message or "rate limited", status_code=status_code)
    if status_code == 413:
        return RequestTooLargeError(message or "request too large", status_code=status_code)
    if status_code == 400:
        return InvalidCompletionRequestError(message or "invalid request", status_code=status_code)
    return CompletionError(f"http_{status_code}: {message}", status_code=status_code)


class CompletionGateway:
    """Sends one chat completion, rotating keys while the provider rate limits."""

    def __init__(
        self,
        pool: CredentialPool,
        base_url: str,
        *,
        timeout_sec: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.pool = pool
        self.base_url = base_url.rstrip("/")
        self.timeout_sec = timeout_sec
        self._transport = transport

    def _url(self) -> str:
        return f"{self.base_url}/chat/completions"

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        max_attempts = self.pool.size
        last_error: Exception | None = None
        started = time.perf_counter()
        async with httpx.AsyncClient(timeout=self.timeout_sec, transport=self._transport) as client:
            for attempt in range(1, max_attempts + 1):
                credential = self.pool.select()
                try:
                    data = await self._send(client, credential, request)
                except RateLimitError as exc:
                    last_error = exc
                    metrics.inc("llm_attempt_total", {"model": request.model, "result": "rate_limited"})
                    logger.warning(
                        "rate limit on key %s (attempt %d/%d), trying next",
                        mask_key(credential),
                        attempt,
                        max_attempts,
                    )
                    continue
                except CompletionError:
                    metrics.inc("llm_attempt_total", {"model": request.model, "result": "error"})
                    raise
                metrics.inc("llm_attempt_total", {"model": request.model, "result": "ok"})
                took_ms = int((time.perf_counter() - started) * 1000)
                logger.debug("completion ok model=%s attempts=%d took_ms=%d", request.model, attempt, took_ms)
                return CompletionResult(
                    content=_extract_content(data),
                    model=str(data.get("model") or request.model),
                    attempts=attempt,
                    credential=mask_key(credential),
                    tokens=_extract_tokens(data),
                    raw=data,
                )
        metrics.inc("llm_pool_exhausted_total", {"model": request.model})
        raise PoolExhaustedError(max_attempts, last_error)

    async def _send(self, client: httpx.AsyncClient, credential: str, request: CompletionRequest) -> dict:
        headers = {
            "content-type": "application/json",
            "authorization": f"Bearer {credential}",
        }
        try:
            response = await client.post(self._url(), json=request.to_payload(), headers=headers)
        except httpx.HTTPError as exc:
            if is_rate_limit_message(str(exc)):
                raise RateLimitError(str(exc)) from exc
            raise CompletionError(f"transport error: {exc}") from exc

        if response.status_code >= 400:
            raise _classify_http_error(response.status_code, _error_message(response))
        try:
            data = response.json()
        except ValueError as exc:
            raise CompletionError("provider returned invalid json") from exc
        if not isinstance(data, dict):
            raise CompletionError("provider returned unexpected payload")
        return data
