"""
Reasoning client for an OpenAI/OpenRouter-compatible chat completion API.

Two modes:
- complete(): single request, single reply
- stream_complete(): lazy async iterator over text deltas parsed from the
  provider's `data: {...}` event stream

The client holds no conversation state; callers pass the full message list.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Sequence

import aiohttp

from logging_setup import get_logger, Component
from .errors import EmptyResponseError, TransportError


logger = get_logger(Component.REASONING)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"
STREAM_DONE = "[DONE]"


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "system" | "user" | "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class CompletionResult:
    content: str
    usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class CompletionOptions:
    max_tokens: int = 1000
    temperature: float = 0.7
    top_p: float = 0.9
    # Passed through to the request body as-is (e.g. "stop", "seed")
    extra: Dict[str, Any] = field(default_factory=dict)


class ReasoningClient:
    """
    Request/response client for the remote completion service.

    A session passed in by the caller is borrowed and never closed here;
    otherwise one is created lazily and closed by close().
    Once closed, the client refuses new requests with TransportError.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        default_model: str = DEFAULT_MODEL,
        timeout_seconds: float = 30.0,
        app_title: str = "Voice Agent Framework",
        referer: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._app_title = app_title
        self._referer = referer
        self._session = session
        self._owns_session = session is None
        self._closed = False

    async def __aenter__(self) -> "ReasoningClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        self._closed = True
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None if self._owns_session else self._session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise TransportError(None, "client is closed")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "X-Title": self._app_title,
        }
        if self._referer:
            headers["HTTP-Referer"] = self._referer
        return headers

    def _body(
        self,
        messages: Sequence[ChatMessage],
        model: Optional[str],
        options: Optional[CompletionOptions],
        stream: bool,
    ) -> Dict[str, Any]:
        opts = options or CompletionOptions()
        body: Dict[str, Any] = {
            "model": model or self.default_model,
            "messages": [m.to_dict() for m in messages],
            "max_tokens": opts.max_tokens,
            "temperature": opts.temperature,
            "top_p": opts.top_p,
            "stream": stream,
        }
        body.update(opts.extra)
        return body

    async def complete(
        self,
        messages: Sequence[ChatMessage],
        model: Optional[str] = None,
        options: Optional[CompletionOptions] = None,
    ) -> CompletionResult:
        """
        Single-shot completion.

        Raises:
            TransportError: network failure, timeout or non-2xx response
            EmptyResponseError: the provider returned no choices
        """
        body = self._body(messages, model, options, stream=False)
        start_ts = time.perf_counter()
        logger.debug("LLM request", model=body["model"], message_count=len(body["messages"]))

        try:
            async with self._get_session().post(
                self.endpoint, json=body, headers=self._headers(), timeout=self._timeout
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise TransportError(resp.status, await _error_detail(resp))
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(None, str(e) or type(e).__name__) from e
        except json.JSONDecodeError as e:
            raise TransportError(None, f"invalid JSON response: {e}") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise EmptyResponseError()

        message = choices[0].get("message")
        content = message.get("content") if isinstance(message, dict) else None
        content = content.strip() if isinstance(content, str) else ""
        usage = _parse_usage(data.get("usage"))

        logger.info(
            "LLM response",
            model=body["model"],
            content_length=len(content),
            total_tokens=usage.total_tokens if usage else None,
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )
        return CompletionResult(content=content, usage=usage)

    async def stream_complete(
        self,
        messages: Sequence[ChatMessage],
        model: Optional[str] = None,
        options: Optional[CompletionOptions] = None,
    ) -> AsyncIterator[str]:
        """
        Incremental completion: yields text deltas as they arrive.

        The iterator is finite and single-use. It stops at `data: [DONE]` or
        when the connection closes; lines that are not valid events are skipped.
        """
        body = self._body(messages, model, options, stream=True)
        start_ts = time.perf_counter()
        delta_count = 0

        try:
            async with self._get_session().post(
                self.endpoint, json=body, headers=self._headers(), timeout=self._timeout
            ) as resp:
                if not 200 <= resp.status < 300:
                    raise TransportError(resp.status, await _error_detail(resp))

                async for raw_line in resp.content:
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == STREAM_DONE:
                        break
                    delta = _parse_delta(data)
                    if delta:
                        delta_count += 1
                        yield delta
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(None, str(e) or type(e).__name__) from e

        logger.info(
            "LLM stream finished",
            model=body["model"],
            delta_count=delta_count,
            latency_ms=int((time.perf_counter() - start_ts) * 1000),
        )


async def _error_detail(resp: aiohttp.ClientResponse) -> str:
    """Provider-supplied error message, falling back to the HTTP reason."""
    try:
        payload = await resp.json(content_type=None)
    except (ValueError, aiohttp.ClientError):
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
    return resp.reason or "unknown error"


def _parse_usage(usage: Any) -> Optional[TokenUsage]:
    if not isinstance(usage, dict):
        return None
    return TokenUsage(
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
        total_tokens=int(usage.get("total_tokens") or 0),
    )


def _parse_delta(data: str) -> Optional[str]:
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict):
        return None
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None

