"""Client for OpenAI-compatible streaming chat completion APIs."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

import httpx

from chatline.config import Settings, settings as default_settings
from chatline.errors import UpstreamError, classify_upstream_error

logger = logging.getLogger(__name__)

KNOWN_FINISH_REASONS = {"stop", "length", "content_filter", "tool_calls"}


@dataclass
class CompletionRequest:
    """Everything the provider needs for one completion."""

    messages: list[dict[str, str]]
    model: str
    temperature: float
    max_tokens: int


@dataclass
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class TextDelta:
    """A chunk of generated text."""

    text: str


@dataclass
class CompletionFinish:
    """Final event of a completed stream."""

    text: str
    usage: Usage = field(default_factory=Usage)
    finish_reason: str = "stop"


CompletionEvent = TextDelta | CompletionFinish


class CompletionProvider(Protocol):
    """Streams a completion as text deltas followed by exactly one finish event."""

    def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionEvent]: ...


def normalize_finish_reason(reason: str | None) -> str:
    if reason in KNOWN_FINISH_REASONS:
        return reason
    return "unknown"


def _error_message(body: bytes) -> str:
    """Pull the provider's error message out of an error response body."""
    text = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    if error:
        return str(error)
    return text


class OpenAICompatibleProvider:
    """Streams completions from a ``/chat/completions`` endpoint over SSE."""

    def __init__(
        self,
        api_base: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        config = config or default_settings
        self.api_base = (api_base or config.completion_api_base).rstrip("/")
        self.api_key = api_key if api_key is not None else config.completion_api_key
        self.timeout = timeout or config.completion_timeout
        self.transport = transport

    async def stream(self, request: CompletionRequest) -> AsyncIterator[CompletionEvent]:
        """Stream a completion.

        Yields:
            ``TextDelta`` events, then one ``CompletionFinish``.

        Raises:
            UpstreamError: When the provider rejects the request, cannot be
                reached, or ends the stream without finishing.

        """
        payload = {
            "model": request.model,
            "messages": request.messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        parts: list[str] = []
        usage = Usage()
        finish_reason: str | None = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                async with client.stream(
                    "POST",
                    f"{self.api_base}/chat/completions",
                    json=payload,
                    headers=headers,
                ) as response:
                    if response.status_code >= 400:
                        message = _error_message(await response.aread())
                        category = classify_upstream_error(message, response.status_code)
                        logger.error(
                            f"Completion provider HTTP {response.status_code} ({category.value}): {message}"
                        )
                        raise UpstreamError(message, category=category)

                    async for line in response.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        data = line[6:]
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(chunk, dict):
                            continue

                        if "error" in chunk:
                            message = _error_message(data.encode("utf-8"))
                            raise UpstreamError(message, category=classify_upstream_error(message))

                        chunk_usage = chunk.get("usage") or (chunk.get("x_groq") or {}).get("usage")
                        if chunk_usage:
                            usage = _parse_usage(chunk_usage)

                        for choice in chunk.get("choices") or []:
                            if not isinstance(choice, dict):
                                continue
                            text = (choice.get("delta") or {}).get("content")
                            if text:
                                parts.append(text)
                                yield TextDelta(text=text)
                            if choice.get("finish_reason"):
                                finish_reason = choice["finish_reason"]
            except httpx.RequestError as e:
                logger.error(f"Completion provider request error: {e}")
                raise UpstreamError(f"Completion provider unreachable: {e}") from e

        if finish_reason is None:
            raise UpstreamError("Completion stream ended before a finish reason was received.")

        yield CompletionFinish(
            text="".join(parts),
            usage=usage,
            finish_reason=normalize_finish_reason(finish_reason),
        )


def _parse_usage(raw: dict[str, Any]) -> Usage:
    return Usage(
        prompt_tokens=raw.get("prompt_tokens"),
        completion_tokens=raw.get("completion_tokens"),
        total_tokens=raw.get("total_tokens"),
    )


def create_provider(config: Settings | None = None) -> CompletionProvider:
    """Build the provider selected by configuration (the mock when no API key is set)."""
    from chatline.services.completion_mock import MockCompletionProvider

    config = config or default_settings
    if not config.completion_api_key:
        logger.warning("No completion API key configured, using mock completion provider")
        return MockCompletionProvider()
    return OpenAICompatibleProvider(config=config)
