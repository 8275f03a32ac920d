"""Unit tests for the completion providers and SSE encoding."""

import json

import httpx
import pytest
from chatline.errors import UpstreamCategory, UpstreamError
from chatline.services.completion import (
    CompletionFinish,
    CompletionRequest,
    OpenAICompatibleProvider,
    TextDelta,
    Usage,
    create_provider,
)
from chatline.services.completion_mock import MockCompletionProvider
from chatline.sse import SSEEvent, encode_completion_event

REQUEST = CompletionRequest(
    messages=[{"role": "system", "content": "Be brief."}, {"role": "user", "content": "Hi"}],
    model="llama-3.1-8b-instant",
    temperature=0.7,
    max_tokens=64,
)


def sse_body(*chunks) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def provider_for(handler) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(
        api_base="https://llm.example.com/v1",
        api_key="test-key",
        timeout=5.0,
        transport=httpx.MockTransport(handler),
    )


async def collect(provider):
    return [event async for event in provider.stream(REQUEST)]


class TestOpenAICompatibleProvider:
    """Test streaming against a mocked chat completions endpoint."""

    @pytest.mark.asyncio
    async def test_streams_deltas_then_finish(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["payload"] = json.loads(request.content)
            return httpx.Response(
                200,
                content=sse_body(
                    {"choices": [{"delta": {"content": "Hello"}, "finish_reason": None}]},
                    {"choices": [{"delta": {"content": " there"}, "finish_reason": None}]},
                    {"choices": [{"delta": {}, "finish_reason": "stop"}]},
                    {
                        "choices": [],
                        "usage": {"prompt_tokens": 9, "completion_tokens": 2, "total_tokens": 11},
                    },
                ),
                headers={"Content-Type": "text/event-stream"},
            )

        events = await collect(provider_for(handler))

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hello", " there"]
        finish = events[-1]
        assert isinstance(finish, CompletionFinish)
        assert finish.text == "Hello there"
        assert finish.finish_reason == "stop"
        assert finish.usage.completion_tokens == 2

        assert seen["url"] == "https://llm.example.com/v1/chat/completions"
        assert seen["auth"] == "Bearer test-key"
        assert seen["payload"]["stream"] is True
        assert seen["payload"]["max_tokens"] == 64
        assert seen["payload"]["messages"][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_unknown_finish_reason_normalized(self):
        def handler(request):
            return httpx.Response(
                200,
                content=sse_body(
                    {"choices": [{"delta": {"content": "x"}, "finish_reason": "eos"}]}
                ),
            )

        events = await collect(provider_for(handler))

        assert events[-1].finish_reason == "unknown"

    @pytest.mark.asyncio
    async def test_tolerates_null_extensions_and_non_object_chunks(self):
        def handler(request):
            return httpx.Response(
                200,
                content=sse_body(
                    {"choices": [{"delta": {"content": "Hi"}}], "x_groq": None},
                    [1, 2, 3],
                    "keep-alive",
                    {
                        "choices": [{"delta": {}, "finish_reason": "stop"}],
                        "x_groq": {"usage": {"completion_tokens": 1}},
                    },
                ),
            )

        events = await collect(provider_for(handler))

        assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hi"]
        assert events[-1].finish_reason == "stop"
        assert events[-1].usage.completion_tokens == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,message,category",
        [
            (401, "Invalid API Key", UpstreamCategory.CREDENTIALS),
            (429, "Rate limit reached for model", UpstreamCategory.QUOTA),
            (403, "Forbidden", UpstreamCategory.QUOTA),
            (400, "Request blocked by content policy", UpstreamCategory.CONTENT_POLICY),
            (503, "Service unavailable", UpstreamCategory.UNAVAILABLE),
        ],
    )
    async def test_error_responses_are_classified(self, status, message, category):
        def handler(request):
            return httpx.Response(status, json={"error": {"message": message}})

        with pytest.raises(UpstreamError) as exc_info:
            await collect(provider_for(handler))

        assert exc_info.value.category is category
        assert message in exc_info.value.message

    @pytest.mark.asyncio
    async def test_stream_without_finish_is_an_error(self):
        def handler(request):
            return httpx.Response(
                200, content=b'data: {"choices": [{"delta": {"content": "cut"}}]}\n\n'
            )

        with pytest.raises(UpstreamError):
            await collect(provider_for(handler))

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamError) as exc_info:
            await collect(provider_for(handler))

        assert exc_info.value.category is UpstreamCategory.UNAVAILABLE


class TestMockProvider:
    """Test the canned provider."""

    @pytest.mark.asyncio
    async def test_greeting(self):
        events = await collect(MockCompletionProvider())

        assert events[-1].text.startswith("Hello!")
        assert "".join(e.text for e in events[:-1]) == events[-1].text
        assert events[-1].usage.completion_tokens > 0

    @pytest.mark.asyncio
    async def test_fixed_reply(self):
        provider = MockCompletionProvider(reply="one two")

        events = await collect(provider)

        assert [e.text for e in events[:-1]] == ["one ", "two"]
        assert provider.requests == [REQUEST]

    def test_selected_without_api_key(self, config):
        assert isinstance(create_provider(config), MockCompletionProvider)

    def test_http_provider_with_api_key(self, config):
        config.completion_api_key = "secret"

        assert isinstance(create_provider(config), OpenAICompatibleProvider)


class TestSSE:
    """Test SSE encoding."""

    def test_event_format(self):
        encoded = SSEEvent(event="delta", data={"text": "hi"}, id="abc").encode()

        assert encoded == 'id: abc\nevent: delta\ndata: {"text": "hi"}\n\n'

    def test_done_event_carries_conversation(self):
        encoded = encode_completion_event(
            CompletionFinish(text="x", usage=Usage(completion_tokens=1)), "conv-1"
        )

        assert "event: done" in encoded
        payload = json.loads(encoded.split("data: ", 1)[1])
        assert payload["conversation_id"] == "conv-1"
        assert payload["usage"]["completion_tokens"] == 1
