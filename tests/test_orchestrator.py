"""Unit tests for the completion orchestrator state machine."""

import pytest
from chatline.db.memory import MemorySession
from chatline.errors import (
    DatabaseError,
    NotFoundError,
    RateLimitedError,
    UpstreamCategory,
    UpstreamError,
    ValidationError,
)
from chatline.models import MAX_CONTENT_LENGTH, MessageRole
from chatline.services import build_services
from chatline.services.completion import CompletionFinish, TextDelta
from chatline.services.completion_mock import MockCompletionProvider
from chatline.services.orchestrator import TurnState
from chatline.services.rate_limit import MemoryCounterStore, RateLimiter


async def run_turn(orchestrator, turn):
    """Consume a turn's stream, then wait for its persistence."""
    events = [event async for event in orchestrator.stream(turn)]
    await orchestrator.drain()
    return events


class FailingProvider:
    """Provider that rejects every request."""

    def __init__(self, error):
        self.error = error

    async def stream(self, request):
        raise self.error
        yield  # pragma: no cover


class TestNewConversation:
    """Test the pre-creation branch."""

    @pytest.mark.asyncio
    async def test_precreates_conversation_and_user_message(self, services, storage):
        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )

        assert turn.is_new_conversation
        assert turn.state is TurnState.NEW_CONV_PRECREATED
        assert turn.conversation_id in storage.conversations

        # Visible before the model has produced anything
        page = await services.messages.get_messages(turn.conversation_id)
        assert [(m.role, m.content) for m in page.messages] == [(MessageRole.USER, "Hello")]
        conversation = storage.conversations[turn.conversation_id]
        assert conversation.message_count == 1
        assert conversation.title == "Hello"

    @pytest.mark.asyncio
    async def test_finish_persists_assistant_message(self, services, storage, provider):
        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )

        events = await run_turn(services.orchestrator, turn)

        assert isinstance(events[-1], CompletionFinish)
        assert all(isinstance(e, TextDelta) for e in events[:-1])
        assert turn.state is TurnState.PERSISTED
        assert turn.history == [
            TurnState.RECEIVED,
            TurnState.VALIDATED,
            TurnState.NEW_CONV_PRECREATED,
            TurnState.STREAMING,
            TurnState.FINISHED,
            TurnState.PERSISTED,
        ]

        page = await services.messages.get_messages(turn.conversation_id)
        assert [m.role for m in page.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assistant = page.messages[1]
        assert assistant.content == events[-1].text
        assert assistant.ai_metadata.model == turn.model
        assert assistant.token_count == events[-1].usage.completion_tokens

        conversation = storage.conversations[turn.conversation_id]
        assert conversation.message_count == 2
        assert conversation.total_tokens == sum(m.token_count for m in page.messages)

    @pytest.mark.asyncio
    async def test_provider_receives_system_message_and_defaults(self, services, provider, config):
        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )
        await run_turn(services.orchestrator, turn)

        request = provider.requests[0]
        assert request.messages[0] == {"role": "system", "content": config.system_message}
        assert request.messages[1] == {"role": "user", "content": "Hello"}
        assert request.temperature == config.default_temperature
        assert request.max_tokens == config.default_max_tokens

    @pytest.mark.asyncio
    async def test_request_parameters_win(self, services, provider):
        turn = await services.orchestrator.begin(
            "user-1",
            {
                "messages": [{"role": "user", "content": "Hello"}],
                "model": "llama-3.3-70b-versatile",
                "temperature": 0.2,
                "maxTokens": 256,
            },
        )
        await run_turn(services.orchestrator, turn)

        request = provider.requests[0]
        assert request.model == "llama-3.3-70b-versatile"
        assert request.temperature == 0.2
        assert request.max_tokens == 256

    @pytest.mark.asyncio
    async def test_configured_default_model_without_preference(self, services, provider, config):
        config.default_model = "gpt-4o-mini"

        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )

        assert turn.model == "gpt-4o-mini"
        assert turn.conversation_settings.model == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_preferred_model_beats_default(self, services, config):
        config.default_model = "gpt-4o-mini"
        await services.identity.update_preferences("user-1", {"ai_model": "gpt-4o"})

        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )

        assert turn.model == "gpt-4o"

    @pytest.mark.asyncio
    async def test_precreation_failure_aborts_before_model(
        self, services, storage, provider, monkeypatch
    ):
        async def broken_insert(self, message):
            raise DatabaseError("write failed")

        monkeypatch.setattr(MemorySession, "insert_message", broken_insert)

        with pytest.raises(DatabaseError):
            await services.orchestrator.begin(
                "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
            )

        assert storage.conversations == {}
        assert provider.requests == []


class TestExistingConversation:
    """Test the deferred-write branch."""

    @pytest.mark.asyncio
    async def test_second_turn_adds_two_messages(self, services, storage):
        first = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )
        first_events = await run_turn(services.orchestrator, first)
        before = storage.conversations[first.conversation_id].message_count

        second = await services.orchestrator.begin(
            "user-1",
            {
                "conversationId": first.conversation_id,
                "messages": [
                    {"role": "user", "content": "Hello"},
                    {"role": "assistant", "content": first_events[-1].text},
                    {"role": "user", "content": "Tell me more"},
                ],
            },
        )
        assert second.state is TurnState.EXISTING_CONV
        assert not second.is_new_conversation
        # Nothing is written until the model finishes
        assert storage.conversations[first.conversation_id].message_count == before

        await run_turn(services.orchestrator, second)

        conversation = storage.conversations[first.conversation_id]
        assert conversation.message_count == before + 2
        page = await services.messages.get_messages(first.conversation_id)
        assert [m.content for m in page.messages][-2] == "Tell me more"
        assert conversation.total_tokens == sum(m.token_count for m in page.messages)

    @pytest.mark.asyncio
    async def test_foreign_conversation_not_found(self, services, provider, make_conversation):
        conversation = await make_conversation(owner="alice")

        with pytest.raises(NotFoundError):
            await services.orchestrator.begin(
                "mallory",
                {
                    "conversation_id": conversation.id,
                    "messages": [{"role": "user", "content": "Hi"}],
                },
            )
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_uses_conversation_settings(self, services, provider, make_conversation):
        conversation = await make_conversation()

        turn = await services.orchestrator.begin(
            "user-1",
            {"conversation_id": conversation.id, "messages": [{"role": "user", "content": "Hi"}]},
        )

        assert turn.model == conversation.settings.model
        assert turn.temperature == conversation.settings.temperature


class TestValidationAndLimits:
    """Test request admission."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"messages": []},
            {"messages": [{"role": "user", "content": ""}]},
            {"messages": [{"role": "user", "content": "x" * (MAX_CONTENT_LENGTH + 1)}]},
            {"messages": [{"role": "robot", "content": "Hi"}]},
            {"messages": [{"role": "user", "content": "Hi"}] * 51},
            {"messages": [{"role": "user", "content": "Hi"}], "temperature": 3},
            {"messages": [{"role": "user", "content": "Hi"}], "max_tokens": 0},
            {"messages": [{"role": "assistant", "content": "No user turn"}]},
            "not an object",
        ],
    )
    async def test_invalid_requests(self, services, storage, provider, body):
        with pytest.raises(ValidationError) as exc_info:
            await services.orchestrator.begin("user-1", body)

        assert exc_info.value.code == "INVALID_REQUEST"
        assert storage.conversations == {}
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_content_at_limit_accepted(self, services):
        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "x" * MAX_CONTENT_LENGTH}]}
        )
        assert turn.is_new_conversation

    @pytest.mark.asyncio
    async def test_rate_limited_before_any_side_effect(
        self, config, storage, provider, recorder, fake_time
    ):
        limiter = RateLimiter(MemoryCounterStore(time_fn=fake_time), limit=1, window_seconds=60)
        services = build_services(
            config, storage=storage, provider=provider, rate_limiter=limiter, recorder=recorder
        )
        body = {"messages": [{"role": "user", "content": "Hello"}]}
        await services.orchestrator.begin("user-1", body)

        with pytest.raises(RateLimitedError):
            await services.orchestrator.begin("user-1", body)
        assert len(storage.conversations) == 1

        fake_time.advance(61)
        await services.orchestrator.begin("user-1", body)
        assert len(storage.conversations) == 2


class TestStreamingFailures:
    """Test aborted streams, upstream errors and failed persistence."""

    @pytest.mark.asyncio
    async def test_abort_before_finish_persists_nothing(self, config, storage, recorder, rate_limiter):
        services = build_services(
            config,
            storage=storage,
            provider=MockCompletionProvider(reply="one two three four"),
            rate_limiter=rate_limiter,
            recorder=recorder,
        )
        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )

        stream = services.orchestrator.stream(turn)
        first = await anext(stream)
        assert isinstance(first, TextDelta)
        await stream.aclose()
        await services.orchestrator.drain()

        assert turn.state is TurnState.FAILED
        assert storage.conversations[turn.conversation_id].message_count == 1
        assert len(storage.messages) == 1

    @pytest.mark.asyncio
    async def test_upstream_error_fails_turn(self, config, storage, recorder, rate_limiter):
        services = build_services(
            config,
            storage=storage,
            provider=FailingProvider(
                UpstreamError("Invalid API key", category=UpstreamCategory.CREDENTIALS)
            ),
            rate_limiter=rate_limiter,
            recorder=recorder,
        )
        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )

        with pytest.raises(UpstreamError):
            await run_turn(services.orchestrator, turn)

        assert turn.state is TurnState.FAILED
        assert recorder.pending == 0
        assert storage.conversations[turn.conversation_id].message_count == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_stream(
        self, services, storage, recorder, sleep, monkeypatch
    ):
        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Hello"}]}
        )

        async def broken_insert(self, message):
            raise DatabaseError("write failed")

        monkeypatch.setattr(MemorySession, "insert_message", broken_insert)

        events = await run_turn(services.orchestrator, turn)

        assert isinstance(events[-1], CompletionFinish)
        assert turn.state is TurnState.FINISHED
        assert recorder.failure_count == 1
        assert recorder.failures[0].turn_id == turn.id
        assert recorder.failures[0].attempts == recorder.max_attempts
        assert len(sleep.delays) == recorder.max_attempts - 1

        conversation = storage.conversations[turn.conversation_id]
        assert conversation.message_count == 1
        assert len(storage.messages) == 1

    @pytest.mark.asyncio
    async def test_oversize_reply_is_delivered_and_stored_truncated(
        self, config, storage, recorder, rate_limiter
    ):
        reply = "word " * 3210
        services = build_services(
            config,
            storage=storage,
            provider=MockCompletionProvider(reply=reply),
            rate_limiter=rate_limiter,
            recorder=recorder,
        )
        turn = await services.orchestrator.begin(
            "user-1", {"messages": [{"role": "user", "content": "Write a long story"}]}
        )

        events = await run_turn(services.orchestrator, turn)

        finish = events[-1]
        assert isinstance(finish, CompletionFinish)
        assert finish.text == reply
        assert finish.finish_reason == "stop"
        assert turn.state is TurnState.PERSISTED
        assert recorder.failure_count == 0

        page = await services.messages.get_messages(turn.conversation_id)
        assistant = page.messages[-1]
        assert assistant.role is MessageRole.ASSISTANT
        assert assistant.content == reply[:MAX_CONTENT_LENGTH]
        assert assistant.ai_metadata.finish_reason == "length"
        conversation = storage.conversations[turn.conversation_id]
        assert conversation.message_count == 2
        assert conversation.total_tokens == sum(m.token_count for m in page.messages)

    @pytest.mark.asyncio
    async def test_oversize_reply_keeps_deferred_user_message(
        self, config, storage, recorder, rate_limiter, make_conversation
    ):
        conversation = await make_conversation()
        services = build_services(
            config,
            storage=storage,
            provider=MockCompletionProvider(reply="x" * (MAX_CONTENT_LENGTH + 500)),
            rate_limiter=rate_limiter,
            recorder=recorder,
        )
        turn = await services.orchestrator.begin(
            "user-1",
            {"conversation_id": conversation.id, "messages": [{"role": "user", "content": "More"}]},
        )

        events = await run_turn(services.orchestrator, turn)

        assert isinstance(events[-1], CompletionFinish)
        assert turn.state is TurnState.PERSISTED
        page = await services.messages.get_messages(conversation.id)
        assert [m.role for m in page.messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert len(page.messages[1].content) == MAX_CONTENT_LENGTH
        assert storage.conversations[conversation.id].message_count == 2
