"""Shared fixtures: in-memory storage, mock provider and wired services."""

import uuid

import pytest
from chatline.config import Settings
from chatline.db import MemoryStorage
from chatline.models import ConversationSettings
from chatline.services import build_services
from chatline.services.completion_mock import MockCompletionProvider
from chatline.services.rate_limit import MemoryCounterStore, RateLimiter
from chatline.services.recorder import TurnRecorder


class FakeTime:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that only records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def config():
    return Settings(
        _env_file=None,
        storage_backend="memory",
        completion_api_key="",
        redis_url="",
        dev_principal=None,
        rate_limit_requests=30,
        rate_limit_window_seconds=60,
        persistence_max_attempts=3,
        persistence_backoff_seconds=0.5,
    )


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def provider():
    return MockCompletionProvider()


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def rate_limiter(config, fake_time):
    return RateLimiter(
        MemoryCounterStore(time_fn=fake_time),
        limit=config.rate_limit_requests,
        window_seconds=config.rate_limit_window_seconds,
    )


@pytest.fixture
def recorder(config, sleep):
    return TurnRecorder(
        max_attempts=config.persistence_max_attempts,
        backoff_seconds=config.persistence_backoff_seconds,
        sleep=sleep,
    )


@pytest.fixture
def services(config, storage, provider, rate_limiter, recorder):
    return build_services(
        config,
        storage=storage,
        provider=provider,
        rate_limiter=rate_limiter,
        recorder=recorder,
    )


@pytest.fixture
def chat_settings():
    return ConversationSettings(model="llama-3.1-8b-instant")


@pytest.fixture
def make_conversation(services, chat_settings):
    """Create a user plus an empty conversation they own."""

    async def _make(owner: str = "user-1", title: str = "Test conversation", conversation_id=None):
        user = await services.identity.resolve_or_create_user(owner)
        return await services.conversations.create_conversation(
            conversation_id or str(uuid.uuid4()),
            owner,
            user.id,
            title,
            chat_settings,
        )

    return _make
