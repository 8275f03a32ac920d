"""Application services and their wiring."""

from dataclasses import dataclass

from chatline.config import Settings, settings as default_settings
from chatline.db import Storage, create_storage
from chatline.services.completion import CompletionProvider, create_provider
from chatline.services.conversations import ConversationStore
from chatline.services.identity import IdentityResolver
from chatline.services.messages import MessageStore
from chatline.services.orchestrator import CompletionOrchestrator
from chatline.services.rate_limit import RateLimiter, create_rate_limiter
from chatline.services.recorder import TurnRecorder
from chatline.services.replace import ReplacePipeline


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    config: Settings
    storage: Storage
    identity: IdentityResolver
    conversations: ConversationStore
    messages: MessageStore
    replace: ReplacePipeline
    rate_limiter: RateLimiter
    recorder: TurnRecorder
    orchestrator: CompletionOrchestrator

    async def start(self) -> None:
        await self.storage.connect()

    async def stop(self) -> None:
        await self.orchestrator.drain()
        await self.rate_limiter.close()
        await self.storage.disconnect()


def build_services(
    config: Settings | None = None,
    storage: Storage | None = None,
    provider: CompletionProvider | None = None,
    rate_limiter: RateLimiter | None = None,
    recorder: TurnRecorder | None = None,
) -> Services:
    """Wire the services from configuration; any collaborator may be supplied."""
    config = config or default_settings
    storage = storage or create_storage(config)
    provider = provider or create_provider(config)
    rate_limiter = rate_limiter or create_rate_limiter(config)
    recorder = recorder or TurnRecorder(
        max_attempts=config.persistence_max_attempts,
        backoff_seconds=config.persistence_backoff_seconds,
    )

    identity = IdentityResolver(storage)
    conversations = ConversationStore(storage)
    messages = MessageStore(storage)
    return Services(
        config=config,
        storage=storage,
        identity=identity,
        conversations=conversations,
        messages=messages,
        replace=ReplacePipeline(storage, conversations, messages),
        rate_limiter=rate_limiter,
        recorder=recorder,
        orchestrator=CompletionOrchestrator(
            storage,
            identity,
            conversations,
            messages,
            provider,
            rate_limiter,
            recorder,
            config=config,
        ),
    )


__all__ = [
    "CompletionOrchestrator",
    "ConversationStore",
    "IdentityResolver",
    "MessageStore",
    "RateLimiter",
    "ReplacePipeline",
    "Services",
    "TurnRecorder",
    "build_services",
]
