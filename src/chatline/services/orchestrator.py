"""Completion orchestrator - the per-request chat turn state machine.

A turn moves RECEIVED -> VALIDATED -> (NEW_CONV_PRECREATED | EXISTING_CONV)
-> STREAMING -> FINISHED -> PERSISTED, or to FAILED from any state.

New conversations are created together with the user's message before the model
is called, so a client that navigates to the returned conversation ID right away
finds it. Existing conversations defer the user's message until the model
finishes. Both branches end in the same persistence step: the turn's pending
messages are appended and the counters incremented in one transaction, run by
the ``TurnRecorder`` after the stream has been delivered.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator

from pydantic import ValidationError as PydanticValidationError

from chatline.clock import clock
from chatline.config import Settings, settings as default_settings
from chatline.db import Storage
from chatline.errors import ChatlineError, ValidationError, field_errors
from chatline.models import (
    MAX_CONTENT_LENGTH,
    AIMetadata,
    Conversation,
    ConversationSettings,
    Message,
    MessageRole,
    User,
)
from chatline.schemas import ChatRequest
from chatline.services.completion import (
    CompletionEvent,
    CompletionFinish,
    CompletionProvider,
    CompletionRequest,
)
from chatline.services.conversations import ConversationStore
from chatline.services.identity import IdentityResolver
from chatline.services.messages import MessageStore
from chatline.services.rate_limit import RateLimiter
from chatline.services.recorder import TurnRecorder

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    NEW_CONV_PRECREATED = "new_conv_precreated"
    EXISTING_CONV = "existing_conv"
    STREAMING = "streaming"
    FINISHED = "finished"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class ChatTurn:
    """State of one completion request."""

    principal: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: TurnState = TurnState.RECEIVED
    history: list[TurnState] = field(default_factory=lambda: [TurnState.RECEIVED])
    request: ChatRequest | None = None
    user: User | None = None
    conversation_id: str | None = None
    is_new_conversation: bool = False
    conversation_settings: ConversationSettings | None = None
    model: str = ""
    temperature: float = 0.0
    max_tokens: int = 0
    system_message: str = ""
    # Messages written by the persistence step
    pending: list[Message] = field(default_factory=list)
    error: str | None = None

    def transition(self, state: TurnState) -> None:
        logger.debug(f"Turn {self.id}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, error: Exception) -> None:
        self.error = str(error)
        self.transition(TurnState.FAILED)


def _last_user_message(request: ChatRequest) -> str | None:
    for message in reversed(request.messages):
        if message.role is MessageRole.USER:
            return message.content
    return None


class CompletionOrchestrator:
    """Runs chat turns from admission to persistence."""

    def __init__(
        self,
        storage: Storage,
        identity: IdentityResolver,
        conversations: ConversationStore,
        messages: MessageStore,
        provider: CompletionProvider,
        rate_limiter: RateLimiter,
        recorder: TurnRecorder,
        config: Settings | None = None,
    ):
        self.storage = storage
        self.identity = identity
        self.conversations = conversations
        self.messages = messages
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.recorder = recorder
        self.config = config or default_settings

    async def begin(self, principal: str, body: Any) -> ChatTurn:
        """Admit, validate and prepare a turn up to the point of streaming.

        Raises:
            RateLimitedError: Principal is over quota (nothing else is touched).
            ValidationError: Body is invalid (code ``INVALID_REQUEST``).
            NotFoundError: Conversation is missing or owned by someone else.
            DatabaseError: Pre-creation failed; the model is never called.

        """
        turn = ChatTurn(principal=principal)
        try:
            await self.rate_limiter.check(principal)
            turn.request = self._validate(body)
            turn.transition(TurnState.VALIDATED)

            turn.user = await self.identity.resolve_or_create_user(principal)
            if turn.request.conversation_id is None:
                await self._precreate(turn)
            else:
                await self._load_existing(turn)
        except ChatlineError as e:
            turn.fail(e)
            logger.info(f"Turn {turn.id} rejected: {e.code}")
            raise

        logger.info(
            f"Turn {turn.id} ready for conversation {turn.conversation_id} "
            f"({'new' if turn.is_new_conversation else 'existing'}, model {turn.model})"
        )
        return turn

    def _validate(self, body: Any) -> ChatRequest:
        if isinstance(body, ChatRequest):
            request = body
        else:
            try:
                request = ChatRequest.model_validate(body)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid chat request.", code="INVALID_REQUEST", details=field_errors(e.errors())
                ) from e
        if _last_user_message(request) is None:
            raise ValidationError(
                "Chat request must include a user message.", code="INVALID_REQUEST"
            )
        return request

    def _apply_parameters(self, turn: ChatTurn, settings: ConversationSettings) -> None:
        request = turn.request
        turn.conversation_settings = settings
        turn.model = request.model or settings.model
        turn.temperature = request.temperature if request.temperature is not None else settings.temperature
        turn.max_tokens = request.max_tokens if request.max_tokens is not None else settings.max_tokens
        turn.system_message = settings.system_message or self.config.system_message

    async def _precreate(self, turn: ChatTurn) -> None:
        """Create the conversation and store the user's message in one transaction."""
        request = turn.request
        content = _last_user_message(request)
        settings = ConversationSettings(
            model=request.model or turn.user.preferences.ai_model or self.config.default_model,
            temperature=request.temperature
            if request.temperature is not None
            else self.config.default_temperature,
            max_tokens=request.max_tokens
            if request.max_tokens is not None
            else self.config.default_max_tokens,
        )
        conversation_id = str(uuid.uuid4())

        async with self.storage.transaction() as session:
            await self.conversations.create_conversation(
                conversation_id,
                turn.principal,
                turn.user.id,
                content,
                settings,
                session=session,
            )
            await self.messages.create_message(
                conversation_id,
                MessageRole.USER,
                content,
                user_id=turn.user.id,
                owner_external_id=turn.principal,
                session=session,
            )

        turn.conversation_id = conversation_id
        turn.is_new_conversation = True
        self._apply_parameters(turn, settings)
        turn.transition(TurnState.NEW_CONV_PRECREATED)

    async def _load_existing(self, turn: ChatTurn) -> None:
        conversation: Conversation = await self.conversations.get_conversation(
            turn.request.conversation_id, turn.principal
        )
        turn.conversation_id = conversation.id
        self._apply_parameters(turn, conversation.settings)
        # Written together with the assistant's reply once the model finishes
        turn.pending.append(
            self.messages.build_message(
                conversation.id,
                MessageRole.USER,
                _last_user_message(turn.request),
                user_id=turn.user.id,
                owner_external_id=turn.principal,
            )
        )
        turn.transition(TurnState.EXISTING_CONV)

    def completion_request(self, turn: ChatTurn) -> CompletionRequest:
        messages = [{"role": "system", "content": turn.system_message}]
        messages.extend(
            {"role": m.role.value, "content": m.content} for m in turn.request.messages
        )
        return CompletionRequest(
            messages=messages,
            model=turn.model,
            temperature=turn.temperature,
            max_tokens=turn.max_tokens,
        )

    async def stream(self, turn: ChatTurn) -> AsyncIterator[CompletionEvent]:
        """Stream the completion for a prepared turn.

        Persistence is scheduled when the provider's finish event arrives; a
        stream abandoned before that point records nothing.
        """
        turn.transition(TurnState.STREAMING)
        started = time.monotonic()
        try:
            async for event in self.provider.stream(self.completion_request(turn)):
                if isinstance(event, CompletionFinish):
                    turn.transition(TurnState.FINISHED)
                    elapsed_ms = int((time.monotonic() - started) * 1000)
                    self._schedule_persistence(turn, event, elapsed_ms)
                yield event
        except ChatlineError as e:
            turn.fail(e)
            logger.error(f"Turn {turn.id} stream failed: {e.code}: {e.message}")
            raise
        finally:
            if turn.state is TurnState.STREAMING:
                turn.error = "aborted before finish"
                turn.transition(TurnState.FAILED)
                logger.info(f"Turn {turn.id} aborted before finish; nothing will be persisted")

    def _schedule_persistence(
        self, turn: ChatTurn, finish: CompletionFinish, elapsed_ms: int
    ) -> None:
        if not finish.text.strip():
            logger.warning(f"Turn {turn.id} finished with empty content; no assistant message stored")
            if not turn.pending:
                turn.transition(TurnState.PERSISTED)
                return

        pending = list(turn.pending)
        finished_at = clock.now()

        async def persist() -> None:
            messages = list(pending)
            if finish.text.strip():
                messages.append(self._assistant_message(turn, finish, elapsed_ms, finished_at))
            async with self.storage.transaction() as session:
                await self.messages.append_messages(session, turn.conversation_id, messages)

        self.recorder.record(
            turn.id,
            turn.conversation_id,
            persist,
            on_success=lambda: turn.transition(TurnState.PERSISTED),
        )

    def _assistant_message(
        self, turn: ChatTurn, finish: CompletionFinish, elapsed_ms: int, finished_at: datetime
    ) -> Message:
        """Build the stored assistant reply, cut to the message length bound."""
        content = finish.text
        finish_reason = finish.finish_reason
        token_count = finish.usage.completion_tokens
        if len(content) > MAX_CONTENT_LENGTH:
            logger.warning(
                f"Turn {turn.id} reply has {len(content)} characters; storing the first {MAX_CONTENT_LENGTH}"
            )
            content = content[:MAX_CONTENT_LENGTH]
            finish_reason = "length"
            # Provider usage covers the full reply, so estimate the stored part
            token_count = None
        return self.messages.build_message(
            turn.conversation_id,
            MessageRole.ASSISTANT,
            content,
            ai_metadata=AIMetadata(
                model=turn.model,
                temperature=turn.temperature,
                max_tokens=turn.max_tokens,
                token_count=token_count,
                finish_reason=finish_reason,
                response_time_ms=elapsed_ms,
            ),
            owner_external_id=turn.principal,
            created_at=finished_at,
        )

    async def drain(self) -> None:
        """Wait for outstanding persistence tasks."""
        await self.recorder.drain()
