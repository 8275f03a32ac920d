"""Storage contract shared by the PostgreSQL and in-memory backends."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncContextManager, Protocol

from chatline.models import (
    Conversation,
    ConversationStatus,
    Message,
    User,
    UserPreferences,
)


@dataclass
class MessageStatsRow:
    """Raw aggregate over a conversation's live messages."""

    total_messages: int = 0
    counted_tokens: int = 0
    # Contents of live messages with no stored token count
    uncounted_contents: list[str] = field(default_factory=list)
    first_message_at: datetime | None = None
    last_message_at: datetime | None = None


class StorageSession(Protocol):
    """Collection operations, bound to one connection or one transaction."""

    # ============= Users =============

    async def get_user_by_external_id(self, external_id: str) -> User | None: ...

    async def insert_user_if_absent(self, user: User) -> tuple[User, bool]: ...

    async def update_user_preferences(
        self, external_id: str, preferences: UserPreferences, updated_at: datetime
    ) -> User | None: ...

    # ============= Conversations =============

    async def insert_conversation(self, conversation: Conversation) -> Conversation: ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def increment_conversation_counters(
        self,
        conversation_id: str,
        message_delta: int,
        token_delta: int,
        touched_at: datetime | None,
    ) -> Conversation | None: ...

    async def set_conversation_counters(
        self,
        conversation_id: str,
        message_count: int,
        total_tokens: int,
        touched_at: datetime,
    ) -> Conversation | None: ...

    async def set_conversation_status(
        self, conversation_id: str, status: ConversationStatus, changed_at: datetime
    ) -> Conversation | None: ...

    async def list_conversations(
        self,
        owner_external_id: str,
        status: ConversationStatus,
        limit: int,
        before: datetime | None,
    ) -> list[Conversation]: ...

    async def count_conversations(
        self, owner_external_id: str, status: ConversationStatus
    ) -> int: ...

    # ============= Messages =============

    async def insert_messages(self, messages: list[Message]) -> None: ...

    async def get_message(self, message_id: str) -> Message | None: ...

    async def save_message(self, message: Message) -> None: ...

    async def list_messages(
        self, conversation_id: str, limit: int, before: datetime | None
    ) -> list[Message]: ...

    async def count_messages(self, conversation_id: str) -> int: ...

    async def delete_conversation_messages(self, conversation_id: str) -> int: ...

    async def message_stats(self, conversation_id: str) -> MessageStatsRow: ...


class Storage(Protocol):
    """A transactional collection store."""

    def session(self) -> AsyncContextManager[StorageSession]:
        """Non-transactional session; each operation is individually atomic."""
        ...

    def transaction(self) -> AsyncContextManager[StorageSession]:
        """Multi-document transaction; commits on exit, rolls back on error."""
        ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...
