"""In-process storage backend for local development and tests.

Implements the same transactional contract as the PostgreSQL backend:
transactions are serialized with an ``asyncio.Lock`` and every write made inside
one is journaled, so a failing transaction restores exactly the records it touched.
Records are stored as copies so callers never alias stored state.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

from chatline.db.base import MessageStatsRow
from chatline.errors import DatabaseError
from chatline.models import (
    Conversation,
    ConversationStatus,
    Message,
    User,
    UserPreferences,
)

logger = logging.getLogger(__name__)

_MISSING = object()


class MemoryStorage:
    """Dict-backed collections with journaled transactions."""

    def __init__(self):
        self.users: dict[str, User] = {}
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, Message] = {}
        self._tx_lock = asyncio.Lock()

    async def connect(self) -> None:
        logger.info("Using in-memory storage")

    async def disconnect(self) -> None:
        return None

    @asynccontextmanager
    async def session(self) -> AsyncIterator["MemorySession"]:
        yield MemorySession(self)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemorySession"]:
        async with self._tx_lock:
            session = MemorySession(self, journal=[])
            try:
                yield session
            except BaseException:
                session.rollback()
                raise


class MemorySession:
    """Collection operations over a ``MemoryStorage``."""

    def __init__(self, storage: MemoryStorage, journal: list | None = None):
        self.storage = storage
        self._journal = journal
        self._journaled: set[tuple[int, str]] = set()

    def _write(self, table: dict[str, Any], key: str, value: Any) -> None:
        self._remember(table, key)
        table[key] = value

    def _remove(self, table: dict[str, Any], key: str) -> None:
        self._remember(table, key)
        del table[key]

    def _remember(self, table: dict[str, Any], key: str) -> None:
        if self._journal is None:
            return
        marker = (id(table), key)
        if marker in self._journaled:
            return
        self._journaled.add(marker)
        self._journal.append((table, key, table.get(key, _MISSING)))

    def rollback(self) -> None:
        """Undo every journaled write, newest first."""
        if not self._journal:
            return
        for table, key, previous in reversed(self._journal):
            if previous is _MISSING:
                table.pop(key, None)
            else:
                table[key] = previous
        logger.debug(f"Rolled back {len(self._journal)} in-memory writes")
        self._journal.clear()
        self._journaled.clear()

    # ============= User Operations =============

    async def get_user_by_external_id(self, external_id: str) -> User | None:
        for user in self.storage.users.values():
            if user.external_id == external_id:
                return user.model_copy(deep=True)
        return None

    async def insert_user_if_absent(self, user: User) -> tuple[User, bool]:
        # No await between lookup and insert, so this is atomic on the event loop
        for existing in self.storage.users.values():
            if existing.external_id == user.external_id:
                return existing.model_copy(deep=True), False
        self._write(self.storage.users, user.id, user.model_copy(deep=True))
        return user.model_copy(deep=True), True

    async def update_user_preferences(
        self, external_id: str, preferences: UserPreferences, updated_at: datetime
    ) -> User | None:
        for user in self.storage.users.values():
            if user.external_id == external_id:
                updated = user.model_copy(
                    update={"preferences": preferences.model_copy(), "updated_at": updated_at},
                    deep=True,
                )
                self._write(self.storage.users, user.id, updated)
                return updated.model_copy(deep=True)
        return None

    # ============= Conversation Operations =============

    async def insert_conversation(self, conversation: Conversation) -> Conversation:
        if conversation.id in self.storage.conversations:
            raise DatabaseError(
                f"Conversation {conversation.id} already exists.", code="DUPLICATE_KEY"
            )
        self._write(self.storage.conversations, conversation.id, conversation.model_copy(deep=True))
        return conversation.model_copy(deep=True)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self.storage.conversations.get(conversation_id)
        return conversation.model_copy(deep=True) if conversation else None

    async def increment_conversation_counters(
        self,
        conversation_id: str,
        message_delta: int,
        token_delta: int,
        touched_at: datetime | None,
    ) -> Conversation | None:
        conversation = self.storage.conversations.get(conversation_id)
        if conversation is None:
            return None
        changes: dict[str, Any] = {
            "message_count": conversation.message_count + message_delta,
            "total_tokens": conversation.total_tokens + token_delta,
        }
        if touched_at is not None:
            changes["last_message_at"] = touched_at
            changes["updated_at"] = touched_at
        updated = conversation.model_copy(update=changes, deep=True)
        self._write(self.storage.conversations, conversation_id, updated)
        return updated.model_copy(deep=True)

    async def set_conversation_counters(
        self,
        conversation_id: str,
        message_count: int,
        total_tokens: int,
        touched_at: datetime,
    ) -> Conversation | None:
        conversation = self.storage.conversations.get(conversation_id)
        if conversation is None:
            return None
        updated = conversation.model_copy(
            update={
                "message_count": message_count,
                "total_tokens": total_tokens,
                "last_message_at": touched_at,
                "updated_at": touched_at,
            },
            deep=True,
        )
        self._write(self.storage.conversations, conversation_id, updated)
        return updated.model_copy(deep=True)

    async def set_conversation_status(
        self, conversation_id: str, status: ConversationStatus, changed_at: datetime
    ) -> Conversation | None:
        conversation = self.storage.conversations.get(conversation_id)
        if conversation is None:
            return None
        changes: dict[str, Any] = {"status": status, "updated_at": changed_at}
        if status is ConversationStatus.ARCHIVED:
            changes["archived_at"] = changed_at
        elif status is ConversationStatus.DELETED:
            changes["deleted_at"] = changed_at
        updated = conversation.model_copy(update=changes, deep=True)
        self._write(self.storage.conversations, conversation_id, updated)
        return updated.model_copy(deep=True)

    async def list_conversations(
        self,
        owner_external_id: str,
        status: ConversationStatus,
        limit: int,
        before: datetime | None,
    ) -> list[Conversation]:
        matches = [
            c
            for c in self.storage.conversations.values()
            if c.owner_external_id == owner_external_id
            and c.status == status
            and (before is None or c.last_message_at < before)
        ]
        matches.sort(key=lambda c: (c.last_message_at, c.id), reverse=True)
        return [c.model_copy(deep=True) for c in matches[:limit]]

    async def count_conversations(
        self, owner_external_id: str, status: ConversationStatus
    ) -> int:
        return sum(
            1
            for c in self.storage.conversations.values()
            if c.owner_external_id == owner_external_id and c.status == status
        )

    # ============= Message Operations =============

    async def insert_messages(self, messages: list[Message]) -> None:
        for message in messages:
            await self.insert_message(message)

    async def insert_message(self, message: Message) -> None:
        if message.id in self.storage.messages:
            raise DatabaseError(f"Message {message.id} already exists.", code="DUPLICATE_KEY")
        self._write(self.storage.messages, message.id, message.model_copy(deep=True))

    async def get_message(self, message_id: str) -> Message | None:
        message = self.storage.messages.get(message_id)
        return message.model_copy(deep=True) if message else None

    async def save_message(self, message: Message) -> None:
        if message.id not in self.storage.messages:
            return
        self._write(self.storage.messages, message.id, message.model_copy(deep=True))

    def _live_messages(self, conversation_id: str) -> list[Message]:
        return [
            m
            for m in self.storage.messages.values()
            if m.conversation_id == conversation_id and m.deleted_at is None
        ]

    async def list_messages(
        self, conversation_id: str, limit: int, before: datetime | None
    ) -> list[Message]:
        matches = [
            m
            for m in self._live_messages(conversation_id)
            if before is None or m.created_at < before
        ]
        matches.sort(key=lambda m: (m.created_at, m.id), reverse=True)
        return [m.model_copy(deep=True) for m in matches[:limit]]

    async def count_messages(self, conversation_id: str) -> int:
        return len(self._live_messages(conversation_id))

    async def delete_conversation_messages(self, conversation_id: str) -> int:
        doomed = [
            m.id for m in self.storage.messages.values() if m.conversation_id == conversation_id
        ]
        for message_id in doomed:
            self._remove(self.storage.messages, message_id)
        return len(doomed)

    async def message_stats(self, conversation_id: str) -> MessageStatsRow:
        live = self._live_messages(conversation_id)
        if not live:
            return MessageStatsRow()
        return MessageStatsRow(
            total_messages=len(live),
            counted_tokens=sum(m.token_count for m in live if m.token_count is not None),
            uncounted_contents=[m.content for m in live if m.token_count is None],
            first_message_at=min(m.created_at for m in live),
            last_message_at=max(m.created_at for m in live),
        )
