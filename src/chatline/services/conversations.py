"""Conversation store - CRUD and atomic counter updates for conversation aggregates."""

import logging
import re
from dataclasses import dataclass

from chatline.clock import clock
from chatline.db import Storage, StorageSession
from chatline.errors import NotFoundError, ValidationError
from chatline.models import (
    TITLE_MAX_LENGTH,
    Conversation,
    ConversationSettings,
    ConversationStatus,
)
from chatline.pagination import decode_cursor, encode_cursor

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_LIMIT = 20
MAX_CONVERSATION_LIMIT = 100

_WHITESPACE = re.compile(r"\s+")


def derive_title(source: str) -> str:
    """Build a conversation title from the first user message.

    Whitespace is collapsed and titles longer than 50 characters are cut to 50
    with a trailing ellipsis.
    """
    text = _WHITESPACE.sub(" ", source or "").strip()
    if not text:
        raise ValidationError("Conversation title source must not be empty.")
    if len(text) > TITLE_MAX_LENGTH:
        return text[:TITLE_MAX_LENGTH] + "..."
    return text


@dataclass
class ConversationPage:
    """One page of a principal's conversations."""

    conversations: list[Conversation]
    next_cursor: str | None
    total: int


class ConversationStore:
    """Conversation persistence and aggregate maintenance."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def create_conversation(
        self,
        conversation_id: str,
        owner_external_id: str,
        owner_user_id: str,
        title_source: str,
        settings: ConversationSettings,
        session: StorageSession | None = None,
    ) -> Conversation:
        """Create a conversation under a caller-supplied ID."""
        if not conversation_id:
            raise ValidationError("Conversation ID is required.")

        now = clock.now()
        conversation = Conversation(
            id=conversation_id,
            owner_external_id=owner_external_id,
            owner_user_id=owner_user_id,
            title=derive_title(title_source),
            settings=settings,
            last_message_at=now,
            created_at=now,
            updated_at=now,
        )

        if session is not None:
            created = await session.insert_conversation(conversation)
        else:
            async with self.storage.session() as s:
                created = await s.insert_conversation(conversation)

        logger.info(f"Created conversation {created.id} for principal {owner_external_id}")
        return created

    async def get_conversation(
        self,
        conversation_id: str,
        owner_external_id: str,
        session: StorageSession | None = None,
    ) -> Conversation:
        """Get a conversation the principal owns.

        Missing, deleted and foreign conversations all raise the same
        ``NotFoundError`` so existence is never leaked.
        """
        if session is not None:
            conversation = await session.get_conversation(conversation_id)
        else:
            async with self.storage.session() as s:
                conversation = await s.get_conversation(conversation_id)

        if (
            conversation is None
            or conversation.owner_external_id != owner_external_id
            or conversation.status is ConversationStatus.DELETED
        ):
            raise NotFoundError(
                "Conversation not found or access denied.", code="CONVERSATION_NOT_FOUND"
            )
        return conversation

    async def increment_counters(
        self,
        conversation_id: str,
        message_delta: int,
        token_delta: int,
        session: StorageSession | None = None,
        touch: bool = True,
    ) -> Conversation:
        """Atomically add to the message and token counters.

        With ``touch`` the last-activity timestamp is refreshed as well.
        """
        touched_at = clock.now() if touch else None
        if session is not None:
            updated = await session.increment_conversation_counters(
                conversation_id, message_delta, token_delta, touched_at
            )
        else:
            async with self.storage.session() as s:
                updated = await s.increment_conversation_counters(
                    conversation_id, message_delta, token_delta, touched_at
                )

        if updated is None:
            raise NotFoundError("Conversation not found.", code="CONVERSATION_NOT_FOUND")
        return updated

    async def get_user_conversations(
        self,
        owner_external_id: str,
        limit: int = DEFAULT_CONVERSATION_LIMIT,
        cursor: str | None = None,
    ) -> ConversationPage:
        """List active conversations, most recently active first.

        The cursor is "strictly before" the last seen activity timestamp, so
        conversations sharing that exact timestamp at a page boundary are
        skipped rather than repeated.
        """
        if not 1 <= limit <= MAX_CONVERSATION_LIMIT:
            raise ValidationError(f"Limit must be between 1 and {MAX_CONVERSATION_LIMIT}.")
        before = decode_cursor(cursor) if cursor else None

        async with self.storage.session() as session:
            conversations = await session.list_conversations(
                owner_external_id, ConversationStatus.ACTIVE, limit, before
            )
            total = await session.count_conversations(
                owner_external_id, ConversationStatus.ACTIVE
            )

        next_cursor = None
        if len(conversations) == limit:
            next_cursor = encode_cursor(conversations[-1].last_message_at)

        return ConversationPage(conversations=conversations, next_cursor=next_cursor, total=total)

    async def archive_conversation(
        self, conversation_id: str, owner_external_id: str
    ) -> Conversation:
        """Move an active conversation to the archive."""
        async with self.storage.transaction() as session:
            conversation = await self.get_conversation(
                conversation_id, owner_external_id, session=session
            )
            if conversation.status is not ConversationStatus.ACTIVE:
                raise NotFoundError(
                    "Active conversation not found or access denied.",
                    code="CONVERSATION_NOT_FOUND",
                )
            updated = await session.set_conversation_status(
                conversation_id, ConversationStatus.ARCHIVED, clock.now()
            )
        logger.info(f"Archived conversation {conversation_id}")
        return updated

    async def delete_conversation(self, conversation_id: str, owner_external_id: str) -> None:
        """Mark a conversation deleted; its records are kept."""
        async with self.storage.transaction() as session:
            await self.get_conversation(conversation_id, owner_external_id, session=session)
            await session.set_conversation_status(
                conversation_id, ConversationStatus.DELETED, clock.now()
            )
        logger.info(f"Deleted conversation {conversation_id}")
