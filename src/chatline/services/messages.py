"""Message store - message CRUD, soft delete, bulk import and token aggregation.

Every write that changes a live message set also adjusts the parent
conversation's counters inside the same transaction, so ``message_count`` and
``total_tokens`` always match the conversation's live messages.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from chatline.clock import MonotonicClock, clock as default_clock
from chatline.db import Storage, StorageSession
from chatline.errors import NotFoundError, ValidationError, field_errors
from chatline.models import (
    MAX_CONTENT_LENGTH,
    AIMetadata,
    Attachment,
    EditRecord,
    Message,
    MessageRole,
)
from chatline.pagination import decode_cursor, encode_cursor
from chatline.tokens import TokenEstimator, default_estimator

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_LIMIT = 50
MAX_MESSAGE_LIMIT = 100


def validate_role(role: Any) -> MessageRole:
    try:
        return MessageRole(role)
    except ValueError as e:
        allowed = ", ".join(r.value for r in MessageRole)
        raise ValidationError(f"Invalid role: {role}. Must be one of: {allowed}") from e


def validate_content(content: Any) -> str:
    """Check content is a non-blank string within the length bound."""
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Message content must not be empty.")
    if len(content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            f"Message content exceeds {MAX_CONTENT_LENGTH} characters.",
            details={"length": len(content), "max_length": MAX_CONTENT_LENGTH},
        )
    return content


def validate_attachments(attachments: list[Any] | None) -> list[Attachment]:
    if not attachments:
        return []
    try:
        return [Attachment.model_validate(a) if not isinstance(a, Attachment) else a for a in attachments]
    except PydanticValidationError as e:
        raise ValidationError("Invalid attachment.", details=field_errors(e.errors())) from e


def validate_ai_metadata(ai_metadata: Any) -> AIMetadata | None:
    if ai_metadata is None or isinstance(ai_metadata, AIMetadata):
        return ai_metadata
    try:
        return AIMetadata.model_validate(ai_metadata)
    except PydanticValidationError as e:
        raise ValidationError("Invalid AI metadata.", details=field_errors(e.errors())) from e


@dataclass
class MessagePage:
    """Live messages in ascending order, plus paging info."""

    messages: list[Message]
    next_cursor: str | None
    total: int


@dataclass
class BulkResult:
    inserted: int
    failed: int


@dataclass
class MessageStats:
    total_messages: int
    total_tokens: int
    first_message_at: datetime | None
    last_message_at: datetime | None


class MessageStore:
    """Message persistence with conversation counter maintenance."""

    def __init__(
        self,
        storage: Storage,
        estimator: TokenEstimator = default_estimator,
        clock: MonotonicClock = default_clock,
    ):
        self.storage = storage
        self.estimator = estimator
        self.clock = clock

    def token_count_for(self, content: str, ai_metadata: AIMetadata | None = None) -> int:
        """Tokens charged for a message: the provider's count when known, else the estimate."""
        if ai_metadata is not None and ai_metadata.token_count is not None:
            return ai_metadata.token_count
        return self.estimator.count(content)

    def build_message(
        self,
        conversation_id: str,
        role: Any,
        content: Any,
        attachments: list[Any] | None = None,
        ai_metadata: Any = None,
        user_id: str | None = None,
        owner_external_id: str | None = None,
        created_at: datetime | None = None,
        is_edited: bool = False,
    ) -> Message:
        """Validate inputs and build an unsaved message with its token count."""
        role = validate_role(role)
        content = validate_content(content)
        metadata = validate_ai_metadata(ai_metadata)
        try:
            message = Message(
                conversation_id=conversation_id,
                user_id=user_id,
                owner_external_id=owner_external_id,
                role=role,
                content=content,
                token_count=self.token_count_for(content, metadata),
                ai_metadata=metadata,
                attachments=validate_attachments(attachments),
                is_edited=is_edited,
                created_at=created_at or self.clock.now(),
            )
        except PydanticValidationError as e:
            raise ValidationError("Invalid message.", details=field_errors(e.errors())) from e
        # Imported timestamps may be naive; they are ordered against UTC cursors
        if message.created_at.tzinfo is None:
            message.created_at = message.created_at.replace(tzinfo=timezone.utc)
        return message

    async def append_messages(
        self, session: StorageSession, conversation_id: str, messages: list[Message]
    ) -> None:
        """Insert messages and bump counters by their combined delta.

        Must run inside a transaction; an unknown conversation raises
        ``NotFoundError`` and the caller's transaction rolls back.
        """
        await session.insert_messages(messages)
        updated = await session.increment_conversation_counters(
            conversation_id,
            len(messages),
            sum(m.token_count or 0 for m in messages),
            self.clock.now(),
        )
        if updated is None:
            raise NotFoundError("Conversation not found.", code="CONVERSATION_NOT_FOUND")

    async def create_message(
        self,
        conversation_id: str,
        role: Any,
        content: Any,
        attachments: list[Any] | None = None,
        ai_metadata: Any = None,
        user_id: str | None = None,
        owner_external_id: str | None = None,
        session: StorageSession | None = None,
    ) -> Message:
        """Append one message and update its conversation's counters atomically.

        With ``session`` the write joins the caller's transaction.
        """
        message = self.build_message(
            conversation_id,
            role,
            content,
            attachments=attachments,
            ai_metadata=ai_metadata,
            user_id=user_id,
            owner_external_id=owner_external_id,
        )
        if session is not None:
            await self.append_messages(session, conversation_id, [message])
        else:
            async with self.storage.transaction() as tx:
                await self.append_messages(tx, conversation_id, [message])

        logger.debug(
            f"Stored {message.role.value} message {message.id} in conversation {conversation_id} "
            f"({message.token_count} tokens)"
        )
        return message

    async def get_messages(
        self,
        conversation_id: str,
        limit: int = DEFAULT_MESSAGE_LIMIT,
        cursor: str | None = None,
    ) -> MessagePage:
        """Get a page of live messages, oldest first.

        Pages are taken newest first so the cursor means "older than"; each page
        is reversed before it is returned.
        """
        if not 1 <= limit <= MAX_MESSAGE_LIMIT:
            raise ValidationError(f"Limit must be between 1 and {MAX_MESSAGE_LIMIT}.")
        before = decode_cursor(cursor) if cursor else None

        async with self.storage.session() as session:
            newest_first = await session.list_messages(conversation_id, limit, before)
            total = await session.count_messages(conversation_id)

        next_cursor = None
        if len(newest_first) == limit:
            next_cursor = encode_cursor(newest_first[-1].created_at)

        return MessagePage(
            messages=list(reversed(newest_first)), next_cursor=next_cursor, total=total
        )

    async def get_message(self, message_id: str) -> Message | None:
        """Fetch a message record regardless of its soft-delete state."""
        async with self.storage.session() as session:
            return await session.get_message(message_id)

    async def _get_live_message(
        self, session: StorageSession, message_id: str, owner_external_id: str | None
    ) -> Message:
        message = await session.get_message(message_id)
        if message is None or message.is_deleted:
            raise NotFoundError("Message not found.", code="MESSAGE_NOT_FOUND")
        if owner_external_id is not None:
            conversation = await session.get_conversation(message.conversation_id)
            if conversation is None or conversation.owner_external_id != owner_external_id:
                raise NotFoundError("Message not found.", code="MESSAGE_NOT_FOUND")
        return message

    async def update_message(
        self,
        message_id: str,
        content: str | None = None,
        attachments: list[Any] | None = None,
        owner_external_id: str | None = None,
    ) -> Message:
        """Edit a message's content and/or attachments.

        A content change re-estimates the token count and applies the signed
        difference to the conversation's token total; the message count is
        unchanged.
        """
        if content is None and attachments is None:
            raise ValidationError("No message changes supplied.")
        if content is not None:
            content = validate_content(content)
        new_attachments = validate_attachments(attachments) if attachments is not None else None

        async with self.storage.transaction() as session:
            message = await self._get_live_message(session, message_id, owner_external_id)
            token_delta = 0

            if content is not None and content != message.content:
                now = self.clock.now()
                new_count = self.estimator.count(content)
                token_delta = new_count - (message.token_count or 0)
                message.edit_history.append(EditRecord(content=message.content, edited_at=now))
                message.content = content
                message.token_count = new_count
                message.is_edited = True
                message.edited_at = now

            if new_attachments is not None:
                message.attachments = new_attachments

            await session.save_message(message)
            if token_delta:
                updated = await session.increment_conversation_counters(
                    message.conversation_id, 0, token_delta, None
                )
                if updated is None:
                    raise NotFoundError("Conversation not found.", code="CONVERSATION_NOT_FOUND")

        logger.info(f"Updated message {message_id} (token delta {token_delta:+d})")
        return message

    async def delete_message(
        self, message_id: str, owner_external_id: str | None = None
    ) -> Message:
        """Soft delete a message and remove it from the conversation's counters."""
        async with self.storage.transaction() as session:
            message = await self._get_live_message(session, message_id, owner_external_id)
            message.deleted_at = self.clock.now()
            await session.save_message(message)
            tokens = message.token_count
            if tokens is None:
                tokens = self.estimator.count(message.content)
            updated = await session.increment_conversation_counters(
                message.conversation_id, -1, -tokens, None
            )
            if updated is None:
                raise NotFoundError("Conversation not found.", code="CONVERSATION_NOT_FOUND")

        logger.info(f"Soft deleted message {message_id}")
        return message

    async def add_attachment(
        self, message_id: str, attachment: Any, owner_external_id: str | None = None
    ) -> Message:
        """Append attachment metadata to a live message."""
        (validated,) = validate_attachments([attachment])
        async with self.storage.transaction() as session:
            message = await self._get_live_message(session, message_id, owner_external_id)
            message.attachments.append(validated)
            await session.save_message(message)
        return message

    async def bulk_create_messages(
        self, items: list[dict[str, Any]], owner_external_id: str | None = None
    ) -> BulkResult:
        """Import messages, skipping invalid items.

        An item is invalid when its role, content, attachments or metadata fail
        validation or its conversation is unknown (or, with ``owner_external_id``,
        not owned by that principal). Counters are updated once per conversation.
        """
        failed = 0
        async with self.storage.transaction() as session:
            known: dict[str, bool] = {}
            grouped: dict[str, list[Message]] = defaultdict(list)

            for item in items:
                if not isinstance(item, dict):
                    failed += 1
                    continue
                conversation_id = item.get("conversation_id")
                if not isinstance(conversation_id, str) or not conversation_id:
                    failed += 1
                    continue
                if conversation_id not in known:
                    conversation = await session.get_conversation(conversation_id)
                    known[conversation_id] = conversation is not None and (
                        owner_external_id is None
                        or conversation.owner_external_id == owner_external_id
                    )
                if not known[conversation_id]:
                    failed += 1
                    continue
                try:
                    message = self.build_message(
                        conversation_id,
                        item.get("role"),
                        item.get("content"),
                        attachments=item.get("attachments"),
                        ai_metadata=item.get("ai_metadata"),
                        user_id=item.get("user_id"),
                        owner_external_id=owner_external_id or item.get("owner_external_id"),
                        created_at=item.get("created_at"),
                    )
                except ValidationError:
                    failed += 1
                    continue
                grouped[conversation_id].append(message)

            inserted = sum(len(batch) for batch in grouped.values())
            if not inserted:
                raise ValidationError(
                    "No valid messages to import.", details={"failed": failed}
                )

            for conversation_id, batch in grouped.items():
                await self.append_messages(session, conversation_id, batch)

        logger.info(f"Imported {inserted} messages ({failed} skipped) into {len(grouped)} conversations")
        return BulkResult(inserted=inserted, failed=failed)

    async def get_message_stats(self, conversation_id: str) -> MessageStats:
        """Aggregate a conversation's live messages."""
        async with self.storage.session() as session:
            row = await session.message_stats(conversation_id)
        estimated = sum(self.estimator.count(content) for content in row.uncounted_contents)
        return MessageStats(
            total_messages=row.total_messages,
            total_tokens=row.counted_tokens + estimated,
            first_message_at=row.first_message_at,
            last_message_at=row.last_message_at,
        )
