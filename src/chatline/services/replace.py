"""Wholesale replacement of a conversation's message list.

Used by the client after edits and regenerations: the conversation's messages
are swapped for the supplied list inside one transaction, so readers see either
the old list or the new one and never a mix.
"""

import logging
from typing import Any

from chatline.clock import MonotonicClock, clock as default_clock
from chatline.db import Storage
from chatline.errors import NotFoundError, ValidationError
from chatline.models import Message
from chatline.services.conversations import ConversationStore
from chatline.services.messages import MessageStore

logger = logging.getLogger(__name__)


def flatten_content(content: Any) -> str:
    """Reduce structured multimodal content to plain text.

    Strings pass through. Lists of parts keep their text parts (plain strings or
    ``{"type": "text", "text": ...}``) joined by newlines; image and other
    non-text parts are dropped.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        content = [content]
    if not isinstance(content, list):
        raise ValidationError("Message content must be a string or a list of parts.")

    texts = []
    for part in content:
        if isinstance(part, str):
            texts.append(part)
        elif isinstance(part, dict) and part.get("type", "text") == "text":
            text = part.get("text")
            if isinstance(text, str):
                texts.append(text)
    return "\n".join(texts)


class ReplacePipeline:
    """Transactional message-list replacement."""

    def __init__(
        self,
        storage: Storage,
        conversations: ConversationStore,
        messages: MessageStore,
        clock: MonotonicClock = default_clock,
    ):
        self.storage = storage
        self.conversations = conversations
        self.messages = messages
        self.clock = clock

    def _build(
        self, conversation_id: str, owner_external_id: str, owner_user_id: str, items: list[Any]
    ) -> list[Message]:
        # Synthetic timestamps keep retrieval order equal to input order
        timestamps = self.clock.sequence(len(items))
        built = []
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                raise ValidationError(f"Message {index} must be an object.")
            try:
                message = self.messages.build_message(
                    conversation_id,
                    item.get("role"),
                    flatten_content(item.get("content")),
                    attachments=item.get("attachments"),
                    user_id=owner_user_id,
                    owner_external_id=owner_external_id,
                    created_at=item.get("created_at") or timestamps[index],
                    is_edited=bool(item.get("is_edited", False)),
                )
            except ValidationError as e:
                raise ValidationError(
                    f"Message {index}: {e.message}", code=e.code, details=e.details
                ) from e
            # Replacement totals are always the estimator's sum
            message.token_count = self.messages.estimator.count(message.content)
            built.append(message)
        return built

    async def replace_messages(
        self, conversation_id: str, owner_external_id: str, new_messages: list[Any]
    ) -> dict[str, int]:
        """Replace every message of an owned conversation.

        Returns the resulting message count. Any failure rolls the whole
        replacement back.
        """
        if not isinstance(new_messages, list):
            raise ValidationError("Messages must be a list.")

        async with self.storage.transaction() as session:
            conversation = await self.conversations.get_conversation(
                conversation_id, owner_external_id, session=session
            )
            replacement = self._build(
                conversation_id, owner_external_id, conversation.owner_user_id, new_messages
            )

            removed = await session.delete_conversation_messages(conversation_id)
            await session.insert_messages(replacement)
            updated = await session.set_conversation_counters(
                conversation_id,
                len(replacement),
                sum(m.token_count or 0 for m in replacement),
                self.clock.now(),
            )
            if updated is None:
                raise NotFoundError("Conversation not found.", code="CONVERSATION_NOT_FOUND")

        logger.info(
            f"Replaced {removed} messages with {len(replacement)} in conversation {conversation_id}"
        )
        return {"message_count": len(replacement)}
