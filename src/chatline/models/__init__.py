"""Shared Pydantic models for chatline."""

from chatline.models.conversation import (
    MAX_CONTENT_LENGTH,
    TITLE_MAX_LENGTH,
    AIMetadata,
    Attachment,
    Conversation,
    ConversationSettings,
    ConversationStatus,
    EditRecord,
    Message,
    MessageRole,
)
from chatline.models.user import User, UserPreferences, placeholder_email

__all__ = [
    "MAX_CONTENT_LENGTH",
    "TITLE_MAX_LENGTH",
    # Conversation models
    "AIMetadata",
    "Attachment",
    "Conversation",
    "ConversationSettings",
    "ConversationStatus",
    "EditRecord",
    "Message",
    "MessageRole",
    # User models
    "User",
    "UserPreferences",
    "placeholder_email",
]
