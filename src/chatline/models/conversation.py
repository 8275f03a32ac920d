"""Conversation and message models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

# Single authoritative bound, enforced at request validation and in the store
MAX_CONTENT_LENGTH = 16_000

TITLE_MAX_LENGTH = 50


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Closed set of message roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


FinishReason = Literal["stop", "length", "content_filter", "tool_calls", "unknown"]


class Attachment(BaseModel):
    """File metadata attached to a message (the file itself lives elsewhere)."""

    original_name: str = Field(..., min_length=1, description="Name as uploaded")
    file_name: str = Field(..., min_length=1, description="Stored file name")
    file_size: int = Field(..., ge=0, description="Size in bytes")
    mime_type: str = Field(..., min_length=1, description="MIME type")
    storage_provider: str = Field(..., min_length=1, description="Storage backend name")
    storage_url: str = Field(..., min_length=1, description="Public or signed URL")


class AIMetadata(BaseModel):
    """Completion metadata recorded for assistant turns."""

    model: str = Field(..., description="Model that produced the message")
    temperature: float = Field(..., description="Sampling temperature used")
    max_tokens: int = Field(..., description="Token budget requested")
    token_count: int | None = Field(None, ge=0, description="Authoritative token count, if known")
    finish_reason: FinishReason = Field("stop", description="Why the completion ended")
    response_time_ms: int | None = Field(None, description="Wall-clock time to finish")


class EditRecord(BaseModel):
    """A previous version of an edited message."""

    content: str
    edited_at: datetime = Field(default_factory=_now)


class ConversationSettings(BaseModel):
    """Model configuration for a conversation."""

    model: str = Field(..., description="Completion model ID")
    temperature: float = Field(0.7, ge=0, le=2)
    max_tokens: int = Field(2048, ge=1, le=8192)
    system_message: str | None = Field(None, description="Per-conversation system prompt")


class Conversation(BaseModel):
    """A conversation thread with its aggregate counters."""

    id: str = Field(..., description="Caller-supplied conversation ID")
    owner_external_id: str = Field(..., description="Principal ID from the identity provider")
    owner_user_id: str = Field(..., description="Internal user ID")
    title: str = Field(..., description="Derived from the first user message")
    message_count: int = Field(0, ge=0, description="Live message count")
    total_tokens: int = Field(0, ge=0, description="Token sum over live messages")
    last_message_at: datetime = Field(default_factory=_now, description="Last activity")
    settings: ConversationSettings
    status: ConversationStatus = Field(ConversationStatus.ACTIVE)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    archived_at: datetime | None = None
    deleted_at: datetime | None = None


class Message(BaseModel):
    """A single turn in a conversation."""

    id: str = Field(default_factory=_uuid, description="Unique message ID")
    conversation_id: str = Field(..., description="Parent conversation ID")
    user_id: str | None = Field(None, description="Internal user ID of the owner")
    owner_external_id: str | None = Field(None, description="Principal ID of the owner")
    role: MessageRole = Field(..., description="Message role")
    content: str = Field(..., description="Message content")
    token_count: int | None = Field(None, ge=0, description="Tokens charged to the conversation")
    ai_metadata: AIMetadata | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    is_edited: bool = False
    edited_at: datetime | None = None
    edit_history: list[EditRecord] = Field(default_factory=list)
    deleted_at: datetime | None = Field(None, description="Soft-delete marker")
    created_at: datetime = Field(default_factory=_now, description="Ordering and cursor key")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
