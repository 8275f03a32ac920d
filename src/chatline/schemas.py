"""Request and response bodies for the HTTP API."""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from chatline.models import (
    MAX_CONTENT_LENGTH,
    AIMetadata,
    Attachment,
    Conversation,
    ConversationStatus,
    Message,
    MessageRole,
    UserPreferences,
)

MAX_CHAT_MESSAGES = 50


# ============= Chat =============


class ChatMessageIn(BaseModel):
    """One message of a completion request."""

    role: MessageRole
    content: str = Field(..., min_length=1, max_length=MAX_CONTENT_LENGTH)
    id: str | None = None

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be blank")
        return value


class ChatRequest(BaseModel):
    """Completion request body (accepts camelCase or snake_case keys)."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessageIn] = Field(..., min_length=1, max_length=MAX_CHAT_MESSAGES)
    model: str | None = Field(None, min_length=1)
    conversation_id: str | None = Field(
        None,
        min_length=1,
        validation_alias=AliasChoices("conversation_id", "conversationId"),
    )
    temperature: float | None = Field(None, ge=0, le=2)
    max_tokens: int | None = Field(
        None, ge=1, le=8192, validation_alias=AliasChoices("max_tokens", "maxTokens")
    )
    stream: bool = True


class ChatResponse(BaseModel):
    """Non-streaming completion result."""

    conversation_id: str
    turn_id: str
    model: str
    content: str
    finish_reason: str
    is_new_conversation: bool


# ============= Conversations =============


class ConversationResponse(BaseModel):
    id: str
    title: str
    message_count: int
    total_tokens: int
    last_message_at: datetime
    model: str
    status: ConversationStatus
    created_at: datetime

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "ConversationResponse":
        return cls(
            id=conversation.id,
            title=conversation.title,
            message_count=conversation.message_count,
            total_tokens=conversation.total_tokens,
            last_message_at=conversation.last_message_at,
            model=conversation.settings.model,
            status=conversation.status,
            created_at=conversation.created_at,
        )


class ConversationListResponse(BaseModel):
    conversations: list[ConversationResponse]
    next_cursor: str | None
    total: int


# ============= Messages =============


class MessageResponse(BaseModel):
    id: str
    role: MessageRole
    content: str
    token_count: int | None
    created_at: datetime
    ai_metadata: AIMetadata | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    is_edited: bool = False
    edited_at: datetime | None = None

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            role=message.role,
            content=message.content,
            token_count=message.token_count,
            created_at=message.created_at,
            ai_metadata=message.ai_metadata,
            attachments=message.attachments,
            is_edited=message.is_edited,
            edited_at=message.edited_at,
        )


class MessageListResponse(BaseModel):
    """Conversation metadata plus a page of its live messages, oldest first."""

    conversation: ConversationResponse
    messages: list[MessageResponse]
    next_cursor: str | None
    total: int


class ReplaceMessageIn(BaseModel):
    """A replacement message; content may be structured multimodal parts."""

    model_config = ConfigDict(populate_by_name=True)

    role: MessageRole
    content: str | list[Any]
    is_edited: bool = Field(False, validation_alias=AliasChoices("is_edited", "isEdited"))
    created_at: datetime | None = Field(
        None, validation_alias=AliasChoices("created_at", "createdAt", "timestamp")
    )
    attachments: list[Attachment] | None = None


class ReplaceRequest(BaseModel):
    messages: list[ReplaceMessageIn]


class ReplaceResponse(BaseModel):
    message_count: int


class MessageUpdateRequest(BaseModel):
    content: str | None = None
    attachments: list[Attachment] | None = None


class ImportRequest(BaseModel):
    """Bulk import; items are validated individually and invalid ones skipped."""

    messages: list[dict[str, Any]] = Field(..., min_length=1)


class ImportResponse(BaseModel):
    inserted: int
    failed: int


class MessageStatsResponse(BaseModel):
    total_messages: int
    total_tokens: int
    first_message_at: datetime | None
    last_message_at: datetime | None


# ============= Users =============


class PreferencesResponse(BaseModel):
    preferences: UserPreferences


class HealthResponse(BaseModel):
    status: str
    persistence_failures: int
    pending_persistence: int
