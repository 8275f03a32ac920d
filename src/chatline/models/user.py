"""User identity and preference models."""

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

PLACEHOLDER_EMAIL_DOMAIN = "users.chatline.local"


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UserPreferences(BaseModel):
    """UI and model preferences stored with the user record."""

    theme: Literal["light", "dark", "system"] = "system"
    ai_model: str | None = None  # None defers to the configured default model
    language: str = Field("en", pattern=r"^[a-z]{2}(-[A-Z]{2})?$")
    font_size: Literal["small", "medium", "large"] = "medium"
    sound_enabled: bool = True
    email_notifications: bool = True


class User(BaseModel):
    """Internal user record keyed by the external principal ID."""

    id: str = Field(default_factory=_uuid, description="Internal user ID")
    external_id: str = Field(..., min_length=1, description="Principal ID from the identity provider")
    email: str = Field(..., description="Contact email (placeholder until synced)")
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


def placeholder_email(external_id: str) -> str:
    """Email used for users created before their profile is synced."""
    return f"{external_id}@{PLACEHOLDER_EMAIL_DOMAIN}"
