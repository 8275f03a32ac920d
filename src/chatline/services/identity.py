"""Identity resolution - maps principals to internal user records."""

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from chatline.db import Storage, StorageSession
from chatline.errors import NotFoundError, ValidationError, field_errors
from chatline.models import User, UserPreferences, placeholder_email

logger = logging.getLogger(__name__)

ALLOWED_AI_MODELS = (
    "llama-3.1-8b-instant",
    "llama-3.3-70b-versatile",
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-3.5-turbo",
)


class IdentityResolver:
    """Resolves external principal IDs to users, creating them on first sight."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def resolve_or_create_user(
        self, external_id: str, session: StorageSession | None = None
    ) -> User:
        """Return the user for a principal, creating a placeholder record if needed.

        Creation is an insert-if-absent on the unique external ID, so concurrent
        first requests for the same principal all end up with the same record.
        """
        if not external_id or not external_id.strip():
            raise ValidationError("External principal ID is required.", code="INVALID_PRINCIPAL")

        if session is not None:
            return await self._resolve(session, external_id)
        async with self.storage.session() as s:
            return await self._resolve(s, external_id)

    async def _resolve(self, session: StorageSession, external_id: str) -> User:
        user = await session.get_user_by_external_id(external_id)
        if user:
            return user

        user, created = await session.insert_user_if_absent(
            User(external_id=external_id, email=placeholder_email(external_id))
        )
        if created:
            logger.info(f"Created placeholder user {user.id} for principal {external_id}")
        return user

    async def get_preferences(self, external_id: str) -> UserPreferences:
        """Get a principal's preferences (creating the user if unseen)."""
        user = await self.resolve_or_create_user(external_id)
        return user.preferences

    async def update_preferences(
        self, external_id: str, changes: dict[str, Any]
    ) -> UserPreferences:
        """Merge validated preference changes into the stored preferences."""
        if not changes:
            raise ValidationError("No preference changes supplied.")

        unknown = set(changes) - set(UserPreferences.model_fields)
        if unknown:
            raise ValidationError(
                f"Unknown preference fields: {', '.join(sorted(unknown))}",
                details={"fields": sorted(unknown)},
            )
        if changes.get("ai_model") is not None and changes["ai_model"] not in ALLOWED_AI_MODELS:
            raise ValidationError(
                f"Invalid AI model: {changes['ai_model']}. Must be one of: {', '.join(ALLOWED_AI_MODELS)}"
            )

        user = await self.resolve_or_create_user(external_id)
        try:
            merged = UserPreferences(**{**user.preferences.model_dump(), **changes})
        except PydanticValidationError as e:
            raise ValidationError("Invalid preferences.", details=field_errors(e.errors())) from e

        async with self.storage.session() as session:
            updated = await session.update_user_preferences(
                external_id, merged, datetime.now(timezone.utc)
            )
        if updated is None:
            raise NotFoundError("User not found.", code="USER_NOT_FOUND")
        return updated.preferences
