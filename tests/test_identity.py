"""Unit tests for identity resolution and user preferences."""

import asyncio

import pytest
from chatline.errors import ValidationError
from chatline.models import placeholder_email
from chatline.services.identity import IdentityResolver


class TestIdentityResolver:
    """Test IdentityResolver functionality."""

    @pytest.mark.asyncio
    async def test_creates_placeholder_user(self, storage):
        resolver = IdentityResolver(storage)

        user = await resolver.resolve_or_create_user("auth0|abc")

        assert user.external_id == "auth0|abc"
        assert user.email == placeholder_email("auth0|abc")
        assert len(storage.users) == 1

    @pytest.mark.asyncio
    async def test_resolving_twice_returns_same_user(self, storage):
        resolver = IdentityResolver(storage)

        first = await resolver.resolve_or_create_user("user-1")
        second = await resolver.resolve_or_create_user("user-1")

        assert first.id == second.id
        assert len(storage.users) == 1

    @pytest.mark.asyncio
    async def test_concurrent_resolution_creates_one_user(self, storage):
        resolver = IdentityResolver(storage)

        users = await asyncio.gather(
            *(resolver.resolve_or_create_user("racer") for _ in range(10))
        )

        assert len({u.id for u in users}) == 1
        assert len(storage.users) == 1

    @pytest.mark.asyncio
    async def test_blank_principal_rejected(self, storage):
        resolver = IdentityResolver(storage)

        with pytest.raises(ValidationError) as exc_info:
            await resolver.resolve_or_create_user("   ")
        assert exc_info.value.code == "INVALID_PRINCIPAL"


class TestPreferences:
    """Test preference reads and validated updates."""

    @pytest.mark.asyncio
    async def test_defaults(self, storage):
        preferences = await IdentityResolver(storage).get_preferences("user-1")

        assert preferences.theme == "system"
        assert preferences.language == "en"

    @pytest.mark.asyncio
    async def test_update_merges_changes(self, storage):
        resolver = IdentityResolver(storage)

        updated = await resolver.update_preferences("user-1", {"theme": "dark", "language": "en-US"})

        assert updated.theme == "dark"
        assert updated.language == "en-US"
        assert updated.font_size == "medium"
        assert (await resolver.get_preferences("user-1")).theme == "dark"

    @pytest.mark.asyncio
    async def test_invalid_values_rejected(self, storage):
        resolver = IdentityResolver(storage)

        with pytest.raises(ValidationError):
            await resolver.update_preferences("user-1", {"theme": "neon"})
        with pytest.raises(ValidationError):
            await resolver.update_preferences("user-1", {"language": "english"})
        with pytest.raises(ValidationError):
            await resolver.update_preferences("user-1", {"ai_model": "made-up-model"})

        assert (await resolver.get_preferences("user-1")).theme == "system"

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected(self, storage):
        with pytest.raises(ValidationError, match="Unknown preference fields"):
            await IdentityResolver(storage).update_preferences("user-1", {"colour": "red"})
