"""
Tests for the database-backed Identity Provider.

Uses a low-cost argon2 hasher so real hashes can be created and verified.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from argon2 import PasswordHasher
from sqlalchemy.exc import IntegrityError

from ava_api.db.models import User
from ava_api.exceptions import IdentityConflictError, IdentityProviderError
from ava_api.models.api import UserRole
from ava_api.services.identity_provider import DatabaseIdentityProvider


def _assign_defaults(user: User) -> None:
    """Mimic the column defaults a real flush/refresh would populate."""
    user.id = user.id or uuid4()
    user.created_at = user.created_at or datetime.now(UTC)
    user.stripe_customer_id = None


class TestCreateIdentity:
    @pytest.mark.asyncio
    async def test_creates_user_with_hashed_password(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher
    ):
        db_session.refresh = AsyncMock(side_effect=_assign_defaults)
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        identity = await provider.create_identity(
            "  New.User@Example.COM ", "correct horse battery", "New User"
        )

        user = db_session.add.call_args[0][0]
        assert isinstance(user, User)
        assert user.email == "new.user@example.com"
        assert user.password_hash != "correct horse battery"
        assert fast_hasher.verify(user.password_hash, "correct horse battery")
        assert identity.email == "new.user@example.com"
        assert identity.role == UserRole.USER
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_existing_email_conflicts(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher, result_factory
    ):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=uuid4()))
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        with pytest.raises(IdentityConflictError):
            await provider.create_identity("user@example.com", "password123", "User")

        db_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_registration_conflicts(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher
    ):
        db_session.commit = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("uq_users_email"))
        )
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        with pytest.raises(IdentityConflictError):
            await provider.create_identity("user@example.com", "password123", "User")

        db_session.rollback.assert_awaited_once()


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_correct_password(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher, result_factory, user_factory
    ):
        user = user_factory(password_hash=fast_hasher.hash("password123"))
        db_session.execute = AsyncMock(return_value=result_factory(scalar=user))
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        identity = await provider.authenticate("USER@example.com", "password123")

        assert identity is not None
        assert identity.user_id == user.id
        assert user.last_login_at is not None
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_wrong_password(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher, result_factory, user_factory
    ):
        user = user_factory(password_hash=fast_hasher.hash("password123"))
        db_session.execute = AsyncMock(return_value=result_factory(scalar=user))
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        assert await provider.authenticate("user@example.com", "wrong-password") is None
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_email(self, db_session: AsyncMock, fast_hasher: PasswordHasher):
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        assert await provider.authenticate("nobody@example.com", "password123") is None

    @pytest.mark.asyncio
    async def test_unreadable_hash(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher, result_factory, user_factory
    ):
        user = user_factory(password_hash="not-an-argon2-hash")
        db_session.execute = AsyncMock(return_value=result_factory(scalar=user))
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        assert await provider.authenticate("user@example.com", "password123") is None

    @pytest.mark.asyncio
    async def test_outdated_hash_is_upgraded(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher, result_factory, user_factory
    ):
        weak = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, hash_len=16)
        old_hash = weak.hash("password123")
        user = user_factory(password_hash=old_hash)
        db_session.execute = AsyncMock(return_value=result_factory(scalar=user))
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        assert await provider.authenticate("user@example.com", "password123") is not None
        assert user.password_hash != old_hash
        assert fast_hasher.verify(user.password_hash, "password123")


class TestProfile:
    @pytest.mark.asyncio
    async def test_update_profile_fields(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher, result_factory, user_factory
    ):
        user = user_factory()
        db_session.execute = AsyncMock(return_value=result_factory(scalar=user))
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        identity = await provider.update_profile(
            user.id, name="Renamed", avatar_url="https://cdn.example.com/a.png"
        )

        assert identity.name == "Renamed"
        assert identity.avatar_url == "https://cdn.example.com/a.png"
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_profile_keeps_unset_fields(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher, result_factory, user_factory
    ):
        user = user_factory(name="Original")
        db_session.execute = AsyncMock(return_value=result_factory(scalar=user))
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        identity = await provider.update_profile(user.id, avatar_url="https://cdn.example.com/b.png")

        assert identity.name == "Original"

    @pytest.mark.asyncio
    async def test_missing_user(self, db_session: AsyncMock, fast_hasher: PasswordHasher):
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        with pytest.raises(IdentityProviderError):
            await provider.update_profile(uuid4(), name="Nobody")
        with pytest.raises(IdentityProviderError):
            await provider.update_password(uuid4(), "new-password-123")

    @pytest.mark.asyncio
    async def test_update_password_rehashes(
        self, db_session: AsyncMock, fast_hasher: PasswordHasher, result_factory, user_factory
    ):
        user = user_factory(password_hash=fast_hasher.hash("old-password"))
        db_session.execute = AsyncMock(return_value=result_factory(scalar=user))
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        await provider.update_password(user.id, "new-password-123")

        assert fast_hasher.verify(user.password_hash, "new-password-123")

    @pytest.mark.asyncio
    async def test_get_identity_missing(self, db_session: AsyncMock, fast_hasher: PasswordHasher):
        provider = DatabaseIdentityProvider(db_session, fast_hasher)

        assert await provider.get_identity(uuid4()) is None
