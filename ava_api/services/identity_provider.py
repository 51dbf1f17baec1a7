"""
Identity Provider - Credential storage and verification.

The auth manager only talks to the IdentityProvider protocol; the
database-backed implementation keeps argon2 password hashes on the users
table.

NO DICTIONARIES - Identities are returned as immutable dataclasses.
"""

import asyncio
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ava_api.db.models import User
from ava_api.exceptions import IdentityConflictError, IdentityProviderError
from ava_api.models.api import UserRole
from ava_api.models.domain import Identity

logger = get_logger(__name__)


class IdentityProvider(Protocol):
    """Protocol for identity stores."""

    async def create_identity(
        self,
        email: str,
        password: str,
        name: str,
        role: UserRole = UserRole.USER,
        avatar_url: str | None = None,
    ) -> Identity:
        """
        Create a new identity.

        Raises:
            IdentityConflictError: If the email is already registered
        """
        ...

    async def authenticate(self, email: str, password: str) -> Identity | None:
        """Return the identity if the credentials match, else None."""
        ...

    async def get_identity(self, user_id: UUID) -> Identity | None:
        """Fetch an active identity by id."""
        ...

    async def update_password(self, user_id: UUID, new_password: str) -> None:
        """Replace the stored password hash."""
        ...

    async def update_profile(
        self, user_id: UUID, name: str | None = None, avatar_url: str | None = None
    ) -> Identity:
        """Update mutable profile fields and return the new snapshot."""
        ...


class DatabaseIdentityProvider:
    """Identity provider backed by the users table."""

    def __init__(self, db: AsyncSession, hasher: PasswordHasher | None = None) -> None:
        self.db = db
        self.password_hasher = hasher or PasswordHasher()
        self._dummy_hash: str | None = None

    async def create_identity(
        self,
        email: str,
        password: str,
        name: str,
        role: UserRole = UserRole.USER,
        avatar_url: str | None = None,
    ) -> Identity:
        normalized = email.strip().lower()

        existing = await self.db.execute(select(User.id).where(User.email == normalized))
        if existing.scalar_one_or_none() is not None:
            raise IdentityConflictError(normalized)

        password_hash = await asyncio.to_thread(self.password_hasher.hash, password)
        user = User(
            email=normalized,
            password_hash=password_hash,
            name=name,
            role=role.value,
            avatar_url=avatar_url,
            is_active=True,
        )
        self.db.add(user)

        try:
            await self.db.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent registration of the same email
            await self.db.rollback()
            raise IdentityConflictError(normalized) from exc

        await self.db.refresh(user)
        logger.info("identity_created", user_id=str(user.id), role=user.role)
        return self._to_domain(user)

    async def authenticate(self, email: str, password: str) -> Identity | None:
        """
        Verify an email/password pair.

        Unknown emails still pay for one argon2 verification so response
        timing does not reveal which emails are registered.
        """
        normalized = email.strip().lower()
        result = await self.db.execute(
            select(User).where(User.email == normalized, User.is_active.is_(True))
        )
        user = result.scalar_one_or_none()

        if user is None:
            await self._dummy_verify(password)
            return None

        try:
            await asyncio.to_thread(self.password_hasher.verify, user.password_hash, password)
        except VerifyMismatchError:
            return None
        except (InvalidHashError, VerificationError):
            logger.error("password_hash_unreadable", user_id=str(user.id))
            return None

        if self.password_hasher.check_needs_rehash(user.password_hash):
            user.password_hash = await asyncio.to_thread(self.password_hasher.hash, password)
            logger.info("password_rehashed", user_id=str(user.id))

        user.last_login_at = datetime.now(UTC)
        await self.db.commit()
        return self._to_domain(user)

    async def get_identity(self, user_id: UUID) -> Identity | None:
        user = await self._get_user(user_id)
        return self._to_domain(user) if user else None

    async def update_password(self, user_id: UUID, new_password: str) -> None:
        user = await self._get_user(user_id)
        if user is None:
            raise IdentityProviderError(f"identity {user_id} not found")

        user.password_hash = await asyncio.to_thread(self.password_hasher.hash, new_password)
        user.updated_at = datetime.now(UTC)
        await self.db.commit()
        logger.info("password_updated", user_id=str(user_id))

    async def update_profile(
        self, user_id: UUID, name: str | None = None, avatar_url: str | None = None
    ) -> Identity:
        user = await self._get_user(user_id)
        if user is None:
            raise IdentityProviderError(f"identity {user_id} not found")

        if name is not None:
            user.name = name
        if avatar_url is not None:
            user.avatar_url = avatar_url
        user.updated_at = datetime.now(UTC)
        await self.db.commit()
        return self._to_domain(user)

    async def _get_user(self, user_id: UUID) -> User | None:
        result = await self.db.execute(
            select(User).where(User.id == user_id, User.is_active.is_(True))
        )
        return result.scalar_one_or_none()

    async def _dummy_verify(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self.password_hasher.hash, "timing-equalization"
            )
        try:
            await asyncio.to_thread(self.password_hasher.verify, self._dummy_hash, password)
        except VerificationError:
            pass

    @staticmethod
    def _to_domain(user: User) -> Identity:
        return Identity(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=UserRole(user.role),
            avatar_url=user.avatar_url,
            stripe_customer_id=user.stripe_customer_id,
            created_at=user.created_at,
        )
