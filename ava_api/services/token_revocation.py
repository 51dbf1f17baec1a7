"""
Token Revocation & Lockout Service.

Manages the token blacklist (with an in-memory cache backed by the
database) and the login-attempt trail used for brute-force lockout.

SECURITY: This is a critical security component.
- Only token ids (jti) are stored, never raw tokens
- The cache is positive-only: it can say "revoked", never "not revoked"
- Blacklist rows carry the token's own expiry and are purged after it
- Lockout is derived from attempts; there is no unlock action
"""

import math
import time
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ava_api.db.models import BlacklistedToken, LoginAttempt
from ava_api.models.domain import ClientInfo
from ava_api.observability.logging import token_fingerprint

logger = get_logger(__name__)

DEFAULT_LOCKOUT_THRESHOLD = 5
DEFAULT_LOCKOUT_WINDOW = timedelta(minutes=15)


class RevocationCache:
    """
    Process-scoped cache of revoked token ids.

    Key: jti, Value: token expiry as a unix timestamp. Entries are only
    added (on revoke, or on a confirmed database hit) and only dropped
    once the token has expired, so a cached answer is always correct.
    """

    def __init__(self, max_size: int = 10_000) -> None:
        self.max_size = max_size
        self._entries: dict[str, float] = {}

    def add(self, token_id: str, expires_at: datetime) -> None:
        if len(self._entries) >= self.max_size:
            self.evict_expired()
        if len(self._entries) >= self.max_size:
            # Dropping the soonest-expiring entry only costs a database lookup later
            oldest = min(self._entries, key=self._entries.__getitem__)
            del self._entries[oldest]
        self._entries[token_id] = expires_at.timestamp()

    def contains(self, token_id: str) -> bool:
        expires_at = self._entries.get(token_id)
        if expires_at is None:
            return False
        if time.time() >= expires_at:
            del self._entries[token_id]
            return False
        return True

    def evict_expired(self) -> int:
        now = time.time()
        expired = [jti for jti, exp in self._entries.items() if exp <= now]
        for jti in expired:
            del self._entries[jti]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class LockoutStatus:
    """Derived lockout state for an (email, ip) pair."""

    locked: bool
    retry_after_seconds: int = 0


def evaluate_lockout(
    recent_attempts: Sequence[tuple[bool, datetime]],
    threshold: int,
    window: timedelta,
    now: datetime,
) -> LockoutStatus:
    """
    Apply the lockout policy to attempts already filtered to the window.

    recent_attempts holds (success, attempted_at) pairs newest first. The
    pair is locked iff the newest `threshold` attempts are all failures; a
    single success among them clears the lock. The lock lifts when the
    oldest of those failures leaves the window.
    """
    considered = list(recent_attempts[:threshold])
    if len(considered) < threshold or any(success for success, _ in considered):
        return LockoutStatus(locked=False)

    oldest_failure = min(attempted_at for _, attempted_at in considered)
    remaining = (oldest_failure + window - now).total_seconds()
    return LockoutStatus(locked=True, retry_after_seconds=max(1, math.ceil(remaining)))


class RevocationStore:
    """
    Blacklist and login-attempt persistence bound to one database session.

    Usage:
        store = RevocationStore(db, cache)

        # Check on every verification
        if await store.is_blacklisted(claims.token_id):
            ...

        # Revoke on logout
        await store.blacklist(jti, user_id, expires_at, reason="logout")
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: RevocationCache,
        lockout_threshold: int = DEFAULT_LOCKOUT_THRESHOLD,
        lockout_window: timedelta = DEFAULT_LOCKOUT_WINDOW,
    ) -> None:
        self.db = db
        self.cache = cache
        self.lockout_threshold = lockout_threshold
        self.lockout_window = lockout_window

    async def blacklist(
        self,
        token_id: str,
        user_id: UUID,
        expires_at: datetime,
        reason: str = "logout",
    ) -> bool:
        """
        Revoke a token id until its natural expiry.

        Idempotent: a duplicate jti hits the unique constraint and is
        treated as already revoked.

        Returns:
            True if this call created the blacklist row
        """
        created = True
        try:
            async with self.db.begin_nested():
                self.db.add(
                    BlacklistedToken(
                        jti=token_id,
                        user_id=user_id,
                        expires_at=expires_at,
                        blacklisted_at=datetime.now(UTC),
                        reason=reason,
                    )
                )
        except IntegrityError:
            created = False
            logger.info("token_already_blacklisted", token_id=token_fingerprint(token_id))
        await self.db.commit()

        self.cache.add(token_id, expires_at)

        if created:
            logger.info(
                "token_blacklisted",
                token_id=token_fingerprint(token_id),
                user_id=str(user_id),
                reason=reason,
                expires_at=expires_at.isoformat(),
            )
        return created

    async def is_blacklisted(self, token_id: str) -> bool:
        """
        Check whether a token id has been revoked.

        Fast path: positive cache hit
        Slow path: database lookup (a hit is cached)
        """
        if self.cache.contains(token_id):
            return True

        result = await self.db.execute(
            select(BlacklistedToken).where(BlacklistedToken.jti == token_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return False

        self.cache.add(token_id, row.expires_at)
        return True

    async def record_login_attempt(
        self,
        email: str,
        client: ClientInfo,
        success: bool,
        failure_reason: str | None = None,
    ) -> None:
        """Append a login attempt, success or failure."""
        self.db.add(
            LoginAttempt(
                email=email,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                success=success,
                attempted_at=datetime.now(UTC),
                failure_reason=failure_reason,
            )
        )
        await self.db.commit()

    async def get_lockout(self, email: str, ip_address: str) -> LockoutStatus:
        """Evaluate the lockout policy for an (email, ip) pair."""
        now = datetime.now(UTC)
        result = await self.db.execute(
            select(LoginAttempt.success, LoginAttempt.attempted_at)
            .where(
                LoginAttempt.email == email,
                LoginAttempt.ip_address == ip_address,
                LoginAttempt.attempted_at >= now - self.lockout_window,
            )
            .order_by(LoginAttempt.attempted_at.desc())
            .limit(self.lockout_threshold)
        )
        attempts = [(bool(success), attempted_at) for success, attempted_at in result.all()]
        return evaluate_lockout(attempts, self.lockout_threshold, self.lockout_window, now)

    async def is_locked(self, email: str, ip_address: str) -> bool:
        """True while the last N attempts inside the window are all failures."""
        status = await self.get_lockout(email, ip_address)
        return status.locked

    async def purge_expired_blacklist(self) -> int:
        """Delete blacklist rows whose token has expired anyway."""
        result = await self.db.execute(
            delete(BlacklistedToken).where(BlacklistedToken.expires_at < datetime.now(UTC))
        )
        await self.db.commit()
        self.cache.evict_expired()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def prune_login_attempts(self, older_than: datetime) -> int:
        """Delete login attempts older than the retention cutoff."""
        result = await self.db.execute(
            delete(LoginAttempt).where(LoginAttempt.attempted_at < older_than)
        )
        await self.db.commit()
        return result.rowcount or 0  # type: ignore[attr-defined]
