"""
Two-Factor Authentication - TOTP secrets and single-use backup codes.

SECURITY:
- Backup codes are stored as sha256 digests and removed when used
- A TOTP time step is accepted at most once per user
- Enrollment stays unconfirmed until a code from the new secret verifies
- Disabling deletes the secret

NO DICTIONARIES - Enrollment state is a typed snapshot.
"""

import base64
import hashlib
import hmac
import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime
from uuid import UUID

from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.twofactor.totp import TOTP
from sqlalchemy import any_, delete, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ava_api.db.models import UserTwoFactor
from ava_api.exceptions import TwoFactorStateError
from ava_api.models.domain import TwoFactorEnrollment, TwoFactorState
from ava_api.observability import metrics

logger = get_logger(__name__)

SECRET_BYTES = 20
TOTP_DIGITS = 6
TOTP_STEP_SECONDS = 30
BACKUP_CODE_COUNT = 8
BACKUP_CODE_LENGTH = 8  # hex characters


# ============================================================================
# Codes
# ============================================================================


def generate_secret() -> str:
    """Random 160-bit secret, base32 encoded for authenticator apps."""
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii")


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return [secrets.token_hex(BACKUP_CODE_LENGTH // 2).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode()).hexdigest()


def is_backup_code(code: str) -> bool:
    return len(code) == BACKUP_CODE_LENGTH


def _totp(secret: str) -> TOTP:
    return TOTP(base64.b32decode(secret), TOTP_DIGITS, SHA1(), TOTP_STEP_SECONDS)


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    """otpauth:// URI, rendered as a QR code by the client."""
    return _totp(secret).get_provisioning_uri(account_name, issuer)


def totp_code(secret: str, at: float) -> str:
    return _totp(secret).generate(at).decode("ascii")


def matching_step(secret: str, code: str, at: float, window: int) -> int | None:
    """
    Time step whose code equals the given one, searching window steps
    either side of the current one.

    Returns:
        The matching step counter, or None if nothing in the window matches
    """
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return None

    totp = _totp(secret)
    current = int(at) // TOTP_STEP_SECONDS
    candidate = code.encode("ascii")
    for step in range(current - window, current + window + 1):
        if hmac.compare_digest(totp.generate(step * TOTP_STEP_SECONDS), candidate):
            return step
    return None


# ============================================================================
# Persistence
# ============================================================================


class TwoFactorStore:
    """Database access for user_two_factor rows."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, user_id: UUID) -> TwoFactorState | None:
        result = await self.db.execute(
            select(UserTwoFactor).where(UserTwoFactor.user_id == user_id)
        )
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def save_pending(self, user_id: UUID, secret: str, backup_code_hashes: list[str]) -> None:
        """Write an unconfirmed enrollment, replacing any earlier unconfirmed one."""
        result = await self.db.execute(
            select(UserTwoFactor).where(UserTwoFactor.user_id == user_id).with_for_update()
        )
        row = result.scalar_one_or_none()
        if row is None:
            self.db.add(
                UserTwoFactor(
                    user_id=user_id,
                    secret=secret,
                    backup_code_hashes=backup_code_hashes,
                    is_enabled=False,
                )
            )
        else:
            row.secret = secret
            row.backup_code_hashes = backup_code_hashes
            row.is_enabled = False
            row.enabled_at = None
            row.last_used_step = None
        await self.db.commit()

    async def mark_enabled(self, user_id: UUID) -> None:
        await self.db.execute(
            update(UserTwoFactor)
            .where(UserTwoFactor.user_id == user_id)
            .values(is_enabled=True, enabled_at=datetime.now(UTC))
        )
        await self.db.commit()

    async def claim_step(self, user_id: UUID, step: int) -> bool:
        """
        Record a TOTP step as used.

        Conditional update, so two requests racing with the same code cannot
        both succeed.

        Returns:
            False if this or a later step was already used
        """
        result = await self.db.execute(
            update(UserTwoFactor)
            .where(
                UserTwoFactor.user_id == user_id,
                or_(UserTwoFactor.last_used_step.is_(None), UserTwoFactor.last_used_step < step),
            )
            .values(last_used_step=step)
            .returning(UserTwoFactor.user_id)
        )
        claimed = result.scalar_one_or_none() is not None
        await self.db.commit()
        return claimed

    async def consume_backup_code(self, user_id: UUID, code_hash: str) -> bool:
        """Remove one backup code digest; False if it was not present."""
        result = await self.db.execute(
            select(UserTwoFactor)
            .where(
                UserTwoFactor.user_id == user_id,
                literal(code_hash) == any_(UserTwoFactor.backup_code_hashes),
            )
            .with_for_update()
        )
        row = result.scalar_one_or_none()
        if row is None:
            await self.db.rollback()
            return False
        row.backup_code_hashes = [h for h in row.backup_code_hashes if h != code_hash]
        await self.db.commit()
        return True

    async def replace_backup_codes(self, user_id: UUID, backup_code_hashes: list[str]) -> None:
        await self.db.execute(
            update(UserTwoFactor)
            .where(UserTwoFactor.user_id == user_id)
            .values(backup_code_hashes=backup_code_hashes)
        )
        await self.db.commit()

    async def delete(self, user_id: UUID) -> None:
        await self.db.execute(delete(UserTwoFactor).where(UserTwoFactor.user_id == user_id))
        await self.db.commit()

    @staticmethod
    def _to_domain(row: UserTwoFactor) -> TwoFactorState:
        return TwoFactorState(
            user_id=row.user_id,
            secret=row.secret,
            backup_code_hashes=tuple(row.backup_code_hashes or ()),
            is_enabled=row.is_enabled,
            enabled_at=row.enabled_at,
            last_used_step=row.last_used_step,
        )


# ============================================================================
# Service
# ============================================================================


class TwoFactorService:
    """
    Enrollment and verification rules on top of a TwoFactorStore.

    Usage:
        service = TwoFactorService(TwoFactorStore(db), issuer="Ava Support")
        enrollment = await service.begin_enrollment(user_id, "ava@example.com")
        await service.enable(user_id, code_from_app)
        ok = await service.verify(user_id, code)
    """

    def __init__(
        self,
        store: TwoFactorStore,
        issuer: str,
        valid_window: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.valid_window = valid_window
        self.clock = clock

    async def is_enabled(self, user_id: UUID) -> bool:
        state = await self.store.get(user_id)
        return state is not None and state.is_enabled

    async def status(self, user_id: UUID) -> TwoFactorState | None:
        return await self.store.get(user_id)

    async def begin_enrollment(self, user_id: UUID, account_name: str) -> TwoFactorEnrollment:
        """
        Generate a secret and backup codes, stored unconfirmed.

        Raises:
            TwoFactorStateError: If two-factor is already enabled
        """
        state = await self.store.get(user_id)
        if state is not None and state.is_enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled")

        secret = generate_secret()
        backup_codes = generate_backup_codes()
        await self.store.save_pending(
            user_id, secret, [hash_backup_code(code) for code in backup_codes]
        )
        logger.info("two_factor_enrollment_started", user_id=str(user_id))
        return TwoFactorEnrollment(
            secret=secret,
            provisioning_uri=provisioning_uri(secret, account_name, self.issuer),
            backup_codes=backup_codes,
        )

    async def enable(self, user_id: UUID, code: str) -> bool:
        """
        Confirm enrollment with a code from the new secret.

        Backup codes do not confirm enrollment.

        Raises:
            TwoFactorStateError: If enrollment was never started or is already confirmed
        """
        state = await self.store.get(user_id)
        if state is None:
            raise TwoFactorStateError("Two-factor setup has not been started")
        if state.is_enabled:
            raise TwoFactorStateError("Two-factor authentication is already enabled")

        if not await self._verify_totp(state, code, "enable"):
            return False

        await self.store.mark_enabled(user_id)
        logger.info("two_factor_enabled", user_id=str(user_id))
        return True

    async def verify(self, user_id: UUID, code: str, operation: str = "login") -> bool:
        """
        Check a TOTP or backup code for an account with two-factor enabled.

        A matching backup code is consumed.

        Raises:
            TwoFactorStateError: If two-factor is not enabled
        """
        state = await self.store.get(user_id)
        if state is None or not state.is_enabled:
            raise TwoFactorStateError("Two-factor authentication is not enabled")

        if is_backup_code(code):
            valid = await self.store.consume_backup_code(user_id, hash_backup_code(code))
            metrics.record_two_factor_check(f"{operation}_backup_code", valid)
            if valid:
                logger.info(
                    "two_factor_backup_code_used",
                    user_id=str(user_id),
                    remaining=len(state.backup_code_hashes) - 1,
                )
            return valid

        return await self._verify_totp(state, code, operation)

    async def disable(self, user_id: UUID, code: str) -> bool:
        if not await self.verify(user_id, code, operation="disable"):
            return False
        await self.store.delete(user_id)
        logger.info("two_factor_disabled", user_id=str(user_id))
        return True

    async def regenerate_backup_codes(self, user_id: UUID, code: str) -> list[str] | None:
        """
        Replace every backup code after a successful code check.

        Returns:
            The new codes in plain text, or None if the code did not verify
        """
        if not await self.verify(user_id, code, operation="regenerate"):
            return None
        backup_codes = generate_backup_codes()
        await self.store.replace_backup_codes(
            user_id, [hash_backup_code(backup) for backup in backup_codes]
        )
        return backup_codes

    async def _verify_totp(self, state: TwoFactorState, code: str, operation: str) -> bool:
        step = matching_step(state.secret, code, self.clock(), self.valid_window)
        valid = step is not None and await self.store.claim_step(state.user_id, step)
        if step is not None and not valid:
            logger.warning("two_factor_code_replayed", user_id=str(state.user_id))
        metrics.record_two_factor_check(operation, valid)
        return valid
