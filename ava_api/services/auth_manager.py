"""
Auth Manager - Orchestrates login, token lifecycle and session management.

Composes the token codec, session store, revocation store, security event
log, identity provider and two-factor service. Every branch leaves a
security event behind: info for routine activity, warning for failed or
suspicious activity, critical for unexpected exceptions.

NO DICTIONARIES - Inputs and results are typed dataclasses; the only
free-form data is the audit event payload.
"""

from datetime import timedelta
from uuid import UUID

from structlog import get_logger

from ava_api.exceptions import (
    AccountLockedError,
    AvaError,
    IdentityConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidTwoFactorCodeError,
    SessionNotFoundError,
    TwoFactorStateError,
    ValidationError,
)
from ava_api.models.api import Severity, TokenType, UserRole
from ava_api.models.domain import (
    AuthContext,
    ClientInfo,
    Identity,
    LoginResult,
    SessionData,
    TokenPair,
    TwoFactorChallenge,
    TwoFactorEnrollment,
    TwoFactorState,
)
from ava_api.observability import metrics
from ava_api.observability.logging import token_fingerprint
from ava_api.services.identity_provider import IdentityProvider
from ava_api.services.security_events import SecurityEventLog
from ava_api.services.session_store import SessionStore
from ava_api.services.token_codec import TokenCodec
from ava_api.services.token_revocation import RevocationStore
from ava_api.services.two_factor import TwoFactorService

logger = get_logger(__name__)


class AuthManager:
    """
    Request-scoped auth orchestration.

    Usage:
        manager = AuthManager(codec, sessions, revocations, events, identities)
        result = await manager.login(email, password, client)
        context = await manager.authenticate_request(result.tokens.access_token, client)
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        revocations: RevocationStore,
        events: SecurityEventLog,
        identities: IdentityProvider,
        rotate_refresh_tokens: bool = False,
        two_factor: TwoFactorService | None = None,
        challenge_ttl: timedelta = timedelta(minutes=5),
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.revocations = revocations
        self.events = events
        self.identities = identities
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.two_factor = two_factor
        self.challenge_ttl = challenge_ttl

    # ========================================================================
    # Registration & Login
    # ========================================================================

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        client: ClientInfo,
        role: UserRole = UserRole.USER,
        avatar_url: str | None = None,
    ) -> LoginResult:
        """
        Create an identity and log it straight in.

        Raises:
            IdentityConflictError: If the email is already registered
        """
        try:
            identity = await self.identities.create_identity(
                email=email,
                password=password,
                name=name,
                role=role,
                avatar_url=avatar_url,
            )
            session_id = await self.sessions.create_session(identity.user_id, client)
            tokens = self.codec.issue_token_pair(identity.user_id, identity.role, session_id)
        except IdentityConflictError:
            await self.events.log(
                None,
                "registration_failed",
                client,
                {"email": email, "reason": "email_exists"},
                Severity.WARNING,
            )
            raise
        except AvaError:
            raise
        except Exception as exc:
            await self.events.log(
                None,
                "registration_error",
                client,
                {"email": email, "error": type(exc).__name__},
                Severity.CRITICAL,
            )
            logger.error("registration_error", error=str(exc), exc_info=True)
            raise

        await self.events.log(
            identity.user_id,
            "registration_success",
            client,
            {"session_id": str(session_id), "role": identity.role.value},
        )
        return LoginResult(identity=identity, tokens=tokens)

    async def login(
        self, email: str, password: str, client: ClientInfo
    ) -> LoginResult | TwoFactorChallenge:
        """
        Authenticate credentials and open a new session.

        Accounts with two-factor enabled get a TwoFactorChallenge instead;
        no session exists until login_two_factor() accepts a code.

        Raises:
            AccountLockedError: While the (email, ip) pair is locked out
            InvalidCredentialsError: Uniformly, for unknown email or wrong password
        """
        normalized = email.strip().lower()
        try:
            lockout = await self.revocations.get_lockout(normalized, client.ip_address)
            if lockout.locked:
                await self.events.log(
                    None,
                    "login_attempt_blocked",
                    client,
                    {"email": normalized, "retry_after_seconds": lockout.retry_after_seconds},
                    Severity.WARNING,
                )
                metrics.record_login("locked")
                raise AccountLockedError(lockout.retry_after_seconds)

            identity = await self.identities.authenticate(normalized, password)
            if identity is None:
                await self.revocations.record_login_attempt(
                    normalized, client, success=False, failure_reason="invalid_credentials"
                )
                await self.events.log(
                    None,
                    "login_failed",
                    client,
                    {"email": normalized, "reason": "invalid_credentials"},
                    Severity.WARNING,
                )
                metrics.record_login("failed")
                raise InvalidCredentialsError()

            challenge: TwoFactorChallenge | None = None
            if await self._two_factor_enabled(identity.user_id):
                # The attempt is recorded once the second factor passes
                token, _, expires_at = self.codec.issue_two_factor_challenge(
                    identity.user_id, self.challenge_ttl
                )
                challenge = TwoFactorChallenge(
                    user_id=identity.user_id, challenge_token=token, expires_at=expires_at
                )
            else:
                session_id = await self.sessions.create_session(identity.user_id, client)
                tokens = self.codec.issue_token_pair(identity.user_id, identity.role, session_id)
                await self.revocations.record_login_attempt(normalized, client, success=True)
        except AvaError:
            raise
        except Exception as exc:
            await self.events.log(
                None,
                "login_error",
                client,
                {"email": normalized, "error": type(exc).__name__},
                Severity.CRITICAL,
            )
            metrics.record_login("error")
            logger.error("login_error", error=str(exc), exc_info=True)
            raise

        if challenge is not None:
            await self.events.log(identity.user_id, "login_two_factor_required", client)
            metrics.record_login("two_factor_required")
            return challenge

        await self.events.log(
            identity.user_id,
            "login_success",
            client,
            {"session_id": str(session_id)},
        )
        metrics.record_login("success")
        return LoginResult(identity=identity, tokens=tokens)

    async def login_two_factor(
        self, challenge_token: str, code: str, client: ClientInfo
    ) -> LoginResult:
        """
        Finish a login that stopped at the second factor.

        Wrong codes count as failed login attempts, so the lockout covers
        guessing codes as well as passwords. A challenge is single-use.

        Raises:
            InvalidTokenError: If the challenge is invalid, expired or already used
            AccountLockedError: While the (email, ip) pair is locked out
            InvalidTwoFactorCodeError: If the code does not verify
        """
        try:
            user_id, challenge_id, challenge_expires_at = (
                self.codec.decode_two_factor_challenge(challenge_token)
            )
        except InvalidTokenError:
            await self.events.log(
                None, "2fa_challenge_invalid", client, severity=Severity.WARNING
            )
            raise

        identity = await self.identities.get_identity(user_id)
        if identity is None or await self.revocations.is_blacklisted(challenge_id):
            await self.events.log(
                user_id, "2fa_challenge_invalid", client, severity=Severity.WARNING
            )
            raise InvalidTokenError()

        lockout = await self.revocations.get_lockout(identity.email, client.ip_address)
        if lockout.locked:
            await self.events.log(
                user_id,
                "login_attempt_blocked",
                client,
                {"email": identity.email, "retry_after_seconds": lockout.retry_after_seconds},
                Severity.WARNING,
            )
            metrics.record_login("locked")
            raise AccountLockedError(lockout.retry_after_seconds)

        try:
            valid = await self._require_two_factor().verify(user_id, code)
        except TwoFactorStateError:
            # Two-factor was switched off after the challenge was issued
            valid = False

        if not valid:
            await self.revocations.record_login_attempt(
                identity.email, client, success=False, failure_reason="invalid_two_factor_code"
            )
            await self.events.log(
                user_id,
                "2fa_verification_failed",
                client,
                {"stage": "login"},
                Severity.WARNING,
            )
            metrics.record_login("failed")
            raise InvalidTwoFactorCodeError()

        await self.revocations.blacklist(
            challenge_id, user_id, challenge_expires_at, reason="two_factor_challenge_used"
        )
        session_id = await self.sessions.create_session(user_id, client)
        tokens = self.codec.issue_token_pair(user_id, identity.role, session_id)
        await self.revocations.record_login_attempt(identity.email, client, success=True)

        await self.events.log(
            user_id,
            "login_success",
            client,
            {"session_id": str(session_id), "two_factor": True},
        )
        metrics.record_login("success")
        return LoginResult(identity=identity, tokens=tokens)

    # ========================================================================
    # Token Lifecycle
    # ========================================================================

    async def authenticate_request(self, token: str, client: ClientInfo) -> AuthContext:
        """
        Resolve a bearer access token to the caller.

        Raises:
            InvalidTokenError: For every failure cause, with the same message
        """
        claims = await self.codec.verify(
            token, self.revocations, self.sessions, expected_type=TokenType.ACCESS
        )
        if claims is None or claims.role is None:
            metrics.record_token_verification(False)
            await self.events.log(
                None, "failed_token_verification", client, severity=Severity.WARNING
            )
            raise InvalidTokenError()

        metrics.record_token_verification(True)
        await self.sessions.touch(claims.session_id)
        return AuthContext(
            user_id=claims.subject_id,
            role=claims.role,
            session_id=claims.session_id,
            token_id=claims.token_id,
            token_expires_at=claims.expires_at,
        )

    async def refresh(self, refresh_token: str, client: ClientInfo) -> TokenPair:
        """
        Exchange a refresh token for a new pair bound to the same session.

        The presented refresh token stays valid unless rotation is enabled.

        Raises:
            InvalidTokenError: If the refresh token is not honored
        """
        claims = await self.codec.verify(
            refresh_token, self.revocations, self.sessions, expected_type=TokenType.REFRESH
        )
        identity = await self.identities.get_identity(claims.subject_id) if claims else None
        if claims is None or identity is None:
            await self.events.log(
                claims.subject_id if claims else None,
                "refresh_token_invalid",
                client,
                severity=Severity.WARNING,
            )
            raise InvalidTokenError()

        tokens = self.codec.issue_token_pair(identity.user_id, identity.role, claims.session_id)
        await self.sessions.touch(claims.session_id)

        if self.rotate_refresh_tokens:
            await self.revocations.blacklist(
                claims.token_id, claims.subject_id, claims.expires_at, reason="refresh_rotation"
            )

        await self.events.log(
            identity.user_id,
            "token_refreshed",
            client,
            {"session_id": str(claims.session_id)},
        )
        logger.info(
            "token_refreshed",
            user_id=str(identity.user_id),
            refresh_token_id=token_fingerprint(claims.token_id),
        )
        return tokens

    # ========================================================================
    # Logout & Sessions
    # ========================================================================

    async def logout(self, context: AuthContext, client: ClientInfo) -> None:
        """Revoke the presented access token and close its session."""
        await self.revocations.blacklist(
            context.token_id, context.user_id, context.token_expires_at, reason="logout"
        )
        await self.sessions.invalidate(context.session_id)
        metrics.record_sessions_invalidated("logout", 1)

        await self.events.log(
            context.user_id,
            "logout",
            client,
            {"session_id": str(context.session_id)},
        )

    async def logout_all(self, user_id: UUID, client: ClientInfo) -> int:
        """
        Close every session of the user.

        Returns:
            Number of sessions that were active
        """
        count = await self.sessions.invalidate_all_for_user(user_id)
        metrics.record_sessions_invalidated("logout_all", count)

        await self.events.log(
            user_id,
            "logout_all_devices",
            client,
            {"sessions_invalidated": count},
        )
        return count

    async def list_sessions(self, user_id: UUID) -> list[SessionData]:
        return await self.sessions.list_active(user_id)

    async def revoke_session(
        self,
        user_id: UUID,
        session_id: UUID,
        current_session_id: UUID,
        client: ClientInfo,
    ) -> None:
        """
        Close one of the user's other sessions.

        Raises:
            ValidationError: If asked to revoke the calling session
            SessionNotFoundError: If the session is not a live session of this user
        """
        if session_id == current_session_id:
            raise ValidationError(
                "Cannot revoke the current session; use logout instead", field="session_id"
            )

        session = await self.sessions.get_active_for_user(user_id, session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        await self.sessions.invalidate(session_id)
        metrics.record_sessions_invalidated("revoke", 1)

        await self.events.log(
            user_id,
            "session_revoked",
            client,
            {"revoked_session_id": str(session_id), "device_info": session.device_info},
        )

    # ========================================================================
    # Credentials & Profile
    # ========================================================================

    async def change_password(
        self,
        context: AuthContext,
        current_password: str,
        new_password: str,
        client: ClientInfo,
    ) -> TokenPair:
        """
        Replace the password, close every session and open a fresh one.

        The current-password check shares the login lockout for the
        account's email and the caller's address.

        Raises:
            AccountLockedError: While the (email, ip) pair is locked out
            InvalidCredentialsError: If the current password does not match
        """
        identity = await self.identities.get_identity(context.user_id)
        if identity is None:
            raise InvalidTokenError()

        lockout = await self.revocations.get_lockout(identity.email, client.ip_address)
        if lockout.locked:
            await self.events.log(
                context.user_id,
                "password_change_blocked",
                client,
                {"retry_after_seconds": lockout.retry_after_seconds},
                Severity.WARNING,
            )
            raise AccountLockedError(lockout.retry_after_seconds)

        verified = await self.identities.authenticate(identity.email, current_password)
        if verified is None:
            await self.revocations.record_login_attempt(
                identity.email, client, success=False, failure_reason="invalid_current_password"
            )
            await self.events.log(
                context.user_id,
                "password_change_failed",
                client,
                {"reason": "invalid_current_password"},
                Severity.WARNING,
            )
            raise InvalidCredentialsError("Current password is incorrect")

        await self.revocations.record_login_attempt(identity.email, client, success=True)
        await self.identities.update_password(context.user_id, new_password)
        count = await self.sessions.invalidate_all_for_user(context.user_id)
        metrics.record_sessions_invalidated("password_change", count)

        session_id = await self.sessions.create_session(context.user_id, client)
        tokens = self.codec.issue_token_pair(context.user_id, identity.role, session_id)

        await self.events.log(
            context.user_id,
            "password_changed",
            client,
            {"sessions_invalidated": count, "new_session_id": str(session_id)},
        )
        return tokens

    async def get_profile(self, user_id: UUID) -> Identity | None:
        return await self.identities.get_identity(user_id)

    async def update_profile(
        self,
        user_id: UUID,
        client: ClientInfo,
        name: str | None = None,
        avatar_url: str | None = None,
    ) -> Identity:
        identity = await self.identities.update_profile(
            user_id, name=name, avatar_url=avatar_url
        )
        changed = [field for field, value in (("name", name), ("avatar_url", avatar_url)) if value]
        await self.events.log(user_id, "profile_updated", client, {"fields": changed})
        return identity

    # ========================================================================
    # Two-Factor Management
    # ========================================================================

    async def begin_two_factor_setup(
        self, context: AuthContext, client: ClientInfo
    ) -> TwoFactorEnrollment:
        """
        Start enrollment: a new secret and backup codes, unconfirmed.

        Raises:
            TwoFactorStateError: If two-factor is already enabled
        """
        identity = await self.identities.get_identity(context.user_id)
        if identity is None:
            raise InvalidTokenError()

        enrollment = await self._require_two_factor().begin_enrollment(
            context.user_id, identity.email
        )
        await self.events.log(context.user_id, "2fa_setup_initiated", client)
        return enrollment

    async def enable_two_factor(self, context: AuthContext, code: str, client: ClientInfo) -> None:
        """
        Confirm enrollment with a code from the authenticator app.

        Raises:
            TwoFactorStateError: If enrollment was not started or is already confirmed
            InvalidTwoFactorCodeError: If the code does not verify
        """
        if not await self._require_two_factor().enable(context.user_id, code):
            await self.events.log(
                context.user_id,
                "2fa_verification_failed",
                client,
                {"stage": "enable"},
                Severity.WARNING,
            )
            raise InvalidTwoFactorCodeError()

        await self.events.log(context.user_id, "2fa_enabled", client)

    async def disable_two_factor(
        self, context: AuthContext, code: str, client: ClientInfo
    ) -> None:
        """
        Turn two-factor off; a TOTP or backup code is required.

        Raises:
            TwoFactorStateError: If two-factor is not enabled
            InvalidTwoFactorCodeError: If the code does not verify
        """
        if not await self._require_two_factor().disable(context.user_id, code):
            await self.events.log(
                context.user_id, "2fa_disable_failed", client, severity=Severity.WARNING
            )
            raise InvalidTwoFactorCodeError()

        await self.events.log(context.user_id, "2fa_disabled", client, severity=Severity.WARNING)

    async def regenerate_backup_codes(
        self, context: AuthContext, code: str, client: ClientInfo
    ) -> list[str]:
        """
        Replace every backup code.

        Raises:
            TwoFactorStateError: If two-factor is not enabled
            InvalidTwoFactorCodeError: If the code does not verify
        """
        codes = await self._require_two_factor().regenerate_backup_codes(context.user_id, code)
        if codes is None:
            await self.events.log(
                context.user_id,
                "2fa_verification_failed",
                client,
                {"stage": "regenerate_backup_codes"},
                Severity.WARNING,
            )
            raise InvalidTwoFactorCodeError()

        await self.events.log(context.user_id, "2fa_backup_codes_regenerated", client)
        return codes

    async def two_factor_status(self, user_id: UUID) -> TwoFactorState | None:
        return await self._require_two_factor().status(user_id)

    async def _two_factor_enabled(self, user_id: UUID) -> bool:
        return self.two_factor is not None and await self.two_factor.is_enabled(user_id)

    def _require_two_factor(self) -> TwoFactorService:
        if self.two_factor is None:
            raise TwoFactorStateError("Two-factor authentication is not available")
        return self.two_factor
