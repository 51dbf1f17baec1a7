"""
Token Codec - Issues and verifies signed credential tokens.

SECURITY: Verification failures are uniform. Callers only ever learn
"valid claims" or "invalid"; the reason is logged server-side.
"""

from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import UUID, uuid4

import jwt
from structlog import get_logger

from ava_api.config import Settings
from ava_api.exceptions import InvalidTokenError
from ava_api.models.api import TokenType, UserRole
from ava_api.models.domain import TokenClaims, TokenPair
from ava_api.observability.logging import token_fingerprint

logger = get_logger(__name__)

REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "sub", "jti", "sid", "type"]
# Challenge tokens are issued before any session exists
CHALLENGE_CLAIMS = ["exp", "iat", "iss", "aud", "sub", "jti", "type"]


class BlacklistLookup(Protocol):
    """Anything that can tell whether a token id was revoked."""

    async def is_blacklisted(self, token_id: str) -> bool: ...


class SessionLookup(Protocol):
    """Anything that can tell whether a session is live."""

    async def is_active(self, session_id: UUID) -> bool: ...


class TokenCodec:
    """
    HS256 token codec bound to one secret, issuer and audience.

    Usage:
        codec = TokenCodec.from_settings(settings)
        pair = codec.issue_token_pair(user_id, UserRole.USER, session_id)
        claims = await codec.verify(pair.access_token, revocations, sessions)
    """

    ALGORITHM = "HS256"

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if not secret:
            raise ValueError("Token signing secret cannot be empty")
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCodec":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
        )

    def issue_token_pair(self, subject_id: UUID, role: UserRole, session_id: UUID) -> TokenPair:
        """
        Mint an access/refresh pair for one session.

        Both tokens carry the same session id and distinct token ids.
        Only the access token carries the role.
        """
        now = datetime.now(UTC).replace(microsecond=0)
        access_id = str(uuid4())
        refresh_id = str(uuid4())
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl

        access_token = self._encode(
            {
                "sub": str(subject_id),
                "role": role.value,
                "sid": str(session_id),
                "type": TokenType.ACCESS.value,
                "jti": access_id,
            },
            now,
            access_exp,
        )
        refresh_token = self._encode(
            {
                "sub": str(subject_id),
                "sid": str(session_id),
                "type": TokenType.REFRESH.value,
                "jti": refresh_id,
            },
            now,
            refresh_exp,
        )

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            token_id=access_id,
            refresh_token_id=refresh_id,
            session_id=session_id,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def issue_two_factor_challenge(
        self, subject_id: UUID, ttl: timedelta = timedelta(minutes=5)
    ) -> tuple[str, str, datetime]:
        """
        Mint the short-lived token that stands between the password step and
        the second factor. It carries no role and no session, so it cannot
        authenticate a request.

        Returns:
            Tuple of (token, token id, expiry)
        """
        now = datetime.now(UTC).replace(microsecond=0)
        token_id = str(uuid4())
        expires_at = now + ttl
        token = self._encode(
            {"sub": str(subject_id), "type": TokenType.TWO_FACTOR.value, "jti": token_id},
            now,
            expires_at,
        )
        return token, token_id, expires_at

    def decode_two_factor_challenge(self, token: str) -> tuple[UUID, str, datetime]:
        """
        Check a challenge token.

        Returns:
            Tuple of (subject id, token id, expiry)

        Raises:
            InvalidTokenError: for any failure
        """
        payload = self._decode_payload(token, CHALLENGE_CLAIMS)
        try:
            if payload["type"] != TokenType.TWO_FACTOR.value:
                raise ValueError(f"expected two_factor token, got {payload['type']}")
            return (
                UUID(payload["sub"]),
                str(payload["jti"]),
                datetime.fromtimestamp(int(payload["exp"]), UTC),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.debug("token_claims_malformed", error=str(exc))
            raise InvalidTokenError() from exc

    def decode(self, token: str, expected_type: TokenType = TokenType.ACCESS) -> TokenClaims:
        """
        Check signature, algorithm, issuer, audience, expiry and claim shape.

        Does not consult the blacklist or session store; use verify() for that.

        Raises:
            InvalidTokenError: for any failure
        """
        payload = self._decode_payload(token, REQUIRED_CLAIMS)
        try:
            token_type = TokenType(payload["type"])
            if token_type != expected_type:
                raise ValueError(f"expected {expected_type.value} token, got {token_type.value}")
            role = UserRole(payload["role"]) if token_type == TokenType.ACCESS else None
            return TokenClaims(
                subject_id=UUID(payload["sub"]),
                session_id=UUID(payload["sid"]),
                token_id=str(payload["jti"]),
                token_type=token_type,
                issued_at=datetime.fromtimestamp(int(payload["iat"]), UTC),
                expires_at=datetime.fromtimestamp(int(payload["exp"]), UTC),
                role=role,
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.debug("token_claims_malformed", error=str(exc))
            raise InvalidTokenError() from exc

    async def verify(
        self,
        token: str,
        revocations: BlacklistLookup,
        sessions: SessionLookup,
        expected_type: TokenType = TokenType.ACCESS,
    ) -> TokenClaims | None:
        """
        Full verification: decode, then blacklist and session checks.

        Fails closed: a lookup that raises is treated as invalid.

        Returns:
            Claims if the token is honored, None otherwise
        """
        try:
            claims = self.decode(token, expected_type)
        except InvalidTokenError:
            return None

        try:
            if await revocations.is_blacklisted(claims.token_id):
                logger.info(
                    "token_rejected_blacklisted",
                    token_id=token_fingerprint(claims.token_id),
                    user_id=str(claims.subject_id),
                )
                return None
            if not await sessions.is_active(claims.session_id):
                logger.info(
                    "token_rejected_inactive_session",
                    session_id=str(claims.session_id),
                    user_id=str(claims.subject_id),
                )
                return None
        except Exception as exc:
            logger.error(
                "token_verification_lookup_failed",
                token_id=token_fingerprint(claims.token_id),
                error=str(exc),
                exc_info=True,
            )
            return None

        return claims

    def _encode(self, claims: dict[str, Any], issued_at: datetime, expires_at: datetime) -> str:
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": issued_at,
            "exp": expires_at,
        }
        return jwt.encode(payload, self._secret, algorithm=self.ALGORITHM)

    def _decode_payload(self, token: str, required: list[str]) -> dict[str, Any]:
        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self._secret,
                algorithms=[self.ALGORITHM],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": required},
            )
        except jwt.PyJWTError as exc:
            logger.debug("token_decode_failed", error_type=type(exc).__name__)
            raise InvalidTokenError() from exc
        return payload
