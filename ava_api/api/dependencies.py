"""
FastAPI Dependencies - Service wiring, authentication and authorization.

NO DICTIONARIES - All dependencies return typed objects.

Process-wide collaborators (token codec, revocation cache, password hasher,
payment provider) live on app.state and are created by the lifespan;
request-scoped services are built here around the request's database session.
"""

from collections.abc import Awaitable, Callable
from datetime import timedelta

from argon2 import PasswordHasher
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ava_api.config import settings
from ava_api.db.session import get_db
from ava_api.exceptions import InvalidTokenError
from ava_api.models.api import ActionType, UserRole
from ava_api.models.domain import AuthContext, ClientInfo, CreditCheck
from ava_api.services.auth_manager import AuthManager
from ava_api.services.credits import CreditsLedger
from ava_api.services.identity_provider import DatabaseIdentityProvider
from ava_api.services.payment_provider import PaymentProvider
from ava_api.services.security_events import SecurityEventLog
from ava_api.services.session_store import SessionStore
from ava_api.services.subscriptions import SubscriptionService
from ava_api.services.token_codec import TokenCodec
from ava_api.services.token_revocation import RevocationCache, RevocationStore
from ava_api.services.two_factor import TwoFactorService, TwoFactorStore

logger = get_logger(__name__)

# Bearer token scheme; missing headers are reported by get_current_user
bearer_scheme = HTTPBearer(auto_error=False)

UNKNOWN_CLIENT = "unknown"


# ============================================================================
# Request Context
# ============================================================================


def get_client_info(
    request: Request, user_agent: str | None = Header(default=None)
) -> ClientInfo:
    """
    Caller address and user agent for sessions and audit rows.

    The address is the direct peer; run uvicorn with --proxy-headers behind
    a trusted proxy so it reflects the real client.
    """
    ip_address = request.client.host if request.client else None
    return ClientInfo(
        ip_address=ip_address or UNKNOWN_CLIENT,
        user_agent=user_agent or UNKNOWN_CLIENT,
    )


# ============================================================================
# Process-Scoped Collaborators
# ============================================================================


def get_token_codec(request: Request) -> TokenCodec:
    codec: TokenCodec = request.app.state.token_codec
    return codec


def get_revocation_cache(request: Request) -> RevocationCache:
    cache: RevocationCache = request.app.state.revocation_cache
    return cache


def get_password_hasher(request: Request) -> PasswordHasher:
    hasher: PasswordHasher = request.app.state.password_hasher
    return hasher


def get_payment_provider(request: Request) -> PaymentProvider | None:
    """Stripe provider, or None when Stripe is not configured."""
    provider: PaymentProvider | None = getattr(request.app.state, "payment_provider", None)
    return provider


# ============================================================================
# Request-Scoped Services
# ============================================================================


def get_auth_manager(
    db: AsyncSession = Depends(get_db),
    codec: TokenCodec = Depends(get_token_codec),
    cache: RevocationCache = Depends(get_revocation_cache),
    hasher: PasswordHasher = Depends(get_password_hasher),
) -> AuthManager:
    return AuthManager(
        codec=codec,
        sessions=SessionStore(db, ttl=timedelta(days=settings.session_ttl_days)),
        revocations=RevocationStore(
            db,
            cache,
            lockout_threshold=settings.lockout_threshold,
            lockout_window=timedelta(minutes=settings.lockout_window_minutes),
        ),
        events=SecurityEventLog(db),
        identities=DatabaseIdentityProvider(db, hasher),
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
        two_factor=TwoFactorService(
            TwoFactorStore(db),
            issuer=settings.two_factor_issuer,
            valid_window=settings.two_factor_valid_window,
        ),
        challenge_ttl=timedelta(seconds=settings.two_factor_challenge_ttl_seconds),
    )


def get_credits_ledger(db: AsyncSession = Depends(get_db)) -> CreditsLedger:
    return CreditsLedger(db, renewal_period=timedelta(days=settings.credit_renewal_days))


def get_subscription_service(
    db: AsyncSession = Depends(get_db),
    ledger: CreditsLedger = Depends(get_credits_ledger),
    provider: PaymentProvider | None = Depends(get_payment_provider),
) -> SubscriptionService:
    return SubscriptionService(db, ledger, provider)


# ============================================================================
# Authentication & Authorization
# ============================================================================


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> AuthContext:
    """
    FastAPI dependency resolving Authorization: Bearer {access_token}.

    Every rejection cause answers with the same 401 body.

    Usage:
        @router.get("/auth/profile")
        async def profile(user: AuthContext = Depends(get_current_user)):
            ...

    Raises:
        HTTPException 401 if the token is missing or not honored
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await manager.authenticate_request(credentials.credentials, client)
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def require_role(*roles: UserRole) -> Callable[..., Awaitable[AuthContext]]:
    """
    FastAPI dependency factory restricting an endpoint to given roles.

    Usage:
        @router.get("/support/queue")
        async def queue(user: AuthContext = Depends(require_role(UserRole.SUPPORT))):
            ...
    """

    async def check_role(context: AuthContext = Depends(get_current_user)) -> AuthContext:
        if context.role not in roles:
            logger.warning(
                "role_check_failed",
                user_id=str(context.user_id),
                role=context.role.value,
                required=[role.value for role in roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return context

    return check_role


def require_credits(action_type: ActionType) -> Callable[..., Awaitable[CreditCheck]]:
    """
    FastAPI dependency factory gating a metered endpoint on the balance.

    Only checks; the endpoint consumes through the ledger once the work
    succeeded.
    """

    async def check_credits(
        context: AuthContext = Depends(get_current_user),
        ledger: CreditsLedger = Depends(get_credits_ledger),
    ) -> CreditCheck:
        check = await ledger.has_enough_credits(context.user_id, action_type)
        if not check.has_credits:
            raise HTTPException(
                status_code=status.HTTP_402_PAYMENT_REQUIRED,
                detail=(
                    f"Insufficient credits. Balance: {check.current_credits}, "
                    f"Required: {check.required_credits}"
                ),
            )
        return check

    return check_credits
