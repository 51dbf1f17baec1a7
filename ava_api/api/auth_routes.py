"""
Auth Routes - Registration, login, two-factor, token refresh and session management.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ava_api.api.dependencies import get_auth_manager, get_client_info, get_current_user
from ava_api.api.rate_limit import AUTH_RATE_LIMIT, limiter
from ava_api.config import settings
from ava_api.exceptions import (
    AccountLockedError,
    IdentityConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    InvalidTwoFactorCodeError,
    SessionNotFoundError,
    TwoFactorStateError,
    ValidationError,
)
from ava_api.models.api import (
    AuthResponse,
    BackupCodesResponse,
    ChangePasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    MessageResponse,
    ProfileResponse,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TwoFactorChallengeResponse,
    TwoFactorCodeRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserRole,
    UserSummary,
)
from ava_api.models.domain import (
    AuthContext,
    ClientInfo,
    Identity,
    LoginResult,
    TokenPair,
    TwoFactorChallenge,
)
from ava_api.services.auth_manager import AuthManager

router = APIRouter(prefix="/auth", tags=["auth"])


def _user_summary(identity: Identity) -> UserSummary:
    return UserSummary(
        id=identity.user_id,
        email=identity.email,
        name=identity.name,
        role=identity.role,
        avatar_url=identity.avatar_url,
    )


def _token_pair_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=settings.access_token_ttl_seconds,
        session_id=tokens.session_id,
    )


def _auth_response(result: LoginResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        expires_in=settings.access_token_ttl_seconds,
        session_id=result.tokens.session_id,
        user=_user_summary(result.identity),
    )


def _profile_response(identity: Identity) -> ProfileResponse:
    return ProfileResponse(
        id=identity.user_id,
        email=identity.email,
        name=identity.name,
        role=identity.role,
        avatar_url=identity.avatar_url,
        created_at=identity.created_at,
    )


def _locked_response(exc: AccountLockedError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_423_LOCKED,
        detail=str(exc),
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(AUTH_RATE_LIMIT)
async def register(
    request: Request,
    body: RegisterRequest,
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> AuthResponse:
    """
    Create an account and return a token pair for its first session.

    Only "user" accounts can be self-registered unless ALLOW_ROLE_SELECTION
    is set.
    """
    if body.role != UserRole.USER and not settings.allow_role_selection:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Role selection is not allowed at registration",
        )

    try:
        result = await manager.register(
            email=body.email,
            password=body.password,
            name=body.name,
            client=client,
            role=body.role,
            avatar_url=body.avatar_url,
        )
    except IdentityConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="User already exists",
        ) from exc

    return _auth_response(result)


@router.post("/login", response_model=AuthResponse | TwoFactorChallengeResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def login(
    request: Request,
    body: LoginRequest,
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> AuthResponse | TwoFactorChallengeResponse:
    """
    Exchange credentials for a token pair.

    Accounts with two-factor enabled get a challenge token instead, to be
    completed at /auth/login-2fa. Returns 423 with Retry-After while the
    (email, ip) pair is locked out.
    """
    try:
        result = await manager.login(body.email, body.password, client)
    except AccountLockedError as exc:
        raise _locked_response(exc) from exc
    except InvalidCredentialsError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
        ) from exc

    if isinstance(result, TwoFactorChallenge):
        return TwoFactorChallengeResponse(
            challenge_token=result.challenge_token,
            expires_in=settings.two_factor_challenge_ttl_seconds,
        )
    return _auth_response(result)


@router.post("/refresh", response_model=TokenPairResponse)
async def refresh(
    body: RefreshRequest,
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> TokenPairResponse:
    """Exchange a refresh token for a new pair on the same session."""
    try:
        tokens = await manager.refresh(body.refresh_token, client)
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    return _token_pair_response(tokens)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    await manager.logout(user, client)
    return MessageResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> LogoutAllResponse:
    count = await manager.logout_all(user.user_id, client)
    return LogoutAllResponse(
        message="Logged out from all devices",
        sessions_invalidated=count,
    )


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
) -> SessionListResponse:
    sessions = await manager.list_sessions(user.user_id)
    return SessionListResponse(
        sessions=[
            SessionResponse(
                id=session.session_id,
                device_info=session.device_info,
                ip_address=session.ip_address,
                user_agent=session.user_agent,
                created_at=session.created_at,
                last_activity=session.last_activity,
                expires_at=session.expires_at,
                is_current=session.session_id == user.session_id,
            )
            for session in sessions
        ]
    )


@router.delete("/sessions/{session_id}", response_model=MessageResponse)
async def revoke_session(
    session_id: UUID,
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    """Revoke one of the caller's other sessions."""
    try:
        await manager.revoke_session(user.user_id, session_id, user.session_id, client)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc
    except SessionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found",
        ) from exc

    return MessageResponse(message="Session revoked successfully")


@router.post("/change-password", response_model=TokenPairResponse)
async def change_password(
    body: ChangePasswordRequest,
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> TokenPairResponse:
    """
    Change the password.

    Every existing session is closed; the response carries a pair for the
    fresh session that replaces the caller's.
    """
    try:
        tokens = await manager.change_password(
            user, body.current_password, body.new_password, client
        )
    except AccountLockedError as exc:
        raise _locked_response(exc) from exc
    except InvalidCredentialsError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
        ) from exc
    except InvalidTokenError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    return _token_pair_response(tokens)


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
) -> ProfileResponse:
    identity = await manager.get_profile(user.user_id)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found",
        )
    return _profile_response(identity)


@router.put("/profile", response_model=ProfileResponse)
async def update_profile(
    body: ProfileUpdateRequest,
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> ProfileResponse:
    if body.name is None and body.avatar_url is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No fields to update",
        )

    identity = await manager.update_profile(
        user.user_id, client, name=body.name, avatar_url=body.avatar_url
    )
    return _profile_response(identity)


# ============================================================================
# Two-Factor Authentication
# ============================================================================


def _two_factor_state_error(exc: TwoFactorStateError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)


def _invalid_code_error(exc: InvalidTwoFactorCodeError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)


@router.post("/enable-2fa", response_model=TwoFactorSetupResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def enable_two_factor(
    request: Request,
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> TwoFactorSetupResponse:
    """
    Start two-factor enrollment.

    The secret and backup codes are shown this once. Two-factor stays off
    until a code is confirmed at /auth/verify-2fa.
    """
    try:
        enrollment = await manager.begin_two_factor_setup(user, client)
    except TwoFactorStateError as exc:
        raise _two_factor_state_error(exc) from exc

    return TwoFactorSetupResponse(
        secret=enrollment.secret,
        provisioning_uri=enrollment.provisioning_uri,
        backup_codes=enrollment.backup_codes,
        message="Add the secret to an authenticator app and confirm with a code to enable 2FA",
    )


@router.post("/verify-2fa", response_model=MessageResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def verify_two_factor(
    request: Request,
    body: TwoFactorCodeRequest,
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    """Confirm enrollment with a code from the authenticator app."""
    try:
        await manager.enable_two_factor(user, body.code, client)
    except TwoFactorStateError as exc:
        raise _two_factor_state_error(exc) from exc
    except InvalidTwoFactorCodeError as exc:
        raise _invalid_code_error(exc) from exc

    return MessageResponse(message="Two-factor authentication enabled")


@router.post("/disable-2fa", response_model=MessageResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def disable_two_factor(
    request: Request,
    body: TwoFactorCodeRequest,
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> MessageResponse:
    try:
        await manager.disable_two_factor(user, body.code, client)
    except TwoFactorStateError as exc:
        raise _two_factor_state_error(exc) from exc
    except InvalidTwoFactorCodeError as exc:
        raise _invalid_code_error(exc) from exc

    return MessageResponse(message="Two-factor authentication disabled")


@router.post("/login-2fa", response_model=AuthResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def login_two_factor(
    request: Request,
    body: TwoFactorLoginRequest,
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> AuthResponse:
    """Complete a login with the challenge token and a TOTP or backup code."""
    try:
        result = await manager.login_two_factor(body.challenge_token, body.code, client)
    except AccountLockedError as exc:
        raise _locked_response(exc) from exc
    except (InvalidTokenError, InvalidTwoFactorCodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
        ) from exc

    return _auth_response(result)


@router.get("/2fa-status", response_model=TwoFactorStatusResponse)
async def two_factor_status(
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
) -> TwoFactorStatusResponse:
    state = await manager.two_factor_status(user.user_id)
    if state is None or not state.is_enabled:
        return TwoFactorStatusResponse(enabled=False)
    return TwoFactorStatusResponse(enabled=True, enabled_at=state.enabled_at)


@router.post("/regenerate-backup-codes", response_model=BackupCodesResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def regenerate_backup_codes(
    request: Request,
    body: TwoFactorCodeRequest,
    user: AuthContext = Depends(get_current_user),
    manager: AuthManager = Depends(get_auth_manager),
    client: ClientInfo = Depends(get_client_info),
) -> BackupCodesResponse:
    """Replace every backup code; the old ones stop working."""
    try:
        codes = await manager.regenerate_backup_codes(user, body.code, client)
    except TwoFactorStateError as exc:
        raise _two_factor_state_error(exc) from exc
    except InvalidTwoFactorCodeError as exc:
        raise _invalid_code_error(exc) from exc

    return BackupCodesResponse(backup_codes=codes)
