"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Wire format is camelCase (the frontend contract); Python attributes stay snake_case.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class UserRole(str, Enum):
    """User role enumeration."""

    USER = "user"
    SUPPORT = "support"


class Severity(str, Enum):
    """Security event severity."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class TokenType(str, Enum):
    """Credential token type claim."""

    ACCESS = "access"
    REFRESH = "refresh"
    TWO_FACTOR = "two_factor"


class ActionType(str, Enum):
    """Metered actions that consume credits."""

    CHAT_MESSAGE = "chat_message"
    VOICE_TRANSCRIPTION = "voice_transcription"
    AI_RESPONSE = "ai_response"
    FILE_UPLOAD = "file_upload"
    SUPPORT_TICKET = "support_ticket"


class SubscriptionStatus(str, Enum):
    """Subscription status as reported by the payment processor."""

    ACTIVE = "active"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    UNPAID = "unpaid"


class ApiModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Auth Models
# ============================================================================


class RegisterRequest(ApiModel):
    """POST /auth/register request body."""

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., min_length=1, max_length=100)
    role: UserRole = UserRole.USER
    avatar_url: str | None = Field(None, max_length=2048)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        """Reject names that are only whitespace."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("name cannot be blank")
        return stripped


class LoginRequest(ApiModel):
    """POST /auth/login request body."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class RefreshRequest(ApiModel):
    """POST /auth/refresh request body."""

    refresh_token: str = Field(..., min_length=1)


class ChangePasswordRequest(ApiModel):
    """POST /auth/change-password request body."""

    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)

    @model_validator(mode="after")
    def passwords_differ(self) -> "ChangePasswordRequest":
        """New password must actually change something."""
        if self.current_password == self.new_password:
            raise ValueError("newPassword must differ from currentPassword")
        return self


class TwoFactorCodeRequest(ApiModel):
    """
    Body of the two-factor endpoints that take a code.

    Six digits from the authenticator app, or an eight character backup code.
    """

    code: str = Field(..., min_length=6, max_length=8, pattern=r"^[0-9A-Fa-f]+$")


class TwoFactorLoginRequest(TwoFactorCodeRequest):
    """POST /auth/login-2fa request body."""

    challenge_token: str = Field(..., min_length=1)


class ProfileUpdateRequest(ApiModel):
    """PUT /auth/profile request body."""

    name: str | None = Field(None, min_length=1, max_length=100)
    avatar_url: str | None = Field(None, max_length=2048)


class UserSummary(ApiModel):
    """User summary returned with tokens and by the profile endpoint."""

    id: UUID
    email: str
    name: str
    role: UserRole
    avatar_url: str | None = None


class ProfileResponse(UserSummary):
    """GET /auth/profile response."""

    created_at: datetime


class TokenPairResponse(ApiModel):
    """Token pair returned by login, register, refresh and change-password."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    session_id: UUID


class AuthResponse(TokenPairResponse):
    """Login/register response: token pair plus user summary."""

    user: UserSummary


class TwoFactorChallengeResponse(ApiModel):
    """Login answer when the account has two-factor enabled."""

    requires_two_factor: bool = True
    challenge_token: str
    expires_in: int


class TwoFactorSetupResponse(ApiModel):
    """Secret and backup codes, shown once when enrollment starts."""

    secret: str
    provisioning_uri: str
    backup_codes: list[str]
    message: str


class TwoFactorStatusResponse(ApiModel):
    enabled: bool
    enabled_at: datetime | None = None


class BackupCodesResponse(ApiModel):
    backup_codes: list[str]


class SessionResponse(ApiModel):
    """One active session."""

    id: UUID
    device_info: str
    ip_address: str
    user_agent: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_current: bool


class SessionListResponse(ApiModel):
    """GET /auth/sessions response."""

    sessions: list[SessionResponse]


class MessageResponse(ApiModel):
    """Generic acknowledgement."""

    message: str


class LogoutAllResponse(MessageResponse):
    """POST /auth/logout-all response."""

    sessions_invalidated: int


# ============================================================================
# Subscription & Credits Models
# ============================================================================


class PlanResponse(ApiModel):
    """Subscription plan as shown in the catalogue."""

    id: UUID
    plan_name: str
    display_name: str
    description: str | None = None
    price_amount: int
    currency: str
    billing_interval: str
    credits_included: int
    stripe_price_id: str


class PlanListResponse(ApiModel):
    """GET /subscriptions/plans response."""

    plans: list[PlanResponse]


class CreateSubscriptionRequest(ApiModel):
    """POST /subscriptions/create-subscription request body."""

    price_id: str = Field(..., pattern=r"^price_[a-zA-Z0-9_]+$", max_length=255)


class CreateSubscriptionResponse(ApiModel):
    """POST /subscriptions/create-subscription response."""

    subscription_id: str
    client_secret: str | None
    status: str
    plan: PlanResponse


class CreditsResponse(ApiModel):
    """Credit ledger snapshot."""

    current_credits: int
    total_credits_allocated: int
    credits_used: int
    last_reset_date: datetime
    next_reset_date: datetime | None = None


class SubscriptionResponse(ApiModel):
    """Subscription snapshot."""

    id: UUID
    status: SubscriptionStatus
    plan: PlanResponse
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    canceled_at: datetime | None = None


class CurrentSubscriptionResponse(ApiModel):
    """GET /subscriptions/current response."""

    subscription: SubscriptionResponse | None = None
    credits: CreditsResponse | None = None


class CancelSubscriptionRequest(ApiModel):
    """POST /subscriptions/cancel request body."""

    cancel_at_period_end: bool = True


class UseCreditsRequest(ApiModel):
    """POST /subscriptions/use-credits request body."""

    credits: int = Field(..., ge=1, le=100)
    action_type: str = Field(..., min_length=1, max_length=50)
    description: str | None = Field(None, max_length=500)


class UseCreditsResponse(ApiModel):
    """POST /subscriptions/use-credits response."""

    success: bool
    remaining_credits: int


class UsageItem(ApiModel):
    """One credits usage history entry."""

    id: UUID
    credits_used: int
    action_type: str
    description: str | None = None
    created_at: datetime


class UsageHistoryResponse(ApiModel):
    """GET /subscriptions/credits/history response."""

    items: list[UsageItem]
    total: int
    limit: int
    offset: int


class WebhookResponse(ApiModel):
    """POST /webhook/stripe response."""

    status: str
    event_id: str

