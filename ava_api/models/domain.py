"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Database rows and token payloads are decoded into these at the boundary.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from ava_api.models.api import SubscriptionStatus, TokenType, UserRole


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from, recorded with sessions and audit rows."""

    ip_address: str
    user_agent: str

    def __post_init__(self) -> None:
        """Validate client info fields."""
        if not self.ip_address:
            raise ValueError("ip_address cannot be empty")
        if not self.user_agent:
            raise ValueError("user_agent cannot be empty")


@dataclass(frozen=True)
class TokenClaims:
    """Decoded, signature-verified token payload."""

    subject_id: UUID
    session_id: UUID
    token_id: str
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    role: UserRole | None = None

    def __post_init__(self) -> None:
        """Access tokens always carry a role."""
        if self.token_type == TokenType.ACCESS and self.role is None:
            raise ValueError("access token claims require a role")
        if not self.token_id:
            raise ValueError("token_id cannot be empty")


@dataclass(frozen=True)
class TokenPair:
    """Freshly minted access/refresh pair bound to one session."""

    access_token: str
    refresh_token: str
    token_id: str
    refresh_token_id: str
    session_id: UUID
    access_expires_at: datetime
    refresh_expires_at: datetime

    def __post_init__(self) -> None:
        """The two tokens must never share an id."""
        if self.token_id == self.refresh_token_id:
            raise ValueError("access and refresh tokens must have distinct ids")


@dataclass(frozen=True)
class SessionData:
    """Immutable session snapshot."""

    session_id: UUID
    user_id: UUID
    device_info: str
    ip_address: str
    user_agent: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_active: bool


@dataclass(frozen=True)
class Identity:
    """Immutable identity/profile snapshot."""

    user_id: UUID
    email: str
    name: str
    role: UserRole
    avatar_url: str | None
    stripe_customer_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class AuthContext:
    """The caller behind an authenticated request."""

    user_id: UUID
    role: UserRole
    session_id: UUID
    token_id: str
    token_expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful login or registration."""

    identity: Identity
    tokens: TokenPair


@dataclass(frozen=True)
class TwoFactorChallenge:
    """
    Outcome of a password login on an account with two-factor enabled.

    No session exists yet; the challenge token is exchanged together with a
    code for a real token pair.
    """

    user_id: UUID
    challenge_token: str
    expires_at: datetime


@dataclass(frozen=True)
class TwoFactorState:
    """Immutable two-factor enrollment snapshot."""

    user_id: UUID
    secret: str
    backup_code_hashes: tuple[str, ...]
    is_enabled: bool
    enabled_at: datetime | None
    last_used_step: int | None


@dataclass(frozen=True)
class TwoFactorEnrollment:
    """Material handed to the user once, when enrollment starts."""

    secret: str
    provisioning_uri: str
    backup_codes: list[str]


@dataclass(frozen=True)
class CreditsData:
    """Immutable credit ledger snapshot."""

    user_id: UUID
    current_credits: int
    total_credits_allocated: int
    credits_used: int
    last_reset_date: datetime
    next_reset_date: datetime | None
    subscription_id: UUID | None

    def __post_init__(self) -> None:
        """Validate ledger constraints."""
        if self.current_credits < 0:
            raise ValueError(f"Credit balance cannot be negative: {self.current_credits}")


@dataclass(frozen=True)
class ConsumeResult:
    """
    Outcome of a consumption attempt.

    A rejected attempt is a normal outcome: success is False and
    remaining_credits is the untouched balance.
    """

    success: bool
    remaining_credits: int


@dataclass(frozen=True)
class CreditCheck:
    """Whether a user can afford an action right now."""

    has_credits: bool
    current_credits: int
    required_credits: int


@dataclass(frozen=True)
class UsageEntry:
    """Immutable credits usage history entry."""

    usage_id: UUID
    user_id: UUID
    credits_used: int
    action_type: str
    description: str | None
    created_at: datetime


@dataclass(frozen=True)
class PlanData:
    """Immutable subscription plan snapshot."""

    plan_id: UUID
    stripe_product_id: str
    stripe_price_id: str
    plan_name: str
    display_name: str
    description: str | None
    price_amount: int
    currency: str
    billing_interval: str
    credits_included: int


@dataclass(frozen=True)
class SubscriptionData:
    """Immutable user subscription snapshot."""

    subscription_id: UUID
    user_id: UUID
    stripe_customer_id: str
    stripe_subscription_id: str
    plan: PlanData
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    canceled_at: datetime | None


@dataclass(frozen=True)
class SubscriptionCreated:
    """Result of starting a subscription checkout."""

    stripe_subscription_id: str
    client_secret: str | None
    status: str
    plan: PlanData


class WebhookOutcome(str, Enum):
    """What happened to a delivered webhook event."""

    PROCESSED = "processed"
    IGNORED = "ignored"
    ALREADY_PROCESSED = "already_processed"


@dataclass(frozen=True)
class SweepResult:
    """Row counts touched by one cleanup sweep."""

    sessions_deactivated: int
    blacklist_purged: int
    login_attempts_pruned: int
    security_events_pruned: int
    started_at: datetime
    duration_seconds: float
