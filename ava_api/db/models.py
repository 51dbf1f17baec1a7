"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
The one exception is SecurityEvent.details, a free-form audit payload.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Identity and profile in one row: credentials live here for the
    database-backed identity provider.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    # Profile
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Payment processor link
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # Audit timestamps
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("role IN ('user', 'support')", name="ck_users_role"),
        CheckConstraint("length(name) >= 1 AND length(name) <= 100", name="ck_users_name_length"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"


class AuthSession(Base):
    """
    ORM model for auth_sessions table.

    One row per login (device/browser). Rows are deactivated, never deleted,
    so the table doubles as a login audit trail.
    """

    __tablename__ = "auth_sessions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    device_info: Mapped[str] = mapped_column(String(50), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    last_activity: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_auth_sessions_user_active", "user_id", "is_active"),
        Index("idx_auth_sessions_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AuthSession(id={self.id}, user_id={self.user_id}, "
            f"active={self.is_active}, expires_at={self.expires_at})>"
        )


class UserTwoFactor(Base):
    """
    ORM model for user_two_factor table.

    At most one row per user. The row is written unconfirmed when enrollment
    starts and deleted when two-factor is turned off. Backup codes are stored
    as sha256 digests only.
    """

    __tablename__ = "user_two_factor"

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    secret: Mapped[str] = mapped_column(String(64), nullable=False)  # base32
    backup_code_hashes: Mapped[list[str]] = mapped_column(
        ARRAY(String(64)), nullable=False, default=list
    )
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    enabled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Highest TOTP time step accepted so far; a code is never accepted twice
    last_used_step: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<UserTwoFactor(user_id={self.user_id}, enabled={self.is_enabled})>"

class BlacklistedToken(Base):
    """
    ORM model for blacklisted_tokens table.

    Revoked token ids (jti). The token's own expiry is copied so the row can
    be purged once the token could no longer verify anyway.
    """

    __tablename__ = "blacklisted_tokens"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    jti: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    blacklisted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    reason: Mapped[str] = mapped_column(String(100), nullable=False, default="logout")

    __table_args__ = (
        Index("idx_blacklisted_tokens_user_id", "user_id"),
        Index("idx_blacklisted_tokens_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BlacklistedToken(jti={self.jti[:8]}..., "
            f"user_id={self.user_id}, reason={self.reason})>"
        )


class LoginAttempt(Base):
    """
    ORM model for login_attempts table.

    Append-only. Source for lockout computation.
    """

    __tablename__ = "login_attempts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_login_attempts_email_ip_time", "email", "ip_address", "attempted_at"),
        Index("idx_login_attempts_attempted_at", "attempted_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LoginAttempt(email={self.email}, ip={self.ip_address}, success={self.success})>"
        )


class SecurityEvent(Base):
    """
    ORM model for security_events table.

    Append-only audit log, never mutated.
    """

    __tablename__ = "security_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="info")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "severity IN ('info', 'warning', 'critical')", name="ck_security_events_severity"
        ),
        Index("idx_security_events_user_id", "user_id"),
        Index("idx_security_events_event_type", "event_type"),
        Index("idx_security_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<SecurityEvent(type={self.event_type}, user_id={self.user_id}, "
            f"severity={self.severity})>"
        )


class SubscriptionPlan(Base):
    """
    ORM model for subscription_plans table.

    Catalogue of purchasable plans, keyed by the payment processor's price id.
    """

    __tablename__ = "subscription_plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    stripe_product_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    stripe_price_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    plan_name: Mapped[str] = mapped_column(String(20), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price_amount: Mapped[int] = mapped_column(Integer, nullable=False)  # minor units
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    billing_interval: Mapped[str] = mapped_column(String(10), nullable=False)
    credits_included: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "plan_name IN ('starting', 'scaling', 'summit')", name="ck_subscription_plans_name"
        ),
        CheckConstraint(
            "billing_interval IN ('month', 'year')", name="ck_subscription_plans_interval"
        ),
        CheckConstraint("credits_included >= 0", name="ck_subscription_plans_credits"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<SubscriptionPlan(plan={self.plan_name}, price={self.stripe_price_id}, "
            f"credits={self.credits_included})>"
        )


class UserSubscription(Base):
    """ORM model for user_subscriptions table."""

    __tablename__ = "user_subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    stripe_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    plan_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("subscription_plans.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'canceled', 'incomplete', 'incomplete_expired', "
            "'past_due', 'trialing', 'unpaid')",
            name="ck_user_subscriptions_status",
        ),
        Index("idx_user_subscriptions_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UserSubscription(id={self.id}, user_id={self.user_id}, "
            f"stripe_id={self.stripe_subscription_id}, status={self.status})>"
        )


class UserCredits(Base):
    """
    ORM model for user_credits table.

    One ledger row per user. current_credits is only ever decremented by a
    conditional UPDATE, and the check constraint backs that up.
    """

    __tablename__ = "user_credits"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    current_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_credits_allocated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_reset_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    next_reset_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    subscription_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("user_subscriptions.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("current_credits >= 0", name="ck_user_credits_non_negative"),
        CheckConstraint("credits_used >= 0", name="ck_user_credits_used_non_negative"),
        CheckConstraint(
            "total_credits_allocated >= 0", name="ck_user_credits_allocated_non_negative"
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<UserCredits(user_id={self.user_id}, current={self.current_credits})>"


class CreditsUsage(Base):
    """
    ORM model for credits_usage_history table.

    Immutable ledger of all credit consumption.
    """

    __tablename__ = "credits_usage_history"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_used >= 0", name="ck_credits_usage_non_negative"),
        Index("idx_credits_usage_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<CreditsUsage(user_id={self.user_id}, credits={self.credits_used}, "
            f"action={self.action_type})>"
        )


class ProcessedWebhookEvent(Base):
    """
    ORM model for stripe_webhook_events table.

    Idempotency ledger: a row exists iff the event's side effects committed.
    """

    __tablename__ = "stripe_webhook_events"

    stripe_event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<ProcessedWebhookEvent(id={self.stripe_event_id}, type={self.event_type})>"
