"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_19_0000"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()"))


def upgrade() -> None:
    """Create the auth and billing schema."""

    # ========================================================================
    # users
    # ========================================================================
    op.create_table(
        "users",
        _id_column(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sa.UniqueConstraint("stripe_customer_id", name="uq_users_stripe_customer_id"),
        sa.CheckConstraint("role IN ('user', 'support')", name="ck_users_role"),
        sa.CheckConstraint(
            "length(name) >= 1 AND length(name) <= 100", name="ck_users_name_length"
        ),
    )

    # ========================================================================
    # auth_sessions
    # ========================================================================
    op.create_table(
        "auth_sessions",
        _id_column(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("device_info", sa.String(50), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=False),
        _timestamp("created_at"),
        _timestamp("last_activity"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index("idx_auth_sessions_user_active", "auth_sessions", ["user_id", "is_active"])
    op.create_index("idx_auth_sessions_expires_at", "auth_sessions", ["expires_at"])

    # ========================================================================
    # blacklisted_tokens
    # ========================================================================
    op.create_table(
        "blacklisted_tokens",
        _id_column(),
        sa.Column("jti", sa.String(64), nullable=False),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        _timestamp("blacklisted_at"),
        sa.Column("reason", sa.String(100), nullable=False, server_default="logout"),
        sa.UniqueConstraint("jti", name="uq_blacklisted_tokens_jti"),
    )
    op.create_index("idx_blacklisted_tokens_user_id", "blacklisted_tokens", ["user_id"])
    op.create_index("idx_blacklisted_tokens_expires_at", "blacklisted_tokens", ["expires_at"])

    # ========================================================================
    # login_attempts
    # ========================================================================
    op.create_table(
        "login_attempts",
        _id_column(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        _timestamp("attempted_at"),
        sa.Column("failure_reason", sa.String(255), nullable=True),
    )
    op.create_index(
        "idx_login_attempts_email_ip_time",
        "login_attempts",
        ["email", "ip_address", "attempted_at"],
    )
    op.create_index("idx_login_attempts_attempted_at", "login_attempts", ["attempted_at"])

    # ========================================================================
    # security_events
    # ========================================================================
    op.create_table(
        "security_events",
        _id_column(),
        sa.Column("user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=False),
        sa.Column("details", JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("severity", sa.String(20), nullable=False, server_default="info"),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "severity IN ('info', 'warning', 'critical')", name="ck_security_events_severity"
        ),
    )
    op.create_index("idx_security_events_user_id", "security_events", ["user_id"])
    op.create_index("idx_security_events_event_type", "security_events", ["event_type"])
    op.create_index("idx_security_events_created_at", "security_events", ["created_at"])

    # ========================================================================
    # subscription_plans
    # ========================================================================
    op.create_table(
        "subscription_plans",
        _id_column(),
        sa.Column("stripe_product_id", sa.String(255), nullable=False),
        sa.Column("stripe_price_id", sa.String(255), nullable=False),
        sa.Column("plan_name", sa.String(20), nullable=False),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price_amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="usd"),
        sa.Column("billing_interval", sa.String(10), nullable=False),
        sa.Column("credits_included", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("stripe_product_id", name="uq_subscription_plans_product"),
        sa.UniqueConstraint("stripe_price_id", name="uq_subscription_plans_price"),
        sa.CheckConstraint(
            "plan_name IN ('starting', 'scaling', 'summit')", name="ck_subscription_plans_name"
        ),
        sa.CheckConstraint(
            "billing_interval IN ('month', 'year')", name="ck_subscription_plans_interval"
        ),
        sa.CheckConstraint("credits_included >= 0", name="ck_subscription_plans_credits"),
    )

    # ========================================================================
    # user_subscriptions
    # ========================================================================
    op.create_table(
        "user_subscriptions",
        _id_column(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stripe_customer_id", sa.String(255), nullable=False),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=False),
        sa.Column(
            "plan_id",
            UUID(as_uuid=True),
            sa.ForeignKey("subscription_plans.id"),
            nullable=False,
        ),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("stripe_subscription_id", name="uq_user_subscriptions_stripe_id"),
        sa.CheckConstraint(
            "status IN ('active', 'canceled', 'incomplete', 'incomplete_expired', "
            "'past_due', 'trialing', 'unpaid')",
            name="ck_user_subscriptions_status",
        ),
    )
    op.create_index(
        "idx_user_subscriptions_user_status", "user_subscriptions", ["user_id", "status"]
    )

    # ========================================================================
    # user_credits
    # ========================================================================
    op.create_table(
        "user_credits",
        _id_column(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("current_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_credits_allocated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credits_used", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("last_reset_date"),
        sa.Column("next_reset_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "subscription_id",
            UUID(as_uuid=True),
            sa.ForeignKey("user_subscriptions.id"),
            nullable=True,
        ),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("user_id", name="uq_user_credits_user_id"),
        sa.CheckConstraint("current_credits >= 0", name="ck_user_credits_non_negative"),
        sa.CheckConstraint("credits_used >= 0", name="ck_user_credits_used_non_negative"),
        sa.CheckConstraint(
            "total_credits_allocated >= 0", name="ck_user_credits_allocated_non_negative"
        ),
    )

    # ========================================================================
    # credits_usage_history
    # ========================================================================
    op.create_table(
        "credits_usage_history",
        _id_column(),
        sa.Column(
            "user_id",
            UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("credits_used", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        _timestamp("created_at"),
        sa.CheckConstraint("credits_used >= 0", name="ck_credits_usage_non_negative"),
    )
    op.create_index(
        "idx_credits_usage_user_created", "credits_usage_history", ["user_id", "created_at"]
    )

    # ========================================================================
    # stripe_webhook_events
    # ========================================================================
    op.create_table(
        "stripe_webhook_events",
        sa.Column("stripe_event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        _timestamp("processed_at"),
    )


def downgrade() -> None:
    """Drop the auth and billing schema."""
    op.drop_table("stripe_webhook_events")
    op.drop_index("idx_credits_usage_user_created", table_name="credits_usage_history")
    op.drop_table("credits_usage_history")
    op.drop_table("user_credits")
    op.drop_index("idx_user_subscriptions_user_status", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_table("subscription_plans")
    op.drop_index("idx_security_events_created_at", table_name="security_events")
    op.drop_index("idx_security_events_event_type", table_name="security_events")
    op.drop_index("idx_security_events_user_id", table_name="security_events")
    op.drop_table("security_events")
    op.drop_index("idx_login_attempts_attempted_at", table_name="login_attempts")
    op.drop_index("idx_login_attempts_email_ip_time", table_name="login_attempts")
    op.drop_table("login_attempts")
    op.drop_index("idx_blacklisted_tokens_expires_at", table_name="blacklisted_tokens")
    op.drop_index("idx_blacklisted_tokens_user_id", table_name="blacklisted_tokens")
    op.drop_table("blacklisted_tokens")
    op.drop_index("idx_auth_sessions_expires_at", table_name="auth_sessions")
    op.drop_index("idx_auth_sessions_user_active", table_name="auth_sessions")
    op.drop_table("auth_sessions")
    op.drop_table("users")
