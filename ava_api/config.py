"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Required config is validated at startup, optional
integrations are switched off instead of failing.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_JWT_SECRET_LENGTH = 32

# Values copied from .env.example files that must never reach a running process
PLACEHOLDER_VALUES = frozenset(
    {
        "your-secret-key",
        "your-jwt-secret",
        "your_jwt_secret",
        "your-super-secret-jwt-key",
        "changeme",
        "change-me",
        "secret",
        "placeholder",
        "xxx",
        "your-openai-api-key",
        "your-stripe-secret-key",
        "sk_test_your_key",
        "whsec_your_secret",
    }
)


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


def is_placeholder(value: str) -> bool:
    """Check whether a configured value is a known template placeholder."""
    normalized = value.strip().lower()
    return normalized in PLACEHOLDER_VALUES or normalized.startswith("your-")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Ava Support API"
    api_version: str = "0.1.0"
    api_description: str = "Session security and credits ledger for Ava chat support"
    environment: str = "development"  # development or production

    # CORS - comma-separated list of allowed origins
    frontend_url: str = "http://localhost:3000"

    # Token signing
    jwt_secret: str = ""
    jwt_issuer: str = "ava-chat-system"
    jwt_audience: str = "ava-chat-users"
    access_token_ttl_seconds: int = 3600  # 1 hour
    refresh_token_ttl_seconds: int = 7 * 24 * 3600  # 7 days
    session_ttl_days: int = 7
    rotate_refresh_tokens: bool = False  # blacklist the presented refresh token on use

    # Brute-force lockout
    lockout_threshold: int = 5
    lockout_window_minutes: int = 15

    # Request rate limiting (limits notation, e.g. "100/15minutes")
    rate_limit_enabled: bool = True
    rate_limit_default: str = "100/15minutes"
    rate_limit_auth: str = "10/15minutes"

    # Two-factor authentication (TOTP)
    two_factor_issuer: str = "Ava Support"
    two_factor_valid_window: int = 2  # accepted 30s steps either side of now
    two_factor_challenge_ttl_seconds: int = 300

    # Self-service registration may only pick a role other than "user" when enabled
    allow_role_selection: bool = False

    # Retention for the periodic sweep
    login_attempt_retention_days: int = 30
    security_event_retention_days: int = 90
    sweep_interval_seconds: float = 3600.0
    sweep_initial_delay_seconds: float = 5.0
    sweep_enabled: bool = True

    # Credits
    credit_renewal_days: int = 30

    # Optional integration - LLM classifier
    openai_api_key: str = ""

    # Optional integration - issue tracker
    jira_base_url: str = ""
    jira_username: str = ""
    jira_api_token: str = ""
    jira_project_key: str = ""

    # Optional integration - speech to text
    google_application_credentials: str = ""
    google_cloud_project_id: str = ""

    # Payment Provider - Stripe
    stripe_secret_key: str = ""  # Stripe secret key (sk_test_... or sk_live_...)
    stripe_webhook_secret: str = ""  # Stripe webhook signing secret (whsec_...)
    stripe_publishable_key: str = ""  # Stripe publishable key (pk_test_... or pk_live_...)

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "ava-support-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        Every problem is collected first so a single restart shows the
        complete list instead of one error at a time.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.jwt_secret:
            errors.append("JWT_SECRET is required but empty or missing")
        elif is_placeholder(self.jwt_secret):
            errors.append("JWT_SECRET contains a placeholder value")
        elif len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            errors.append(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters, "
                f"got {len(self.jwt_secret)}"
            )

        if self.environment not in ("development", "production"):
            errors.append(f"ENVIRONMENT must be development or production, got: {self.environment}")

        if not self.allowed_origins:
            errors.append("FRONTEND_URL must list at least one origin")
        elif self.is_production and "*" in self.allowed_origins:
            errors.append("FRONTEND_URL cannot contain a wildcard origin in production")

        for name, value in self._optional_secrets():
            if value and is_placeholder(value):
                errors.append(f"{name.upper()} contains a placeholder value")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    def _optional_secrets(self) -> list[tuple[str, str]]:
        return [
            ("openai_api_key", self.openai_api_key),
            ("jira_api_token", self.jira_api_token),
            ("stripe_secret_key", self.stripe_secret_key),
            ("stripe_webhook_secret", self.stripe_webhook_secret),
        ]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def allowed_origins(self) -> list[str]:
        """Parse FRONTEND_URL into a list of CORS origins."""
        return [origin.strip() for origin in self.frontend_url.split(",") if origin.strip()]

    @property
    def openai_enabled(self) -> bool:
        return bool(self.openai_api_key)

    @property
    def jira_enabled(self) -> bool:
        return all(
            (self.jira_base_url, self.jira_username, self.jira_api_token, self.jira_project_key)
        )

    @property
    def speech_enabled(self) -> bool:
        return bool(self.google_application_credentials and self.google_cloud_project_id)

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    def configuration_warnings(self) -> list[str]:
        """
        Describe optional integrations that are disabled or half configured.

        Logged once at startup. None of these stop the application.
        """
        warnings: list[str] = []
        groups = {
            "OpenAI (ticket classification)": [("OPENAI_API_KEY", self.openai_api_key)],
            "Jira (issue tracker)": [
                ("JIRA_BASE_URL", self.jira_base_url),
                ("JIRA_USERNAME", self.jira_username),
                ("JIRA_API_TOKEN", self.jira_api_token),
                ("JIRA_PROJECT_KEY", self.jira_project_key),
            ],
            "Google Speech (voice transcription)": [
                ("GOOGLE_APPLICATION_CREDENTIALS", self.google_application_credentials),
                ("GOOGLE_CLOUD_PROJECT_ID", self.google_cloud_project_id),
            ],
            "Stripe (subscriptions)": [
                ("STRIPE_SECRET_KEY", self.stripe_secret_key),
                ("STRIPE_WEBHOOK_SECRET", self.stripe_webhook_secret),
            ],
        }
        for feature, variables in groups.items():
            missing = [name for name, value in variables if not value]
            if len(missing) == len(variables):
                warnings.append(f"{feature} disabled: {', '.join(missing)} not set")
            elif missing:
                warnings.append(f"{feature} partially configured, missing {', '.join(missing)}")
        return warnings


# Global settings instance - validates at import time
settings = Settings()
