"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class AvaError(Exception):
    """Base exception for all service errors."""

    pass


class ValidationError(AvaError):
    """Raised when input is well formed but not acceptable."""

    def __init__(self, message: str, field: str | None = None) -> None:
        self.message = message
        self.field = field
        super().__init__(message)


class AuthenticationError(AvaError):
    """Raised when authentication fails (bad credentials, bad token)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class InvalidCredentialsError(AuthenticationError):
    """Raised when an email/password pair does not authenticate."""

    def __init__(self, message: str = "Invalid email or password") -> None:
        super().__init__(message)


class InvalidTokenError(AuthenticationError):
    """
    Raised when a bearer or refresh token is not honored.

    The message is deliberately the same for every cause (bad signature,
    expiry, blacklist hit, dead session).
    """

    def __init__(self) -> None:
        super().__init__("Invalid or expired token")


class InvalidTwoFactorCodeError(AuthenticationError):
    """Raised when a TOTP or backup code does not verify."""

    def __init__(self) -> None:
        super().__init__("Invalid two-factor code")


class TwoFactorStateError(AvaError):
    """Raised when a two-factor operation does not fit the enrollment state."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AccountLockedError(AvaError):
    """Raised when an (email, ip) pair is inside a lockout window."""

    def __init__(self, retry_after_seconds: int) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Account temporarily locked. Try again in {retry_after_seconds // 60} minutes"
        )


class IdentityConflictError(AvaError):
    """Raised when registering an email that already has an identity."""

    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__(f"Identity already exists for {email}")


class IdentityProviderError(AvaError):
    """Raised when the identity store fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Identity provider error: {message}")


class SessionNotFoundError(AvaError):
    """Raised when a session does not exist, is inactive, or belongs to someone else."""

    def __init__(self, session_id: UUID) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class PlanNotFoundError(AvaError):
    """Raised when a price id does not map to an active subscription plan."""

    def __init__(self, price_id: str) -> None:
        self.price_id = price_id
        super().__init__(f"Subscription plan not found for price {price_id}")


class SubscriptionExistsError(AvaError):
    """Raised when a user already holds an active subscription."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User {user_id} already has an active subscription")


class SubscriptionNotFoundError(AvaError):
    """Raised when a user has no active subscription."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"No active subscription for user {user_id}")


class DatabaseError(AvaError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class PaymentProviderError(AvaError):
    """Raised when payment provider operation fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Payment provider error: {message}")


class WebhookVerificationError(AvaError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class IntegrationDisabledError(AvaError):
    """Raised when a request needs an optional integration that is not configured."""

    def __init__(self, integration: str) -> None:
        self.integration = integration
        super().__init__(f"{integration} integration is not configured")
