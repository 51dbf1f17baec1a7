"""
Payment Provider Protocol - Provider-agnostic subscription interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol


@dataclass(frozen=True)
class ProviderSubscription:
    """
    Provider-agnostic subscription snapshot.

    client_secret is only populated right after creation, when the
    frontend still has to confirm the first payment.
    """

    subscription_id: str
    customer_id: str
    status: str
    price_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None
    metadata_user_id: str | None
    client_secret: str | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """
    Provider-agnostic webhook event.

    For invoice events subscription_id names the invoice's subscription and
    the subscription fields are left empty; for subscription events they
    describe the subscription itself.
    """

    event_id: str
    event_type: str
    object_id: str
    subscription_id: str | None
    customer_id: str | None
    status: str | None = None
    metadata_user_id: str | None = None
    price_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    The subscription service only depends on this interface, so tests run
    against a fake and the Stripe SDK stays behind StripeProvider.
    """

    async def get_or_create_customer(
        self, user_id: str, email: str, name: str | None, existing_customer_id: str | None
    ) -> str:
        """
        Return the provider customer id for a user, creating one if needed.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def create_subscription(
        self, customer_id: str, price_id: str, user_id: str, plan_name: str
    ) -> ProviderSubscription:
        """
        Start a subscription that waits for the first payment.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> None:
        """
        Cancel now, or flag the subscription to end with the current period.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """
        Fetch the current state of a subscription.

        Raises:
            PaymentProviderError: If the provider call fails
        """
        ...

    async def find_customer_subscription(self, customer_id: str) -> str | None:
        """Most recent subscription id of a customer, if any."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse webhook event from provider.

        Raises:
            WebhookVerificationError: If signature verification fails
        """
        ...
