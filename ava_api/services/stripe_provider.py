"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data leaving this module uses strongly typed models.

Stripe objects are read through _field() so both SDK objects and plain
mappings (webhook payloads in tests) parse the same way, and so fields
that moved between API versions (subscription periods, the invoice's
subscription link) are found in either place.
"""

from datetime import UTC, datetime
from typing import Any

import stripe
from structlog import get_logger

from ava_api.config import Settings
from ava_api.exceptions import PaymentProviderError, WebhookVerificationError
from ava_api.services.payment_provider import ProviderSubscription, WebhookEvent

logger = get_logger(__name__)


def _field(obj: Any, name: str) -> Any:
    """Read a field from a Stripe object or mapping, None when absent."""
    if obj is None:
        return None
    try:
        return obj[name]
    except (KeyError, TypeError, IndexError):
        return getattr(obj, name, None)


def _object_id(value: Any) -> str | None:
    """An expandable field is either an id string or the expanded object."""
    if value is None or isinstance(value, str):
        return value
    object_id = _field(value, "id")
    return str(object_id) if object_id else None


def _to_datetime(timestamp: Any) -> datetime | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(int(timestamp), UTC)


def _invoice_subscription_id(invoice: Any) -> str | None:
    """Subscription behind an invoice, on current and older API versions."""
    legacy = _object_id(_field(invoice, "subscription"))
    if legacy:
        return legacy
    details = _field(_field(invoice, "parent"), "subscription_details")
    return _object_id(_field(details, "subscription"))


def parse_subscription(subscription: Any, client_secret: str | None = None) -> ProviderSubscription:
    """Convert a Stripe subscription object into a ProviderSubscription."""
    items = _field(_field(subscription, "items"), "data") or []
    first_item = items[0] if items else None
    price = _field(first_item, "price")

    period_start = _field(subscription, "current_period_start") or _field(
        first_item, "current_period_start"
    )
    period_end = _field(subscription, "current_period_end") or _field(
        first_item, "current_period_end"
    )
    user_id = _field(_field(subscription, "metadata"), "user_id")

    return ProviderSubscription(
        subscription_id=str(_field(subscription, "id")),
        customer_id=_object_id(_field(subscription, "customer")) or "",
        status=str(_field(subscription, "status")),
        price_id=_object_id(price),
        current_period_start=_to_datetime(period_start),
        current_period_end=_to_datetime(period_end),
        cancel_at_period_end=bool(_field(subscription, "cancel_at_period_end")),
        canceled_at=_to_datetime(_field(subscription, "canceled_at")),
        metadata_user_id=str(user_id) if user_id else None,
        client_secret=client_secret,
    )


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe. The StripeClient is
    injected (or built from the key) instead of configuring the SDK's
    module-level api_key.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        client: stripe.StripeClient | None = None,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            client: Preconfigured client (tests pass a mock)
        """
        self.webhook_secret = webhook_secret
        self.client = client or stripe.StripeClient(api_key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeProvider":
        return cls(settings.stripe_secret_key, settings.stripe_webhook_secret)

    async def get_or_create_customer(
        self, user_id: str, email: str, name: str | None, existing_customer_id: str | None
    ) -> str:
        if existing_customer_id:
            return existing_customer_id

        params: dict[str, Any] = {"email": email, "metadata": {"user_id": user_id}}
        if name:
            params["name"] = name

        try:
            customer = await self.client.customers.create_async(params=params)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_customer_creation_failed",
                user_id=user_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe customer creation failed: {exc}") from exc

        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer.id)
        customer_id: str = customer.id
        return customer_id

    async def create_subscription(
        self, customer_id: str, price_id: str, user_id: str, plan_name: str
    ) -> ProviderSubscription:
        """
        Create a subscription in the default_incomplete state.

        The first invoice's confirmation secret is expanded so the frontend
        can confirm the payment; renewals then happen automatically.
        """
        try:
            logger.info(
                "creating_stripe_subscription",
                customer_id=customer_id,
                price_id=price_id,
                plan_name=plan_name,
            )
            subscription = await self.client.subscriptions.create_async(
                params={
                    "customer": customer_id,
                    "items": [{"price": price_id}],
                    "payment_behavior": "default_incomplete",
                    "payment_settings": {"save_default_payment_method": "on_subscription"},
                    "expand": ["latest_invoice.confirmation_secret"],
                    "metadata": {"user_id": user_id, "plan_name": plan_name},
                }
            )
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_creation_failed",
                customer_id=customer_id,
                price_id=price_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise PaymentProviderError(f"Stripe subscription creation failed: {exc}") from exc

        secret = _field(
            _field(_field(subscription, "latest_invoice"), "confirmation_secret"), "client_secret"
        )
        result = parse_subscription(subscription, client_secret=secret)

        logger.info(
            "stripe_subscription_created",
            subscription_id=result.subscription_id,
            status=result.status,
        )
        return result

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> None:
        try:
            if at_period_end:
                await self.client.subscriptions.update_async(
                    subscription_id, params={"cancel_at_period_end": True}
                )
            else:
                await self.client.subscriptions.cancel_async(subscription_id)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_cancel_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Stripe cancellation failed: {exc}") from exc

        logger.info(
            "stripe_subscription_canceled",
            subscription_id=subscription_id,
            at_period_end=at_period_end,
        )

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        try:
            subscription = await self.client.subscriptions.retrieve_async(subscription_id)
        except stripe.StripeError as exc:
            logger.error(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(exc),
            )
            raise PaymentProviderError(f"Failed to retrieve subscription: {exc}") from exc
        return parse_subscription(subscription)

    async def find_customer_subscription(self, customer_id: str) -> str | None:
        try:
            subscriptions = await self.client.subscriptions.list_async(
                params={"customer": customer_id, "limit": 1}
            )
        except stripe.StripeError as exc:
            logger.warning(
                "stripe_subscription_lookup_failed", customer_id=customer_id, error=str(exc)
            )
            return None

        data = _field(subscriptions, "data") or []
        return _object_id(data[0]) if data else None

    async def verify_webhook(self, payload: bytes, signature: str) -> WebhookEvent:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload, exactly as received
            signature: Stripe-Signature header value

        Raises:
            WebhookVerificationError: If signature verification or parsing fails
        """
        try:
            event = self.client.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.warning("stripe_webhook_payload_invalid", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook payload") from exc

        try:
            webhook_event = self._parse_event(event)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info(
            "stripe_webhook_verified",
            event_id=webhook_event.event_id,
            event_type=webhook_event.event_type,
        )
        return webhook_event

    @staticmethod
    def _parse_event(event: Any) -> WebhookEvent:
        event_id = str(_field(event, "id"))
        event_type = str(_field(event, "type"))
        data_object = _field(_field(event, "data"), "object")

        if event_type.startswith("customer.subscription."):
            subscription = parse_subscription(data_object)
            return WebhookEvent(
                event_id=event_id,
                event_type=event_type,
                object_id=subscription.subscription_id,
                subscription_id=subscription.subscription_id,
                customer_id=subscription.customer_id or None,
                status=subscription.status,
                metadata_user_id=subscription.metadata_user_id,
                price_id=subscription.price_id,
                current_period_start=subscription.current_period_start,
                current_period_end=subscription.current_period_end,
                cancel_at_period_end=subscription.cancel_at_period_end,
                canceled_at=subscription.canceled_at,
            )

        status = _field(data_object, "status")
        return WebhookEvent(
            event_id=event_id,
            event_type=event_type,
            object_id=str(_field(data_object, "id") or ""),
            subscription_id=(
                _invoice_subscription_id(data_object) if event_type.startswith("invoice.") else None
            ),
            customer_id=_object_id(_field(data_object, "customer")),
            status=str(status) if status else None,
        )
