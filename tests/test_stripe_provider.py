"""
Tests for the Stripe Payment Provider.

SDK calls go through a mocked StripeClient; webhook verification uses a
real client and a locally computed signature.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
import stripe

from ava_api.exceptions import PaymentProviderError, WebhookVerificationError
from ava_api.services.stripe_provider import StripeProvider, parse_subscription

WEBHOOK_SECRET = "whsec_test_secret"
PERIOD_START = 1736942400  # 2025-01-15 12:00 UTC
PERIOD_END = PERIOD_START + 30 * 86400


def _subscription_payload(**overrides) -> dict:
    payload = {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "canceled_at": None,
        "metadata": {"user_id": "7d1f4a52-5a4e-4b1e-9a43-2f2f9a3c1b10"},
        "items": {
            "data": [
                {
                    "price": {"id": "price_starting"},
                    "current_period_start": PERIOD_START,
                    "current_period_end": PERIOD_END,
                }
            ]
        },
    }
    payload.update(overrides)
    return payload


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed_payload = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _event(event_type: str, data_object: dict) -> bytes:
    return json.dumps(
        {
            "id": "evt_123",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
    ).encode()


@pytest.fixture
def stripe_client() -> MagicMock:
    client = MagicMock()
    client.customers.create_async = AsyncMock(return_value=MagicMock(id="cus_new"))
    client.subscriptions.create_async = AsyncMock()
    client.subscriptions.update_async = AsyncMock()
    client.subscriptions.cancel_async = AsyncMock()
    client.subscriptions.retrieve_async = AsyncMock()
    client.subscriptions.list_async = AsyncMock()
    return client


@pytest.fixture
def provider(stripe_client: MagicMock) -> StripeProvider:
    return StripeProvider("sk_test_123", WEBHOOK_SECRET, client=stripe_client)


class TestParseSubscription:
    def test_reads_periods_from_items(self):
        subscription = parse_subscription(_subscription_payload())

        assert subscription.subscription_id == "sub_123"
        assert subscription.customer_id == "cus_123"
        assert subscription.price_id == "price_starting"
        assert int(subscription.current_period_start.timestamp()) == PERIOD_START
        assert int(subscription.current_period_end.timestamp()) == PERIOD_END
        assert subscription.metadata_user_id == "7d1f4a52-5a4e-4b1e-9a43-2f2f9a3c1b10"
        assert subscription.client_secret is None

    def test_reads_legacy_top_level_periods(self):
        payload = _subscription_payload(
            current_period_start=PERIOD_START + 60, current_period_end=PERIOD_END + 60
        )

        subscription = parse_subscription(payload)

        assert int(subscription.current_period_start.timestamp()) == PERIOD_START + 60

    def test_expanded_customer(self):
        subscription = parse_subscription(_subscription_payload(customer={"id": "cus_999"}))

        assert subscription.customer_id == "cus_999"

    def test_missing_metadata(self):
        subscription = parse_subscription(_subscription_payload(metadata={}))

        assert subscription.metadata_user_id is None


class TestCustomers:
    @pytest.mark.asyncio
    async def test_existing_customer_reused(self, provider, stripe_client):
        assert await provider.get_or_create_customer("u1", "a@b.c", "A", "cus_old") == "cus_old"
        stripe_client.customers.create_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_creates_customer_with_user_metadata(self, provider, stripe_client):
        customer_id = await provider.get_or_create_customer("u1", "a@b.c", "Alex", None)

        assert customer_id == "cus_new"
        params = stripe_client.customers.create_async.call_args.kwargs["params"]
        assert params == {"email": "a@b.c", "metadata": {"user_id": "u1"}, "name": "Alex"}

    @pytest.mark.asyncio
    async def test_stripe_error_wrapped(self, provider, stripe_client):
        stripe_client.customers.create_async.side_effect = stripe.StripeError("card network down")

        with pytest.raises(PaymentProviderError):
            await provider.get_or_create_customer("u1", "a@b.c", None, None)


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_create_returns_confirmation_secret(self, provider, stripe_client):
        stripe_client.subscriptions.create_async.return_value = _subscription_payload(
            status="incomplete",
            latest_invoice={"confirmation_secret": {"client_secret": "pi_123_secret_456"}},
        )

        result = await provider.create_subscription("cus_123", "price_starting", "u1", "starting")

        assert result.status == "incomplete"
        assert result.client_secret == "pi_123_secret_456"
        params = stripe_client.subscriptions.create_async.call_args.kwargs["params"]
        assert params["payment_behavior"] == "default_incomplete"
        assert params["items"] == [{"price": "price_starting"}]
        assert params["metadata"] == {"user_id": "u1", "plan_name": "starting"}

    @pytest.mark.asyncio
    async def test_create_failure_wrapped(self, provider, stripe_client):
        stripe_client.subscriptions.create_async.side_effect = stripe.StripeError("declined")

        with pytest.raises(PaymentProviderError):
            await provider.create_subscription("cus_123", "price_starting", "u1", "starting")

    @pytest.mark.asyncio
    async def test_cancel_at_period_end_updates(self, provider, stripe_client):
        await provider.cancel_subscription("sub_123", at_period_end=True)

        stripe_client.subscriptions.update_async.assert_awaited_once_with(
            "sub_123", params={"cancel_at_period_end": True}
        )
        stripe_client.subscriptions.cancel_async.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_immediately(self, provider, stripe_client):
        await provider.cancel_subscription("sub_123", at_period_end=False)

        stripe_client.subscriptions.cancel_async.assert_awaited_once_with("sub_123")

    @pytest.mark.asyncio
    async def test_retrieve(self, provider, stripe_client):
        stripe_client.subscriptions.retrieve_async.return_value = _subscription_payload()

        result = await provider.retrieve_subscription("sub_123")

        assert result.price_id == "price_starting"

    @pytest.mark.asyncio
    async def test_find_customer_subscription(self, provider, stripe_client):
        stripe_client.subscriptions.list_async.return_value = {"data": [{"id": "sub_latest"}]}

        assert await provider.find_customer_subscription("cus_123") == "sub_latest"

    @pytest.mark.asyncio
    async def test_find_customer_subscription_failure_returns_none(
        self, provider, stripe_client
    ):
        stripe_client.subscriptions.list_async.side_effect = stripe.StripeError("timeout")

        assert await provider.find_customer_subscription("cus_123") is None


class TestVerifyWebhook:
    @pytest.fixture
    def real_provider(self) -> StripeProvider:
        return StripeProvider("sk_test_123", WEBHOOK_SECRET)

    @pytest.mark.asyncio
    async def test_invoice_event(self, real_provider):
        payload = _event(
            "invoice.payment_succeeded",
            {
                "id": "in_123",
                "object": "invoice",
                "customer": "cus_123",
                "status": "paid",
                "parent": {"subscription_details": {"subscription": "sub_123"}},
            },
        )

        event = await real_provider.verify_webhook(payload, _signed(payload))

        assert event.event_id == "evt_123"
        assert event.event_type == "invoice.payment_succeeded"
        assert event.object_id == "in_123"
        assert event.subscription_id == "sub_123"
        assert event.customer_id == "cus_123"

    @pytest.mark.asyncio
    async def test_legacy_invoice_subscription_field(self, real_provider):
        payload = _event(
            "invoice.payment_failed",
            {"id": "in_9", "object": "invoice", "customer": "cus_123", "subscription": "sub_9"},
        )

        event = await real_provider.verify_webhook(payload, _signed(payload))

        assert event.subscription_id == "sub_9"

    @pytest.mark.asyncio
    async def test_subscription_event(self, real_provider):
        payload = _event(
            "customer.subscription.updated", _subscription_payload(cancel_at_period_end=True)
        )

        event = await real_provider.verify_webhook(payload, _signed(payload))

        assert event.subscription_id == "sub_123"
        assert event.status == "active"
        assert event.cancel_at_period_end is True
        assert event.price_id == "price_starting"

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, real_provider):
        payload = _event("invoice.payment_succeeded", {"id": "in_1", "object": "invoice"})

        with pytest.raises(WebhookVerificationError):
            await real_provider.verify_webhook(payload, _signed(payload, "whsec_other"))

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, real_provider):
        payload = _event("invoice.payment_succeeded", {"id": "in_1", "object": "invoice"})

        with pytest.raises(WebhookVerificationError):
            await real_provider.verify_webhook(payload, "")

    @pytest.mark.asyncio
    async def test_malformed_payload_rejected(self, real_provider):
        payload = b"{not json"

        with pytest.raises(WebhookVerificationError):
            await real_provider.verify_webhook(payload, _signed(payload))
