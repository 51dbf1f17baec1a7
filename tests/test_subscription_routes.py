"""
Tests for Subscription and Webhook API Routes.

Services are replaced with mocks via dependency overrides; these tests
cover status codes and wire shapes.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from ava_api.api.dependencies import (
    get_auth_manager,
    get_credits_ledger,
    get_current_user,
    get_payment_provider,
    get_subscription_service,
)
from ava_api.exceptions import (
    IntegrationDisabledError,
    PaymentProviderError,
    PlanNotFoundError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
    WebhookVerificationError,
)
from ava_api.models.api import SubscriptionStatus
from ava_api.models.domain import (
    ConsumeResult,
    CreditsData,
    PlanData,
    SubscriptionCreated,
    SubscriptionData,
    UsageEntry,
    WebhookOutcome,
)
from ava_api.services.credits import CreditsLedger
from ava_api.services.payment_provider import WebhookEvent
from ava_api.services.subscriptions import SubscriptionService

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)

STARTING_PLAN = PlanData(
    plan_id=uuid4(),
    stripe_product_id="prod_starting",
    stripe_price_id="price_starting",
    plan_name="starting",
    display_name="Starting Plan",
    description="80 credits per month",
    price_amount=999,
    currency="usd",
    billing_interval="month",
    credits_included=80,
)


@pytest.fixture
def subscription_service() -> AsyncMock:
    return AsyncMock(spec=SubscriptionService)


@pytest.fixture
def ledger() -> AsyncMock:
    return AsyncMock(spec=CreditsLedger)


@pytest.fixture
def api(app, client: TestClient, auth_context, subscription_service, ledger) -> TestClient:
    app.dependency_overrides[get_current_user] = lambda: auth_context
    app.dependency_overrides[get_subscription_service] = lambda: subscription_service
    app.dependency_overrides[get_credits_ledger] = lambda: ledger
    return client


def _subscription(user_id, **overrides) -> SubscriptionData:
    fields = {
        "subscription_id": uuid4(),
        "user_id": user_id,
        "stripe_customer_id": "cus_123",
        "stripe_subscription_id": "sub_123",
        "plan": STARTING_PLAN,
        "status": SubscriptionStatus.ACTIVE,
        "current_period_start": NOW,
        "current_period_end": NOW + timedelta(days=30),
        "cancel_at_period_end": False,
        "canceled_at": None,
    }
    fields.update(overrides)
    return SubscriptionData(**fields)


class TestPlans:
    def test_lists_plans(self, api: TestClient, subscription_service):
        subscription_service.list_plans.return_value = [STARTING_PLAN]

        response = api.get("/subscriptions/plans")

        assert response.status_code == 200
        plan = response.json()["plans"][0]
        assert plan["planName"] == "starting"
        assert plan["priceAmount"] == 999
        assert plan["creditsIncluded"] == 80
        assert plan["stripePriceId"] == "price_starting"


class TestCreateSubscription:
    def test_created(self, api: TestClient, subscription_service):
        subscription_service.create_subscription.return_value = SubscriptionCreated(
            stripe_subscription_id="sub_new",
            client_secret="pi_secret",
            status="incomplete",
            plan=STARTING_PLAN,
        )

        response = api.post(
            "/subscriptions/create-subscription", json={"priceId": "price_starting"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["subscriptionId"] == "sub_new"
        assert body["clientSecret"] == "pi_secret"
        assert body["plan"]["planName"] == "starting"

    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (PlanNotFoundError("price_missing"), 404),
            (SubscriptionExistsError(uuid4()), 400),
            (IntegrationDisabledError("Stripe"), 503),
            (PaymentProviderError("card declined"), 500),
        ],
    )
    def test_error_mapping(self, api: TestClient, subscription_service, error, status_code):
        subscription_service.create_subscription.side_effect = error

        response = api.post(
            "/subscriptions/create-subscription", json={"priceId": "price_missing"}
        )

        assert response.status_code == status_code

    def test_malformed_price_id(self, api: TestClient, subscription_service):
        response = api.post("/subscriptions/create-subscription", json={"priceId": "bogus"})

        assert response.status_code == 400
        subscription_service.create_subscription.assert_not_awaited()

    def test_requires_authentication(
        self, app, client: TestClient, auth_stack, subscription_service
    ):
        app.dependency_overrides[get_auth_manager] = lambda: auth_stack.manager
        app.dependency_overrides[get_subscription_service] = lambda: subscription_service

        response = client.post(
            "/subscriptions/create-subscription", json={"priceId": "price_starting"}
        )

        assert response.status_code == 401


class TestCurrent:
    def test_without_subscription(self, api: TestClient, subscription_service):
        subscription_service.get_current.return_value = (None, None)

        response = api.get("/subscriptions/current")

        assert response.status_code == 200
        assert response.json() == {"subscription": None, "credits": None}

    def test_with_subscription_and_credits(
        self, api: TestClient, subscription_service, auth_context
    ):
        credits = CreditsData(
            user_id=auth_context.user_id,
            current_credits=42,
            total_credits_allocated=80,
            credits_used=38,
            last_reset_date=NOW,
            next_reset_date=NOW + timedelta(days=30),
            subscription_id=None,
        )
        subscription_service.get_current.return_value = (
            _subscription(auth_context.user_id),
            credits,
        )

        body = api.get("/subscriptions/current").json()

        assert body["subscription"]["status"] == "active"
        assert body["subscription"]["cancelAtPeriodEnd"] is False
        assert body["credits"]["currentCredits"] == 42
        assert body["credits"]["creditsUsed"] == 38


class TestCancel:
    def test_cancel_at_period_end(self, api: TestClient, subscription_service, auth_context):
        subscription_service.cancel.return_value = _subscription(
            auth_context.user_id, cancel_at_period_end=True
        )

        response = api.post("/subscriptions/cancel", json={})

        assert response.status_code == 200
        assert response.json()["cancelAtPeriodEnd"] is True
        subscription_service.cancel.assert_awaited_once_with(auth_context.user_id, True)

    def test_cancel_immediately(self, api: TestClient, subscription_service, auth_context):
        subscription_service.cancel.return_value = _subscription(
            auth_context.user_id, status=SubscriptionStatus.CANCELED, canceled_at=NOW
        )

        response = api.post("/subscriptions/cancel", json={"cancelAtPeriodEnd": False})

        assert response.json()["status"] == "canceled"
        subscription_service.cancel.assert_awaited_once_with(auth_context.user_id, False)

    def test_nothing_to_cancel(self, api: TestClient, subscription_service, auth_context):
        subscription_service.cancel.side_effect = SubscriptionNotFoundError(auth_context.user_id)

        assert api.post("/subscriptions/cancel", json={}).status_code == 404


class TestUseCredits:
    def test_consumes(self, api: TestClient, ledger, auth_context):
        ledger.consume.return_value = ConsumeResult(success=True, remaining_credits=79)

        response = api.post(
            "/subscriptions/use-credits", json={"credits": 1, "actionType": "chat_message"}
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "remainingCredits": 79}
        ledger.consume.assert_awaited_once_with(auth_context.user_id, 1, "chat_message", None)

    def test_insufficient_balance(self, api: TestClient, ledger):
        ledger.consume.return_value = ConsumeResult(success=False, remaining_credits=1)

        response = api.post(
            "/subscriptions/use-credits", json={"credits": 2, "actionType": "voice_transcription"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Insufficient credits. Balance: 1, Required: 2"

    @pytest.mark.parametrize("credits", [0, -5, 101])
    def test_amount_out_of_range(self, api: TestClient, ledger, credits):
        response = api.post(
            "/subscriptions/use-credits", json={"credits": credits, "actionType": "chat_message"}
        )

        assert response.status_code == 400
        ledger.consume.assert_not_awaited()


class TestCreditsHistory:
    def test_page(self, api: TestClient, ledger, auth_context):
        entry = UsageEntry(
            usage_id=uuid4(),
            user_id=auth_context.user_id,
            credits_used=2,
            action_type="voice_transcription",
            description=None,
            created_at=NOW,
        )
        ledger.usage_history.return_value = ([entry], 7)

        response = api.get("/subscriptions/credits/history", params={"limit": 1, "offset": 3})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 7
        assert body["limit"] == 1
        assert body["offset"] == 3
        assert body["items"][0]["actionType"] == "voice_transcription"
        ledger.usage_history.assert_awaited_once_with(auth_context.user_id, limit=1, offset=3)

    def test_limit_capped(self, api: TestClient):
        assert api.get("/subscriptions/credits/history", params={"limit": 500}).status_code == 400


# ============================================================================
# Webhook Route Tests
# ============================================================================


@pytest.fixture
def payment_provider() -> AsyncMock:
    provider = AsyncMock()
    provider.verify_webhook.return_value = WebhookEvent(
        event_id="evt_123",
        event_type="invoice.payment_succeeded",
        object_id="in_123",
        subscription_id="sub_123",
        customer_id="cus_123",
    )
    return provider


@pytest.fixture
def webhook_client(app, client: TestClient, payment_provider, subscription_service) -> TestClient:
    app.dependency_overrides[get_payment_provider] = lambda: payment_provider
    app.dependency_overrides[get_subscription_service] = lambda: subscription_service
    return client


class TestStripeWebhook:
    def test_processed(self, webhook_client: TestClient, subscription_service, payment_provider):
        subscription_service.process_webhook_event.return_value = WebhookOutcome.PROCESSED

        response = webhook_client.post(
            "/webhook/stripe", content=b'{"id": "evt_123"}', headers={"Stripe-Signature": "t=1,v1=x"}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "processed", "eventId": "evt_123"}
        payment_provider.verify_webhook.assert_awaited_once_with(b'{"id": "evt_123"}', "t=1,v1=x")

    def test_duplicate_delivery_is_acknowledged(
        self, webhook_client: TestClient, subscription_service
    ):
        subscription_service.process_webhook_event.return_value = WebhookOutcome.ALREADY_PROCESSED

        response = webhook_client.post(
            "/webhook/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "already_processed"

    def test_missing_signature(self, webhook_client: TestClient, payment_provider):
        response = webhook_client.post("/webhook/stripe", content=b"{}")

        assert response.status_code == 400
        payment_provider.verify_webhook.assert_not_awaited()

    def test_bad_signature(self, webhook_client: TestClient, payment_provider, subscription_service):
        payment_provider.verify_webhook.side_effect = WebhookVerificationError("bad signature")

        response = webhook_client.post(
            "/webhook/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
        )

        assert response.status_code == 400
        subscription_service.process_webhook_event.assert_not_awaited()

    def test_processing_failure_asks_for_redelivery(
        self, webhook_client: TestClient, subscription_service
    ):
        subscription_service.process_webhook_event.side_effect = RuntimeError("db down")

        response = webhook_client.post(
            "/webhook/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
        )

        assert response.status_code == 500
        assert response.json()["detail"] == "Webhook processing failed"

    def test_stripe_not_configured(self, app, client: TestClient, subscription_service):
        app.dependency_overrides[get_payment_provider] = lambda: None
        app.dependency_overrides[get_subscription_service] = lambda: subscription_service

        response = client.post(
            "/webhook/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
        )

        assert response.status_code == 503
