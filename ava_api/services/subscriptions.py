"""
Subscription Service - Plan catalogue, checkout and webhook reconciliation.

NO DICTIONARIES - All operations use strongly typed domain models.

Webhook processing is idempotent: the event id is inserted into
stripe_webhook_events in the same transaction as the event's side effects,
so an event either fully applied exactly once or not at all.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ava_api.db.models import ProcessedWebhookEvent, SubscriptionPlan, User, UserSubscription
from ava_api.exceptions import (
    DatabaseError,
    IntegrationDisabledError,
    PlanNotFoundError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
)
from ava_api.models.api import SubscriptionStatus
from ava_api.models.domain import (
    CreditsData,
    PlanData,
    SubscriptionCreated,
    SubscriptionData,
    WebhookOutcome,
)
from ava_api.observability import metrics
from ava_api.services.credits import CreditsLedger
from ava_api.services.payment_provider import PaymentProvider, ProviderSubscription, WebhookEvent

logger = get_logger(__name__)

# Statuses that count as "the user is subscribed"
CURRENT_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _parse_user_id(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def _is_known_status(status: str | None) -> bool:
    return status in {s.value for s in SubscriptionStatus}


class SubscriptionService:
    """
    Subscription lifecycle bound to one database session.

    The provider is optional: without Stripe configured the catalogue and
    balances stay readable, while anything that needs Stripe raises
    IntegrationDisabledError.
    """

    def __init__(
        self,
        session: AsyncSession,
        ledger: CreditsLedger,
        provider: PaymentProvider | None,
    ) -> None:
        self.session = session
        self.ledger = ledger
        self.provider = provider

        self._handlers: dict[str, Callable[[WebhookEvent], Awaitable[WebhookOutcome]]] = {
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
        }

    # ========================================================================
    # Catalogue & Lookups
    # ========================================================================

    async def list_plans(self) -> list[PlanData]:
        """Active plans, cheapest first."""
        result = await self.session.execute(
            select(SubscriptionPlan)
            .where(SubscriptionPlan.is_active.is_(True))
            .order_by(SubscriptionPlan.price_amount.asc())
        )
        return [self._plan_to_domain(plan) for plan in result.scalars().all()]

    async def get_current(self, user_id: UUID) -> tuple[SubscriptionData | None, CreditsData | None]:
        """
        Current subscription and credit balance of a user.

        Returns:
            Tuple of (subscription or None, credits or None)
        """
        current = await self._get_current_rows(user_id)
        credits = await self.ledger.get_credits(user_id)
        subscription = self._subscription_to_domain(*current) if current else None
        return subscription, credits

    # ========================================================================
    # Checkout & Cancellation
    # ========================================================================

    async def create_subscription(self, user_id: UUID, price_id: str) -> SubscriptionCreated:
        """
        Start a subscription for a plan.

        Credits are not allocated here; they arrive with the first
        invoice.payment_succeeded webhook.

        Raises:
            IntegrationDisabledError: Stripe is not configured
            PlanNotFoundError: Unknown or inactive price id
            SubscriptionExistsError: User already has a current subscription
            PaymentProviderError: Stripe call failed
            DatabaseError: Persisting failed (the Stripe subscription is cancelled)
        """
        provider = self._require_provider()

        plan = await self._get_plan_row(price_id)
        if plan is None:
            raise PlanNotFoundError(price_id)

        if await self._get_current_rows(user_id) is not None:
            raise SubscriptionExistsError(user_id)

        user = await self.session.get(User, user_id)
        if user is None:
            raise DatabaseError(f"User {user_id} not found")

        customer_id = await provider.get_or_create_customer(
            str(user_id), user.email, user.name, user.stripe_customer_id
        )
        if user.stripe_customer_id != customer_id:
            user.stripe_customer_id = customer_id
            await self.session.commit()

        remote = await provider.create_subscription(
            customer_id, price_id, str(user_id), plan.plan_name
        )

        try:
            self.session.add(self._new_subscription_row(user_id, plan.id, remote))
            await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            logger.error(
                "subscription_persist_failed",
                user_id=str(user_id),
                subscription_id=remote.subscription_id,
                error=str(exc),
            )
            await provider.cancel_subscription(remote.subscription_id, at_period_end=False)
            raise DatabaseError(f"Failed to store subscription: {exc}") from exc

        logger.info(
            "subscription_created",
            user_id=str(user_id),
            subscription_id=remote.subscription_id,
            plan_name=plan.plan_name,
            status=remote.status,
        )
        return SubscriptionCreated(
            stripe_subscription_id=remote.subscription_id,
            client_secret=remote.client_secret,
            status=remote.status,
            plan=self._plan_to_domain(plan),
        )

    async def cancel(self, user_id: UUID, at_period_end: bool = True) -> SubscriptionData:
        """
        Cancel the current subscription now or at the end of the period.

        Raises:
            SubscriptionNotFoundError: No current subscription
        """
        provider = self._require_provider()

        current = await self._get_current_rows(user_id)
        if current is None:
            raise SubscriptionNotFoundError(user_id)
        subscription, plan = current

        await provider.cancel_subscription(subscription.stripe_subscription_id, at_period_end)

        now = _utc_now()
        subscription.cancel_at_period_end = at_period_end
        subscription.canceled_at = None if at_period_end else now
        subscription.status = (
            SubscriptionStatus.ACTIVE.value if at_period_end else SubscriptionStatus.CANCELED.value
        )
        subscription.updated_at = now
        await self.session.commit()

        logger.info(
            "subscription_canceled",
            user_id=str(user_id),
            subscription_id=subscription.stripe_subscription_id,
            at_period_end=at_period_end,
        )
        return self._subscription_to_domain(subscription, plan)

    # ========================================================================
    # Webhook Reconciliation
    # ========================================================================

    async def process_webhook_event(self, event: WebhookEvent) -> WebhookOutcome:
        """
        Apply a verified webhook event exactly once.

        Raises:
            Any handler failure, after rolling back so redelivery reprocesses
        """
        self.session.add(
            ProcessedWebhookEvent(
                stripe_event_id=event.event_id,
                event_type=event.event_type,
                processed_at=_utc_now(),
            )
        )
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info(
                "webhook_already_processed", event_id=event.event_id, event_type=event.event_type
            )
            metrics.record_webhook_event(event.event_type, WebhookOutcome.ALREADY_PROCESSED.value)
            return WebhookOutcome.ALREADY_PROCESSED

        handler = self._handlers.get(event.event_type)
        try:
            if handler is None:
                logger.info("webhook_event_unhandled", event_type=event.event_type)
                outcome = WebhookOutcome.IGNORED
            else:
                outcome = await handler(event)
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            metrics.record_webhook_event(event.event_type, "failed")
            logger.error(
                "webhook_processing_failed",
                event_id=event.event_id,
                event_type=event.event_type,
                error=str(exc),
                exc_info=True,
            )
            raise

        metrics.record_webhook_event(event.event_type, outcome.value)
        logger.info(
            "webhook_processed",
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome.value,
        )
        return outcome

    async def _handle_payment_succeeded(self, event: WebhookEvent) -> WebhookOutcome:
        """Initial payment or renewal: mark active and reset the credit balance."""
        provider = self._require_provider()

        subscription_id = event.subscription_id
        if subscription_id is None and event.customer_id:
            subscription_id = await provider.find_customer_subscription(event.customer_id)
        if subscription_id is None:
            logger.info("invoice_without_subscription", invoice_id=event.object_id)
            return WebhookOutcome.IGNORED

        remote = await provider.retrieve_subscription(subscription_id)
        user_id = _parse_user_id(remote.metadata_user_id)
        if user_id is None:
            logger.error("subscription_missing_user_id", subscription_id=subscription_id)
            return WebhookOutcome.IGNORED

        plan = await self._get_plan_row(remote.price_id) if remote.price_id else None
        local = await self._get_by_stripe_id(subscription_id)

        if local is None:
            if plan is None:
                logger.error(
                    "subscription_plan_unknown",
                    subscription_id=subscription_id,
                    price_id=remote.price_id,
                )
                return WebhookOutcome.IGNORED
            local = self._new_subscription_row(user_id, plan.id, remote)
            local.status = SubscriptionStatus.ACTIVE.value
            self.session.add(local)
            await self.session.flush()
        else:
            local.status = SubscriptionStatus.ACTIVE.value
            if remote.current_period_start:
                local.current_period_start = remote.current_period_start
            if remote.current_period_end:
                local.current_period_end = remote.current_period_end
            if plan is not None:
                local.plan_id = plan.id
            local.updated_at = _utc_now()

        if plan is None:
            logger.error(
                "subscription_plan_unknown", subscription_id=subscription_id, price_id=remote.price_id
            )
            return WebhookOutcome.PROCESSED

        await self.ledger.allocate(user_id, plan.credits_included, local.id, commit=False)
        logger.info(
            "payment_succeeded_processed",
            user_id=str(user_id),
            subscription_id=subscription_id,
            credits=plan.credits_included,
        )
        return WebhookOutcome.PROCESSED

    async def _handle_payment_failed(self, event: WebhookEvent) -> WebhookOutcome:
        local = await self._get_by_stripe_id(event.subscription_id) if event.subscription_id else None
        if local is None:
            logger.info("payment_failed_unknown_subscription", invoice_id=event.object_id)
            return WebhookOutcome.IGNORED

        local.status = SubscriptionStatus.PAST_DUE.value
        local.updated_at = _utc_now()
        logger.warning(
            "subscription_past_due",
            user_id=str(local.user_id),
            subscription_id=local.stripe_subscription_id,
        )
        return WebhookOutcome.PROCESSED

    async def _handle_subscription_updated(self, event: WebhookEvent) -> WebhookOutcome:
        local = await self._get_by_stripe_id(event.subscription_id) if event.subscription_id else None
        if local is None:
            logger.info("subscription_update_unknown", subscription_id=event.subscription_id)
            return WebhookOutcome.IGNORED

        if _is_known_status(event.status):
            local.status = str(event.status)
        local.cancel_at_period_end = event.cancel_at_period_end
        local.canceled_at = event.canceled_at
        if event.current_period_start:
            local.current_period_start = event.current_period_start
        if event.current_period_end:
            local.current_period_end = event.current_period_end
        if event.price_id:
            plan = await self._get_plan_row(event.price_id)
            if plan is not None:
                local.plan_id = plan.id
        local.updated_at = _utc_now()

        logger.info(
            "subscription_synced",
            subscription_id=local.stripe_subscription_id,
            status=local.status,
            cancel_at_period_end=local.cancel_at_period_end,
        )
        return WebhookOutcome.PROCESSED

    async def _handle_subscription_deleted(self, event: WebhookEvent) -> WebhookOutcome:
        local = await self._get_by_stripe_id(event.subscription_id) if event.subscription_id else None
        if local is None:
            logger.info("subscription_delete_unknown", subscription_id=event.subscription_id)
            return WebhookOutcome.IGNORED

        now = _utc_now()
        local.status = SubscriptionStatus.CANCELED.value
        local.canceled_at = event.canceled_at or now
        local.updated_at = now
        logger.info(
            "subscription_ended",
            user_id=str(local.user_id),
            subscription_id=local.stripe_subscription_id,
        )
        return WebhookOutcome.PROCESSED

    # ========================================================================
    # Helpers
    # ========================================================================

    def _require_provider(self) -> PaymentProvider:
        if self.provider is None:
            raise IntegrationDisabledError("Stripe")
        return self.provider

    def _new_subscription_row(
        self, user_id: UUID, plan_id: UUID, remote: ProviderSubscription
    ) -> UserSubscription:
        period_start = remote.current_period_start or _utc_now()
        period_end = remote.current_period_end or period_start + self.ledger.renewal_period
        return UserSubscription(
            user_id=user_id,
            stripe_customer_id=remote.customer_id,
            stripe_subscription_id=remote.subscription_id,
            plan_id=plan_id,
            status=remote.status,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=remote.cancel_at_period_end,
            canceled_at=remote.canceled_at,
        )

    async def _get_plan_row(self, price_id: str) -> SubscriptionPlan | None:
        result = await self.session.execute(
            select(SubscriptionPlan).where(
                SubscriptionPlan.stripe_price_id == price_id,
                SubscriptionPlan.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def _get_by_stripe_id(self, stripe_subscription_id: str) -> UserSubscription | None:
        result = await self.session.execute(
            select(UserSubscription)
            .where(UserSubscription.stripe_subscription_id == stripe_subscription_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _get_current_rows(
        self, user_id: UUID
    ) -> tuple[UserSubscription, SubscriptionPlan] | None:
        result = await self.session.execute(
            select(UserSubscription, SubscriptionPlan)
            .join(SubscriptionPlan, UserSubscription.plan_id == SubscriptionPlan.id)
            .where(
                UserSubscription.user_id == user_id,
                UserSubscription.status.in_(CURRENT_STATUSES),
            )
            .order_by(UserSubscription.created_at.desc())
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    @staticmethod
    def _plan_to_domain(plan: SubscriptionPlan) -> PlanData:
        return PlanData(
            plan_id=plan.id,
            stripe_product_id=plan.stripe_product_id,
            stripe_price_id=plan.stripe_price_id,
            plan_name=plan.plan_name,
            display_name=plan.display_name,
            description=plan.description,
            price_amount=plan.price_amount,
            currency=plan.currency,
            billing_interval=plan.billing_interval,
            credits_included=plan.credits_included,
        )

    @classmethod
    def _subscription_to_domain(
        cls, subscription: UserSubscription, plan: SubscriptionPlan
    ) -> SubscriptionData:
        return SubscriptionData(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            stripe_customer_id=subscription.stripe_customer_id,
            stripe_subscription_id=subscription.stripe_subscription_id,
            plan=cls._plan_to_domain(plan),
            status=SubscriptionStatus(subscription.status),
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            canceled_at=subscription.canceled_at,
        )
