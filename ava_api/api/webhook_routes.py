"""
Webhook Routes - Stripe event delivery.

The raw request body is verified against the Stripe-Signature header before
anything is parsed. Any 5xx answer makes Stripe redeliver the event, which
is safe because processing is idempotent per event id.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from structlog import get_logger

from ava_api.api.dependencies import get_payment_provider, get_subscription_service
from ava_api.api.rate_limit import limiter
from ava_api.exceptions import WebhookVerificationError
from ava_api.models.api import WebhookResponse
from ava_api.services.payment_provider import PaymentProvider
from ava_api.services.subscriptions import SubscriptionService

logger = get_logger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookResponse)
@limiter.exempt
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    provider: PaymentProvider | None = Depends(get_payment_provider),
    service: SubscriptionService = Depends(get_subscription_service),
) -> WebhookResponse:
    """
    Receive a Stripe event.

    200 for processed, ignored and already processed events; 400 for a
    missing or bad signature; 500 if processing failed.
    """
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhooks are not configured",
        )

    if not stripe_signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    payload = await request.body()

    try:
        event = await provider.verify_webhook(payload, stripe_signature)
    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc

    try:
        outcome = await service.process_webhook_event(event)
    except Exception as exc:
        logger.error(
            "stripe_webhook_failed",
            event_id=event.event_id,
            event_type=event.event_type,
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookResponse(status=outcome.value, event_id=event.event_id)
