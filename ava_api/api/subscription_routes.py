"""
Subscription Routes - Plan catalogue, checkout, cancellation and credits.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ava_api.api.dependencies import get_credits_ledger, get_current_user, get_subscription_service
from ava_api.exceptions import (
    DatabaseError,
    IntegrationDisabledError,
    PaymentProviderError,
    PlanNotFoundError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
    ValidationError,
)
from ava_api.models.api import (
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    CreditsResponse,
    CurrentSubscriptionResponse,
    PlanListResponse,
    PlanResponse,
    SubscriptionResponse,
    UsageHistoryResponse,
    UsageItem,
    UseCreditsRequest,
    UseCreditsResponse,
)
from ava_api.models.domain import AuthContext, CreditsData, PlanData, SubscriptionData
from ava_api.services.credits import CreditsLedger
from ava_api.services.subscriptions import SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _plan_response(plan: PlanData) -> PlanResponse:
    return PlanResponse(
        id=plan.plan_id,
        plan_name=plan.plan_name,
        display_name=plan.display_name,
        description=plan.description,
        price_amount=plan.price_amount,
        currency=plan.currency,
        billing_interval=plan.billing_interval,
        credits_included=plan.credits_included,
        stripe_price_id=plan.stripe_price_id,
    )


def _subscription_response(subscription: SubscriptionData) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.subscription_id,
        status=subscription.status,
        plan=_plan_response(subscription.plan),
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        canceled_at=subscription.canceled_at,
    )


def _credits_response(credits: CreditsData) -> CreditsResponse:
    return CreditsResponse(
        current_credits=credits.current_credits,
        total_credits_allocated=credits.total_credits_allocated,
        credits_used=credits.credits_used,
        last_reset_date=credits.last_reset_date,
        next_reset_date=credits.next_reset_date,
    )


def _stripe_unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Subscriptions are not available",
    )


@router.get("/plans", response_model=PlanListResponse)
async def list_plans(
    service: SubscriptionService = Depends(get_subscription_service),
) -> PlanListResponse:
    """Public plan catalogue."""
    plans = await service.list_plans()
    return PlanListResponse(plans=[_plan_response(plan) for plan in plans])


@router.post(
    "/create-subscription",
    response_model=CreateSubscriptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_subscription(
    request: CreateSubscriptionRequest,
    user: AuthContext = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CreateSubscriptionResponse:
    """
    Start a subscription checkout.

    The returned client secret confirms the first payment on the frontend;
    credits arrive with the payment_succeeded webhook.
    """
    try:
        created = await service.create_subscription(user.user_id, request.price_id)
    except PlanNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Subscription plan not found",
        ) from exc
    except SubscriptionExistsError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="User already has an active subscription",
        ) from exc
    except IntegrationDisabledError as exc:
        raise _stripe_unavailable() from exc
    except (PaymentProviderError, DatabaseError) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create subscription",
        ) from exc

    return CreateSubscriptionResponse(
        subscription_id=created.stripe_subscription_id,
        client_secret=created.client_secret,
        status=created.status,
        plan=_plan_response(created.plan),
    )


@router.get("/current", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    user: AuthContext = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> CurrentSubscriptionResponse:
    subscription, credits = await service.get_current(user.user_id)
    return CurrentSubscriptionResponse(
        subscription=_subscription_response(subscription) if subscription else None,
        credits=_credits_response(credits) if credits else None,
    )


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    user: AuthContext = Depends(get_current_user),
    service: SubscriptionService = Depends(get_subscription_service),
) -> SubscriptionResponse:
    try:
        subscription = await service.cancel(user.user_id, request.cancel_at_period_end)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active subscription found",
        ) from exc
    except IntegrationDisabledError as exc:
        raise _stripe_unavailable() from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel subscription",
        ) from exc

    return _subscription_response(subscription)


@router.post("/use-credits", response_model=UseCreditsResponse)
async def use_credits(
    request: UseCreditsRequest,
    user: AuthContext = Depends(get_current_user),
    ledger: CreditsLedger = Depends(get_credits_ledger),
) -> UseCreditsResponse:
    """
    Spend credits for an action.

    All-or-nothing: an insufficient balance is rejected with 400 and the
    balance is left untouched.
    """
    try:
        result = await ledger.consume(
            user.user_id, request.credits, request.action_type, request.description
        )
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=exc.message,
        ) from exc

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=(
                f"Insufficient credits. Balance: {result.remaining_credits}, "
                f"Required: {request.credits}"
            ),
        )

    return UseCreditsResponse(success=True, remaining_credits=result.remaining_credits)


@router.get("/credits/history", response_model=UsageHistoryResponse)
async def credits_history(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: AuthContext = Depends(get_current_user),
    ledger: CreditsLedger = Depends(get_credits_ledger),
) -> UsageHistoryResponse:
    entries, total = await ledger.usage_history(user.user_id, limit=limit, offset=offset)
    return UsageHistoryResponse(
        items=[
            UsageItem(
                id=entry.usage_id,
                credits_used=entry.credits_used,
                action_type=entry.action_type,
                description=entry.description,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        total=total,
        limit=limit,
        offset=offset,
    )
