"""
Credits Ledger - Per-user credit balance with atomic consumption.

NO DICTIONARIES - All operations return strongly typed domain models.

Consumption is a single conditional UPDATE, so two concurrent requests can
never both spend the last credit: the database re-checks the balance for
whichever statement runs second.
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ava_api.db.models import CreditsUsage, UserCredits
from ava_api.exceptions import DatabaseError, ValidationError
from ava_api.models.api import ActionType
from ava_api.models.domain import ConsumeResult, CreditCheck, CreditsData, UsageEntry
from ava_api.observability import metrics, trace_operation

logger = get_logger(__name__)

DEFAULT_RENEWAL_PERIOD = timedelta(days=30)

# Cost of each metered action, in credits
CREDIT_COSTS: dict[ActionType, int] = {
    ActionType.CHAT_MESSAGE: 1,
    ActionType.VOICE_TRANSCRIPTION: 2,
    ActionType.AI_RESPONSE: 1,
    ActionType.FILE_UPLOAD: 1,
    ActionType.SUPPORT_TICKET: 0,
}


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def cost_of(action_type: ActionType | str) -> int:
    """
    Credits charged for one metered action.

    Raises:
        ValidationError: If the action is not metered
    """
    try:
        return CREDIT_COSTS[ActionType(action_type)]
    except ValueError as exc:
        raise ValidationError(f"Unknown action type: {action_type}", field="action_type") from exc


class CreditsLedger:
    """
    Credits ledger bound to one database session.

    allocate() and consume() are the only writers of user_credits:
    allocate replaces the balance on each billing period, consume only
    ever decrements it and only when the balance covers the amount.
    """

    def __init__(
        self, session: AsyncSession, renewal_period: timedelta = DEFAULT_RENEWAL_PERIOD
    ) -> None:
        self.session = session
        self.renewal_period = renewal_period

    async def allocate(
        self,
        user_id: UUID,
        credits: int,
        subscription_id: UUID | None = None,
        commit: bool = True,
    ) -> CreditsData:
        """
        Grant a billing period's worth of credits.

        First allocation creates the ledger row. Renewal replaces the
        current balance (unused credits do not roll over) and adds to the
        lifetime total. Pass commit=False to join the caller's transaction.
        """
        if credits < 0:
            raise ValidationError("Credits to allocate cannot be negative", field="credits")

        now = _utc_now()
        row = await self._lock_credits_for_update(user_id)
        renewal = row is not None

        if row is None:
            new_row = UserCredits(
                user_id=user_id,
                current_credits=credits,
                total_credits_allocated=credits,
                credits_used=0,
                last_reset_date=now,
                next_reset_date=now + self.renewal_period,
                subscription_id=subscription_id,
            )
            try:
                async with self.session.begin_nested():
                    self.session.add(new_row)
                row = new_row
            except IntegrityError:
                # Another allocation created the row first; renew it instead
                logger.warning("credits_row_creation_race", user_id=str(user_id))
                row = await self._lock_credits_for_update(user_id)
                if row is None:
                    raise DatabaseError(f"Credits row for user {user_id} vanished after conflict")
                renewal = True

        if renewal:
            row.current_credits = credits
            row.total_credits_allocated = row.total_credits_allocated + credits
            row.last_reset_date = now
            row.next_reset_date = now + self.renewal_period
            if subscription_id is not None:
                row.subscription_id = subscription_id
            row.updated_at = now

        await self.session.flush()
        if commit:
            await self.session.commit()

        metrics.record_credit_allocation(renewal)
        logger.info(
            "credits_allocated",
            user_id=str(user_id),
            credits=credits,
            renewal=renewal,
            total_allocated=row.total_credits_allocated,
        )
        return self._to_domain(row)

    async def consume(
        self,
        user_id: UUID,
        amount: int,
        action_type: str,
        description: str | None = None,
    ) -> ConsumeResult:
        """
        Spend credits if and only if the balance covers the amount.

        A rejected attempt is not an error: success is False and the
        balance is reported untouched.
        """
        if amount < 0:
            raise ValidationError("Credits to consume cannot be negative", field="credits")

        with trace_operation(
            "credits_consume", user_id=str(user_id), amount=amount, action_type=action_type
        ) as span:
            if amount == 0:
                balance = await self._current_balance(user_id)
                metrics.record_credit_consumption(True, 0, action_type)
                return ConsumeResult(success=True, remaining_credits=balance)

            now = _utc_now()
            stmt = (
                update(UserCredits)
                .where(UserCredits.user_id == user_id, UserCredits.current_credits >= amount)
                .values(
                    current_credits=UserCredits.current_credits - amount,
                    credits_used=UserCredits.credits_used + amount,
                    updated_at=now,
                )
                .returning(UserCredits.current_credits)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
            remaining = result.scalar_one_or_none()

            if remaining is None:
                await self.session.rollback()
                balance = await self._current_balance(user_id)
                span.set_attribute("accepted", False)
                metrics.record_credit_consumption(False, amount, action_type)
                logger.info(
                    "credits_consumption_rejected",
                    user_id=str(user_id),
                    amount=amount,
                    balance=balance,
                    action_type=action_type,
                )
                return ConsumeResult(success=False, remaining_credits=balance)

            self.session.add(
                CreditsUsage(
                    user_id=user_id,
                    credits_used=amount,
                    action_type=action_type,
                    description=description,
                    created_at=now,
                )
            )
            await self.session.commit()

            span.set_attribute("accepted", True)
            span.set_attribute("remaining", remaining)

        metrics.record_credit_consumption(True, amount, action_type)
        logger.info(
            "credits_consumed",
            user_id=str(user_id),
            amount=amount,
            remaining=remaining,
            action_type=action_type,
        )
        return ConsumeResult(success=True, remaining_credits=remaining)

    async def has_enough_credits(self, user_id: UUID, action_type: ActionType | str) -> CreditCheck:
        """Check affordability without spending anything."""
        required = cost_of(action_type)
        current = await self._current_balance(user_id)
        return CreditCheck(
            has_credits=current >= required,
            current_credits=current,
            required_credits=required,
        )

    async def get_credits(self, user_id: UUID) -> CreditsData | None:
        result = await self.session.execute(
            select(UserCredits).where(UserCredits.user_id == user_id)
        )
        row = result.scalar_one_or_none()
        return self._to_domain(row) if row else None

    async def usage_history(
        self, user_id: UUID, limit: int = 50, offset: int = 0
    ) -> tuple[list[UsageEntry], int]:
        """
        Page through the usage ledger, newest first.

        Returns:
            Tuple of (entries, total entry count)
        """
        total_result = await self.session.execute(
            select(func.count()).select_from(CreditsUsage).where(CreditsUsage.user_id == user_id)
        )
        total = total_result.scalar_one()

        result = await self.session.execute(
            select(CreditsUsage)
            .where(CreditsUsage.user_id == user_id)
            .order_by(CreditsUsage.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        entries = [
            UsageEntry(
                usage_id=row.id,
                user_id=row.user_id,
                credits_used=row.credits_used,
                action_type=row.action_type,
                description=row.description,
                created_at=row.created_at,
            )
            for row in result.scalars().all()
        ]
        return entries, total

    async def _current_balance(self, user_id: UUID) -> int:
        result = await self.session.execute(
            select(UserCredits.current_credits).where(UserCredits.user_id == user_id)
        )
        balance = result.scalar_one_or_none()
        return balance if balance is not None else 0

    async def _lock_credits_for_update(self, user_id: UUID) -> UserCredits | None:
        """Lock the ledger row for update (SELECT FOR UPDATE)."""
        stmt = select(UserCredits).where(UserCredits.user_id == user_id).with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _to_domain(row: UserCredits) -> CreditsData:
        return CreditsData(
            user_id=row.user_id,
            current_credits=row.current_credits,
            total_credits_allocated=row.total_credits_allocated,
            credits_used=row.credits_used,
            last_reset_date=row.last_reset_date,
            next_reset_date=row.next_reset_date,
            subscription_id=row.subscription_id,
        )
