"""Usage consumption against the credit balance and daily quotas."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import atomic
from models.daily_usage import DailyUsage
from services.billing_periods import utc_today
from services.credits import get_credit_balance, record_consumption
from services.errors import (
    DailyLimitExceededError,
    InsufficientCreditsError,
    InvalidInputError,
    NoActiveSubscriptionError,
)
from services.subscriptions import get_active_subscription
from services.users import resolve_user

logger = logging.getLogger(__name__)


def _validate_credits(credits: Any) -> int:
    if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
        raise InvalidInputError("Credits must be a positive integer", credits=credits)
    return credits


async def consume_credits(
    user_identity: str,
    db: AsyncSession,
    *,
    credits: int = 1,
    description: str = "API usage",
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Record ``credits`` of usage for the user.

    Quota and balance checks run in the same transaction as the ledger write
    while the user row is locked, so concurrent requests for one user are
    serialized and cannot overdraw.
    """
    debit = _validate_credits(credits)
    today = utc_today(now)

    async with atomic(db):
        user = await resolve_user(user_identity, db, lock=True)
        subscription = await get_active_subscription(user.id, db, with_plan=True)
        if not subscription:
            raise NoActiveSubscriptionError()
        plan = subscription.plan

        usage_row = None
        if plan.is_daily:
            usage_result = await db.execute(
                select(DailyUsage).where(
                    DailyUsage.user_id == user.id,
                    DailyUsage.usage_date == today,
                )
            )
            usage_row = usage_result.scalar_one_or_none()
            used_today = int(usage_row.usage_count) if usage_row else 0
            if used_today + debit > int(plan.daily_credits):
                raise DailyLimitExceededError(used=used_today, limit=int(plan.daily_credits))

        available = await get_credit_balance(user.id, db)
        if available < debit:
            raise InsufficientCreditsError(available=available, required=debit)

        await record_consumption(
            user.id,
            db,
            credits=debit,
            subscription_id=subscription.id,
            description=description or "API usage",
            balance_before=available,
        )

        if plan.is_daily:
            if usage_row:
                usage_row.usage_count = used_today + debit
            else:
                db.add(
                    DailyUsage(
                        user_id=user.id,
                        subscription_id=subscription.id,
                        usage_date=today,
                        usage_count=debit,
                    )
                )
            await db.flush()

    logger.info("User %s consumed %s credits (%s)", user_identity, debit, description)
    return {
        "credits_consumed": debit,
        "remaining_credits": available - debit,
    }
