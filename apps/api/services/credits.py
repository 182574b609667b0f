"""Credit ledger accessors.

The ledger is append-only: a user's available balance is the sum of every
entry amount. Helpers here only stage rows on the session; callers own the
surrounding transaction.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional
import uuid

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import ENTRY_CONSUMED, ENTRY_GRANTED, CreditLedger
from models.plan import Plan
from services.billing_periods import utc_now
from services.errors import InvalidInputError


def credits_for_plan(plan: Plan) -> int:
    """Quota granted per activation or renewal of ``plan``."""
    return int(plan.daily_credits if plan.is_daily else plan.monthly_credits)


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(CreditLedger.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def _insert_entry(
    user_id: str,
    db: AsyncSession,
    *,
    entry_type: str,
    amount: int,
    subscription_id: Optional[str],
    description: Optional[str],
    balance_before: Optional[int] = None,
) -> CreditLedger:
    current_balance = balance_before if balance_before is not None else await get_credit_balance(user_id, db)
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        subscription_id=subscription_id,
        entry_type=entry_type,
        amount=int(amount),
        balance_after=current_balance + int(amount),
        description=description,
        created_at=utc_now(),
    )
    db.add(entry)
    await db.flush()
    return entry


async def grant_credits(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    subscription_id: Optional[str],
    description: str,
) -> CreditLedger:
    grant = int(credits)
    if grant < 0:
        raise InvalidInputError("credits to grant must not be negative", credits=credits)
    return await _insert_entry(
        user_id,
        db,
        entry_type=ENTRY_GRANTED,
        amount=grant,
        subscription_id=subscription_id,
        description=description,
    )


async def record_consumption(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    subscription_id: Optional[str],
    description: str,
    balance_before: Optional[int] = None,
) -> CreditLedger:
    debit = int(credits)
    if debit <= 0:
        raise InvalidInputError("credits to consume must be greater than 0", credits=credits)
    return await _insert_entry(
        user_id,
        db,
        entry_type=ENTRY_CONSUMED,
        amount=-debit,
        subscription_id=subscription_id,
        description=description,
        balance_before=balance_before,
    )


async def get_recent_entries(
    user_id: str,
    db: AsyncSession,
    *,
    subscription_id: Optional[str] = None,
    limit: int = 10,
) -> List[CreditLedger]:
    query = select(CreditLedger).where(CreditLedger.user_id == user_id)
    if subscription_id is not None:
        query = query.where(CreditLedger.subscription_id == subscription_id)
    result = await db.execute(
        query.order_by(CreditLedger.created_at.desc()).limit(max(int(limit), 0))
    )
    return list(result.scalars().all())


def ledger_entry_payload(entry: CreditLedger) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "subscription_id": entry.subscription_id,
        "entry_type": entry.entry_type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "description": entry.description,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
