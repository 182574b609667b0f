"""Referral bookkeeping derived from signups and confirmed payments."""

from __future__ import annotations

import logging
import secrets
import string
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.plan import Plan
from models.referral_stats import ReferralStats
from models.user import User
from services.errors import InvalidReferrerError, TransactionFailureError

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_lowercase + string.digits
_CODE_LENGTH = 8
_CODE_ATTEMPTS = 5


def generate_reference_code() -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))
    return f"{settings.REFERRAL_CODE_PREFIX}{suffix}"


async def allocate_reference_code(db: AsyncSession) -> str:
    """Generate a reference code not yet present in referral_stats."""
    for _ in range(_CODE_ATTEMPTS):
        code = generate_reference_code()
        result = await db.execute(select(ReferralStats.id).where(ReferralStats.reference_code == code))
        if result.scalar_one_or_none() is None:
            return code
    raise TransactionFailureError("Could not allocate a unique referral code")


async def resolve_referrer(reference_code: str, db: AsyncSession) -> User:
    code = str(reference_code or "").strip()
    if code:
        result = await db.execute(
            select(User)
            .join(ReferralStats, ReferralStats.user_id == User.id)
            .where(ReferralStats.reference_code == code)
        )
        referrer = result.scalar_one_or_none()
        if referrer:
            return referrer
    raise InvalidReferrerError(
        f"Invalid referral code: no referrer found with reference code {reference_code}",
        referral_code=reference_code,
    )


def commission_for(plan: Plan, billing_cycle: str) -> Decimal:
    price = plan.price_yearly if billing_cycle == "yearly" else plan.price_monthly
    return Decimal(str(price or 0)) * Decimal(settings.REFERRAL_COMMISSION_RATE)


async def accrue_referral_commission(referrer_id: str, earning: Decimal, db: AsyncSession) -> None:
    """Increment the referrer's paid-conversion counters in one statement."""
    result = await db.execute(
        update(ReferralStats)
        .where(ReferralStats.user_id == referrer_id)
        .values(
            total_paid_subscribers=ReferralStats.total_paid_subscribers + 1,
            total_earning=ReferralStats.total_earning + earning,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.warning("Referrer %s has no referral stats row; commission %s not recorded", referrer_id, earning)


async def record_referred_signup(referrer_id: str, db: AsyncSession) -> None:
    await db.execute(
        update(ReferralStats)
        .where(ReferralStats.user_id == referrer_id)
        .values(total_users_signed=ReferralStats.total_users_signed + 1)
        .execution_options(synchronize_session=False)
    )


async def get_referral_stats(user_id: str, db: AsyncSession) -> Optional[ReferralStats]:
    result = await db.execute(select(ReferralStats).where(ReferralStats.user_id == user_id))
    return result.scalar_one_or_none()


def referral_stats_payload(stats: Optional[ReferralStats]) -> Dict[str, Any]:
    if stats is None:
        return {
            "reference_code": None,
            "total_users_signed": 0,
            "total_paid_subscribers": 0,
            "total_earning": 0.0,
            "amount_deducted": 0.0,
        }
    return {
        "reference_code": stats.reference_code,
        "total_users_signed": stats.total_users_signed,
        "total_paid_subscribers": stats.total_paid_subscribers,
        "total_earning": float(stats.total_earning or 0),
        "amount_deducted": float(stats.amount_deducted or 0),
    }
