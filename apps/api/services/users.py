"""User lifecycle: identity resolution, signup and cascading deletion."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from database import atomic
from models.billing_history import BillingHistory
from models.credit_ledger import CreditLedger
from models.daily_usage import DailyUsage
from models.referral_stats import ReferralStats
from models.subscription import STATUS_ACTIVE, Subscription
from models.user import User
from services.billing_periods import add_months, as_utc
from services.credits import grant_credits
from services.errors import InvalidInputError, NotFoundError, TransactionFailureError
from services.plans import ensure_free_plan, plan_payload
from services.referrals import (
    allocate_reference_code,
    get_referral_stats,
    record_referred_signup,
    referral_stats_payload,
    resolve_referrer,
)

logger = logging.getLogger(__name__)


async def resolve_user(user_identity: str, db: AsyncSession, *, lock: bool = False) -> User:
    """Map an external identity to its User.

    With ``lock`` the user row is held ``FOR UPDATE`` until the surrounding
    transaction ends, which serializes every ledger mutation for that user.
    """
    identity = str(user_identity or "").strip()
    if identity:
        query = select(User).where(User.external_id == identity)
        if lock:
            query = query.with_for_update()
        result = await db.execute(query)
        user = result.scalar_one_or_none()
        if user:
            return user
    raise NotFoundError(f"User not found: {user_identity}", user_id=user_identity)


def user_payload(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "external_id": user.external_id,
        "email": user.email,
        "name": user.name,
        "referred_by_id": user.referred_by_id,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


async def _existing_signup(identity: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
    result = await db.execute(select(User).where(User.external_id == identity))
    user = result.scalar_one_or_none()
    if user is None:
        return None
    stats = await get_referral_stats(user.id, db)
    return {
        "created": False,
        "user": user_payload(user),
        "reference_code": stats.reference_code if stats else None,
    }


async def signup_user(
    external_id: str,
    db: AsyncSession,
    *,
    email: str,
    name: Optional[str] = None,
    referral_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Create a user with referral stats and a free starter subscription.

    Signing up an identity that already exists returns the existing user with
    ``created`` set to False, including when a concurrent signup for the same
    identity commits first.
    """
    identity = str(external_id or "").strip()
    if not identity or not str(email or "").strip():
        raise InvalidInputError("external_id and email are required")

    existing = await _existing_signup(identity, db)
    if existing:
        return existing

    started_at = as_utc(now)
    try:
        async with atomic(db):
            referrer = await resolve_referrer(referral_code, db) if referral_code else None
            free_plan = await ensure_free_plan(db)

            user = User(
                external_id=identity,
                email=str(email).strip(),
                name=(name or "Anonymous"),
                referred_by_id=referrer.id if referrer else None,
                created_at=started_at,
            )
            db.add(user)
            await db.flush()

            stats = ReferralStats(user_id=user.id, reference_code=await allocate_reference_code(db))
            db.add(stats)

            subscription = Subscription(
                user_id=user.id,
                plan_id=free_plan.id,
                billing_cycle="monthly",
                status=STATUS_ACTIVE,
                current_period_start=started_at,
                current_period_end=add_months(started_at, 1),
                cancel_at_period_end=False,
            )
            db.add(subscription)
            await db.flush()

            await grant_credits(
                user.id,
                db,
                credits=free_plan.monthly_credits,
                subscription_id=subscription.id,
                description=f"Starter credits for {free_plan.name} plan",
            )

            if referrer:
                await record_referred_signup(referrer.id, db)

            payload = {
                "created": True,
                "user": user_payload(user),
                "reference_code": stats.reference_code,
                "plan": plan_payload(free_plan),
                "credits_granted": int(free_plan.monthly_credits),
            }
    except TransactionFailureError as exc:
        if not isinstance(exc.__cause__, IntegrityError):
            raise
        # A concurrent signup for the same identity won the unique external_id.
        existing = await _existing_signup(identity, db)
        if existing is None:
            raise
        logger.info("Signup for %s lost a concurrent race; returning existing user", identity)
        return existing

    logger.info("Signed up user %s (referred_by=%s)", identity, referrer.external_id if referrer else None)
    return payload


async def get_user_profile(user_identity: str, db: AsyncSession) -> Dict[str, Any]:
    user = await resolve_user(user_identity, db)
    stats = await get_referral_stats(user.id, db)

    subscriptions_result = await db.execute(
        select(Subscription)
        .options(selectinload(Subscription.plan))
        .where(Subscription.user_id == user.id)
        .order_by(Subscription.created_at.desc())
    )
    billing_result = await db.execute(
        select(BillingHistory)
        .where(BillingHistory.user_id == user.id)
        .order_by(BillingHistory.payment_date.desc())
    )
    referrals_result = await db.execute(select(User).where(User.referred_by_id == user.id))
    referrer = await db.get(User, user.referred_by_id) if user.referred_by_id else None

    return {
        **user_payload(user),
        "referral_stats": referral_stats_payload(stats),
        "subscriptions": [
            {
                "id": sub.id,
                "status": sub.status,
                "billing_cycle": sub.billing_cycle,
                "current_period_start": as_utc(sub.current_period_start).isoformat(),
                "current_period_end": as_utc(sub.current_period_end).isoformat(),
                "cancel_at_period_end": bool(sub.cancel_at_period_end),
                "plan": plan_payload(sub.plan),
            }
            for sub in subscriptions_result.scalars().all()
        ],
        "billing_history": [
            {
                "id": row.id,
                "subscription_id": row.subscription_id,
                "amount": float(row.amount or 0),
                "currency": row.currency,
                "status": row.status,
                "payment_date": as_utc(row.payment_date).isoformat(),
                "external_payment_id": row.external_payment_id,
            }
            for row in billing_result.scalars().all()
        ],
        "referrals": [
            {"id": ref.id, "external_id": ref.external_id, "email": ref.email, "name": ref.name}
            for ref in referrals_result.scalars().all()
        ],
        "referred_by": (
            {
                "id": referrer.id,
                "external_id": referrer.external_id,
                "email": referrer.email,
                "name": referrer.name,
            }
            if referrer
            else None
        ),
    }


async def delete_user(user_identity: str, db: AsyncSession) -> Dict[str, Any]:
    """Remove a user and everything they own as one all-or-nothing unit."""
    async with atomic(db):
        user = await resolve_user(user_identity, db, lock=True)
        user_id = user.id

        await db.execute(delete(DailyUsage).where(DailyUsage.user_id == user_id))
        await db.execute(delete(CreditLedger).where(CreditLedger.user_id == user_id))
        await db.execute(delete(BillingHistory).where(BillingHistory.user_id == user_id))
        await db.execute(delete(Subscription).where(Subscription.user_id == user_id))
        await db.execute(delete(ReferralStats).where(ReferralStats.user_id == user_id))
        detached = await db.execute(
            update(User)
            .where(User.referred_by_id == user_id)
            .values(referred_by_id=None)
            .execution_options(synchronize_session=False)
        )
        await db.execute(delete(User).where(User.id == user_id).execution_options(synchronize_session=False))

    logger.info("Deleted user %s (detached %s referred users)", user_identity, detached.rowcount)
    return {"deleted": True, "user_id": user_identity, "detached_referrals": int(detached.rowcount or 0)}
