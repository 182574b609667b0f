"""Subscription state and the payment confirmation workflow."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from database import atomic
from models.billing_history import BillingHistory
from models.daily_usage import DailyUsage
from models.plan import Plan
from models.subscription import STATUS_ACTIVE, Subscription
from services.billing_periods import advance_period, as_utc, utc_now, utc_today, validate_billing_cycle
from services.credits import (
    credits_for_plan,
    get_credit_balance,
    get_recent_entries,
    grant_credits,
    ledger_entry_payload,
)
from services.errors import InvalidInputError, NoActiveSubscriptionError, TransactionFailureError
from services.plans import plan_payload, resolve_plan
from services.referrals import accrue_referral_commission, commission_for
from services.users import resolve_user

logger = logging.getLogger(__name__)


async def get_active_subscription(
    user_id: str,
    db: AsyncSession,
    *,
    with_plan: bool = False,
) -> Optional[Subscription]:
    query = select(Subscription).where(
        Subscription.user_id == user_id,
        Subscription.status == STATUS_ACTIVE,
    )
    if with_plan:
        query = query.options(selectinload(Subscription.plan))
    result = await db.execute(query)
    return result.scalar_one_or_none()


def subscription_payload(subscription: Subscription, plan: Optional[Plan] = None) -> Dict[str, Any]:
    payload = {
        "id": subscription.id,
        "user_id": subscription.user_id,
        "plan_id": subscription.plan_id,
        "billing_cycle": subscription.billing_cycle,
        "status": subscription.status,
        "current_period_start": as_utc(subscription.current_period_start).isoformat(),
        "current_period_end": as_utc(subscription.current_period_end).isoformat(),
        "cancel_at_period_end": bool(subscription.cancel_at_period_end),
        "canceled_at": as_utc(subscription.canceled_at).isoformat() if subscription.canceled_at else None,
    }
    if plan is not None:
        payload["plan"] = plan_payload(plan)
    return payload


async def activate_subscription(
    user_id: str,
    db: AsyncSession,
    *,
    plan: Plan,
    billing_cycle: str,
    period_start: datetime,
    period_end: datetime,
) -> Subscription:
    """Point the user's single active subscription at ``plan`` for a new period."""
    subscription = await get_active_subscription(user_id, db)
    if subscription:
        subscription.plan_id = plan.id
        subscription.billing_cycle = billing_cycle
        subscription.status = STATUS_ACTIVE
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
    else:
        subscription = Subscription(
            user_id=user_id,
            plan_id=plan.id,
            billing_cycle=billing_cycle,
            status=STATUS_ACTIVE,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=False,
        )
        db.add(subscription)
    await db.flush()
    return subscription


def _parse_amount(amount: Union[int, float, str, Decimal, None]) -> Decimal:
    try:
        value = Decimal(str(amount if amount is not None else 0))
    except InvalidOperation as exc:
        raise InvalidInputError(f"Invalid payment amount: {amount}", amount=str(amount)) from exc
    if not value.is_finite() or value < 0:
        raise InvalidInputError(f"Invalid payment amount: {amount}", amount=str(amount))
    return value


async def _replayed_payment(payment_id: str, user_id: str, db: AsyncSession) -> Optional[Dict[str, Any]]:
    """Acknowledge a receipt already on file for this user; refuse another user's."""
    existing = await db.execute(select(BillingHistory).where(BillingHistory.external_payment_id == payment_id))
    receipt = existing.scalar_one_or_none()
    if receipt is None:
        return None
    if receipt.user_id != user_id:
        raise InvalidInputError(
            f"Payment {payment_id} is already recorded for another user",
            external_payment_id=payment_id,
        )
    subscription = await get_active_subscription(user_id, db)
    return {
        "duplicate": True,
        "subscription": subscription_payload(subscription) if subscription else None,
        "credits_granted": 0,
    }


async def confirm_payment(
    user_identity: str,
    db: AsyncSession,
    *,
    plan_code: str,
    paid_at: Optional[datetime] = None,
    external_payment_id: Optional[str] = None,
    billing_cycle: str = "monthly",
    amount: Union[int, float, str, Decimal, None] = 0,
    currency: str = "usd",
) -> Dict[str, Any]:
    """Activate or renew the user's subscription for a confirmed payment.

    Subscription upsert, credit grant, billing receipt and referral commission
    commit together or not at all. A payment id that was already recorded for
    the same user is acknowledged without granting again.
    """
    cycle = validate_billing_cycle(billing_cycle)
    payment_amount = _parse_amount(amount)
    payment_currency = str(currency or "usd").strip().lower()
    period_start = as_utc(paid_at)
    period_end = advance_period(period_start, cycle)
    payment_id = str(external_payment_id).strip() if external_payment_id else None

    try:
        async with atomic(db):
            user = await resolve_user(user_identity, db, lock=True)
            plan = await resolve_plan(plan_code, db)

            if payment_id:
                replay = await _replayed_payment(payment_id, user.id, db)
                if replay is not None:
                    logger.info("Ignoring duplicate payment %s for user %s", payment_id, user_identity)
                    return replay

            credits_to_grant = credits_for_plan(plan)
            subscription = await activate_subscription(
                user.id,
                db,
                plan=plan,
                billing_cycle=cycle,
                period_start=period_start,
                period_end=period_end,
            )

            await grant_credits(
                user.id,
                db,
                credits=credits_to_grant,
                subscription_id=subscription.id,
                description=f"Credits granted for {plan.name} subscription",
            )

            db.add(
                BillingHistory(
                    user_id=user.id,
                    subscription_id=subscription.id,
                    amount=payment_amount,
                    currency=payment_currency,
                    status="completed",
                    payment_date=period_start,
                    external_payment_id=payment_id,
                )
            )

            earning = None
            if user.referred_by_id and payment_amount > 0:
                earning = commission_for(plan, cycle)
                await accrue_referral_commission(user.referred_by_id, earning, db)

            await db.flush()
            payload = {
                "duplicate": False,
                "subscription": subscription_payload(subscription, plan),
                "credits_granted": credits_to_grant,
            }
    except TransactionFailureError as exc:
        if not payment_id or not isinstance(exc.__cause__, IntegrityError):
            raise
        # The unique receipt was written by a concurrent confirmation; the
        # rollback expired our instances, so resolve the user again.
        user = await resolve_user(user_identity, db)
        replay = await _replayed_payment(payment_id, user.id, db)
        if replay is None:
            raise
        logger.info("Ignoring concurrently recorded payment %s for user %s", payment_id, user_identity)
        return replay

    logger.info(
        "Confirmed payment %s for user %s: plan=%s cycle=%s credits=%s referral_earning=%s",
        payment_id,
        user_identity,
        plan.name,
        cycle,
        credits_to_grant,
        earning,
    )
    return payload


async def cancel_subscription(
    user_identity: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Flag the active subscription to end at its period end.

    Status and period bounds are untouched; the renewal cycle performs the
    actual deactivation once the period has elapsed.
    """
    async with atomic(db):
        user = await resolve_user(user_identity, db, lock=True)
        subscription = await get_active_subscription(user.id, db)
        if not subscription:
            raise NoActiveSubscriptionError()
        subscription.cancel_at_period_end = True
        subscription.canceled_at = as_utc(now)
        await db.flush()
        payload = subscription_payload(subscription)

    logger.info("Subscription %s for user %s will cancel at period end", payload["id"], user_identity)
    return {"subscription": payload, "message": "Subscription will be canceled at period end"}


async def get_subscription_details(
    user_identity: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    user = await resolve_user(user_identity, db)
    subscription = await get_active_subscription(user.id, db, with_plan=True)
    if not subscription:
        return {
            "subscription": None,
            "available_credits": 0,
            "message": "No active subscription found",
        }

    available_credits = await get_credit_balance(user.id, db)
    usage_result = await db.execute(
        select(DailyUsage.usage_count).where(
            DailyUsage.user_id == user.id,
            DailyUsage.usage_date == utc_today(now or utc_now()),
        )
    )
    daily_usage = int(usage_result.scalar_one_or_none() or 0)
    recent = await get_recent_entries(
        user.id,
        db,
        subscription_id=subscription.id,
        limit=settings.RECENT_LEDGER_ENTRIES,
    )
    plan = subscription.plan
    return {
        "subscription": subscription_payload(subscription, plan),
        "available_credits": available_credits,
        "daily_usage": daily_usage,
        "daily_limit": plan.daily_credits if plan.is_daily else None,
        "recent_credits": [ledger_entry_payload(entry) for entry in recent],
    }
