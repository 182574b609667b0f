"""Periodic renewal of elapsed billing periods."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker, atomic
from models.plan import Plan
from models.subscription import STATUS_ACTIVE, STATUS_CANCELED, Subscription
from models.user import User
from services.billing_periods import advance_period, as_utc
from services.credits import credits_for_plan, grant_credits
from services.errors import TransactionFailureError
from services.plans import is_trial_plan

logger = logging.getLogger(__name__)


def _is_due(subscription: Subscription, now: datetime) -> bool:
    return (
        subscription.status == STATUS_ACTIVE
        and not subscription.cancel_at_period_end
        and as_utc(subscription.current_period_end) <= now
    )


async def _renew_subscription(
    subscription_id: str,
    session_factory: async_sessionmaker[AsyncSession],
    now: datetime,
) -> Dict[str, Any]:
    async with session_factory() as db:
        async with atomic(db):
            result = await db.execute(
                select(Subscription).where(Subscription.id == subscription_id).with_for_update()
            )
            subscription = result.scalar_one_or_none()
            plan = await db.get(Plan, subscription.plan_id) if subscription else None
            if subscription is None or not _is_due(subscription, now) or is_trial_plan(plan):
                # Another trigger advanced or changed it since enumeration.
                return {"subscription_id": subscription_id, "success": True, "skipped": True}

            user = await db.get(User, subscription.user_id)
            previous_end = as_utc(subscription.current_period_end)
            new_period_end = advance_period(previous_end, subscription.billing_cycle)
            subscription.current_period_start = previous_end
            subscription.current_period_end = new_period_end

            credits = credits_for_plan(plan)
            await grant_credits(
                subscription.user_id,
                db,
                credits=credits,
                subscription_id=subscription.id,
                description=f"Credits granted for {subscription.billing_cycle} renewal",
            )
            return {
                "subscription_id": subscription_id,
                "user_id": user.external_id if user else None,
                "success": True,
                "skipped": False,
                "new_period_end": new_period_end.isoformat(),
                "credits_granted": credits,
            }


async def renew_due_subscriptions(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    now: Optional[datetime] = None,
    item_timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Advance every active, non-canceling paid subscription whose period has ended.

    Each subscription renews in its own transaction with its own time budget.
    A failing item is recorded in ``results`` and the batch moves on; only a
    failure to enumerate the due set raises.
    """
    factory = session_factory or async_session_maker
    current = as_utc(now)
    timeout = float(item_timeout if item_timeout is not None else settings.RENEWAL_ITEM_TIMEOUT_SECONDS)

    try:
        async with factory() as db:
            result = await db.execute(
                select(Subscription.id)
                .join(Plan, Plan.id == Subscription.plan_id)
                .where(
                    Subscription.status == STATUS_ACTIVE,
                    Subscription.cancel_at_period_end.is_(False),
                    Subscription.current_period_end <= current,
                    Plan.name != settings.FREE_PLAN_NAME,
                )
                .order_by(Subscription.current_period_end.asc())
            )
            due_ids = [row[0] for row in result.all()]
    except SQLAlchemyError as exc:
        logger.exception("Could not enumerate due subscriptions")
        raise TransactionFailureError(f"Failed to query due subscriptions: {exc}") from exc

    results: List[Dict[str, Any]] = []
    for subscription_id in due_ids:
        try:
            results.append(
                await asyncio.wait_for(
                    _renew_subscription(subscription_id, factory, current),
                    timeout=timeout,
                )
            )
        except asyncio.TimeoutError:
            logger.warning("Renewal of subscription %s timed out after %ss", subscription_id, timeout)
            results.append(
                {
                    "subscription_id": subscription_id,
                    "success": False,
                    "error": f"Renewal timed out after {timeout:g}s",
                }
            )
        except Exception as exc:
            logger.exception("Error renewing subscription %s", subscription_id)
            results.append({"subscription_id": subscription_id, "success": False, "error": str(exc)})

    renewed = sum(1 for row in results if row["success"] and not row.get("skipped"))
    skipped = sum(1 for row in results if row.get("skipped"))
    failed = sum(1 for row in results if not row["success"])
    return {
        "renewed": renewed,
        "failed": failed,
        "skipped": skipped,
        "results": results,
        "message": f"Processed {len(due_ids)} subscriptions",
    }


async def _deactivate_ended(
    factory: async_sessionmaker[AsyncSession],
    current: datetime,
    *criteria: Any,
) -> List[str]:
    """Cancel active subscriptions matching ``criteria`` whose period has ended."""
    async with factory() as db:
        async with atomic(db):
            result = await db.execute(
                select(Subscription.id)
                .join(Plan, Plan.id == Subscription.plan_id)
                .where(
                    Subscription.status == STATUS_ACTIVE,
                    Subscription.current_period_end <= current,
                    *criteria,
                )
                .with_for_update(of=Subscription)
            )
            ended_ids = [row[0] for row in result.all()]
            if ended_ids:
                await db.execute(
                    update(Subscription)
                    .where(Subscription.id.in_(ended_ids))
                    .values(status=STATUS_CANCELED)
                    .execution_options(synchronize_session=False)
                )
    return ended_ids


async def expire_lapsed_cancellations(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Move canceling subscriptions whose period has ended out of ``active``."""
    expired_ids = await _deactivate_ended(
        session_factory or async_session_maker,
        as_utc(now),
        Subscription.cancel_at_period_end.is_(True),
    )
    if expired_ids:
        logger.info("Expired %s lapsed canceled subscriptions", len(expired_ids))
    return {"expired": len(expired_ids), "subscription_ids": expired_ids}


async def expire_ended_trials(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """End starter trials after their single period; they never renew."""
    expired_ids = await _deactivate_ended(
        session_factory or async_session_maker,
        as_utc(now),
        Subscription.cancel_at_period_end.is_(False),
        Plan.name == settings.FREE_PLAN_NAME,
    )
    if expired_ids:
        logger.info("Expired %s ended trial subscriptions", len(expired_ids))
    return {"expired": len(expired_ids), "subscription_ids": expired_ids}


async def run_renewal_cycle(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Expire lapsed cancellations and ended trials, then renew everything that is due."""
    current = as_utc(now)
    expiration = await expire_lapsed_cancellations(session_factory, now=current)
    trials = await expire_ended_trials(session_factory, now=current)
    renewal = await renew_due_subscriptions(session_factory, now=current)
    logger.info(
        "Renewal cycle: expired=%s trials_expired=%s renewed=%s failed=%s skipped=%s",
        expiration["expired"],
        trials["expired"],
        renewal["renewed"],
        renewal["failed"],
        renewal["skipped"],
    )
    return {"expired": expiration["expired"], "trials_expired": trials["expired"], **renewal}


def run_renewal_cycle_job() -> Dict[str, Any]:
    """RQ worker entrypoint for scheduled renewal cycles."""
    return asyncio.run(run_renewal_cycle())
