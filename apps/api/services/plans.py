"""Read access to the plan catalog."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.plan import Plan
from services.errors import NotFoundError


async def resolve_plan(plan_code: str, db: AsyncSession) -> Plan:
    """Find a plan by id or by name."""
    code = str(plan_code or "").strip()
    if code:
        result = await db.execute(
            select(Plan).where(or_(Plan.id == code, Plan.name == code)).limit(1)
        )
        plan = result.scalar_one_or_none()
        if plan:
            return plan
    raise NotFoundError(f"Plan not found: {plan_code}", plan_code=plan_code)


def is_trial_plan(plan: Plan) -> bool:
    """The starter plan is a one-period trial; it is never renewed."""
    return plan.name == settings.FREE_PLAN_NAME


async def ensure_free_plan(db: AsyncSession) -> Plan:
    """Return the starter plan, creating it on first use. Caller commits."""
    result = await db.execute(select(Plan).where(Plan.name == settings.FREE_PLAN_NAME))
    plan = result.scalar_one_or_none()
    if plan:
        return plan

    credits = max(int(settings.FREE_PLAN_MONTHLY_CREDITS), 0)
    plan = Plan(
        name=settings.FREE_PLAN_NAME,
        price_monthly=Decimal("0"),
        price_yearly=Decimal("0"),
        daily_credits=0,
        monthly_credits=credits,
        is_daily=False,
        description=f"1-month free trial with {credits} credits",
        features=[],
    )
    db.add(plan)
    await db.flush()
    return plan


async def list_plans(db: AsyncSession) -> List[Plan]:
    result = await db.execute(select(Plan).order_by(Plan.price_monthly.asc(), Plan.name.asc()))
    return list(result.scalars().all())


def plan_payload(plan: Plan) -> Dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "price_monthly": float(plan.price_monthly or 0),
        "price_yearly": float(plan.price_yearly or 0),
        "daily_credits": plan.daily_credits,
        "monthly_credits": plan.monthly_credits,
        "is_daily": bool(plan.is_daily),
        "description": plan.description,
        "features": list(plan.features or []),
    }
