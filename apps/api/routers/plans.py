"""Read-only plan catalog router."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.plans import list_plans, plan_payload

router = APIRouter()


@router.get("")
async def get_plans(db: AsyncSession = Depends(get_db)):
    plans = await list_plans(db)
    return {"plans": [plan_payload(plan) for plan in plans]}
