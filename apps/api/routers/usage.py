"""Usage consumption router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import ensure_user_scope, require_scope
from routers.rate_limit import rate_limit
from services.session_token import SCOPE_USAGE_CONSUME, SessionClaims
from services.usage import consume_credits

router = APIRouter()


class ConsumeRequest(BaseModel):
    external_id: Optional[str] = None
    credits: int = Field(default=1, ge=1, le=100000)
    description: str = "API usage"


@router.post("/consume")
async def consume(
    request: ConsumeRequest,
    _rate_limit: None = Depends(rate_limit("usage_consume", limit=600, window_seconds=60)),
    session: SessionClaims = Depends(require_scope(SCOPE_USAGE_CONSUME)),
    db: AsyncSession = Depends(get_db),
):
    scoped = ensure_user_scope(session, request.external_id)
    return await consume_credits(
        scoped,
        db,
        credits=request.credits,
        description=request.description,
    )
