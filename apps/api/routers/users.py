"""User signup, profile and deletion router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import ensure_user_scope, require_scope
from routers.rate_limit import rate_limit
from services.session_token import SCOPE_ACCOUNT_MANAGE, SCOPE_LEDGER_READ, SessionClaims
from services.users import delete_user, get_user_profile, signup_user

router = APIRouter()


class SignupRequest(BaseModel):
    external_id: Optional[str] = None
    email: str = Field(min_length=3)
    name: Optional[str] = None
    referral_code: Optional[str] = None


@router.post("/signup")
async def signup(
    request: SignupRequest,
    response: Response,
    _rate_limit: None = Depends(rate_limit("user_signup", limit=20, window_seconds=3600)),
    session: SessionClaims = Depends(require_scope(SCOPE_ACCOUNT_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    external_id = ensure_user_scope(session, request.external_id)
    result = await signup_user(
        external_id,
        db,
        email=request.email,
        name=request.name,
        referral_code=request.referral_code,
    )
    response.status_code = 201 if result["created"] else 200
    return result


@router.get("/me")
async def profile(
    session: SessionClaims = Depends(require_scope(SCOPE_LEDGER_READ)),
    db: AsyncSession = Depends(get_db),
):
    return await get_user_profile(session.external_id, db)


@router.delete("/me")
async def remove_account(
    session: SessionClaims = Depends(require_scope(SCOPE_ACCOUNT_MANAGE)),
    db: AsyncSession = Depends(get_db),
):
    return await delete_user(session.external_id, db)
