"""Subscription confirmation, details and cancellation router."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import ensure_user_scope, require_scope, require_service_token
from services.session_token import SCOPE_LEDGER_READ, SCOPE_SUBSCRIPTION_CANCEL, SessionClaims
from services.subscriptions import cancel_subscription, confirm_payment, get_subscription_details

router = APIRouter()


class ConfirmPaymentRequest(BaseModel):
    external_id: str = Field(min_length=1)
    plan_code: str = Field(min_length=1)
    external_payment_id: str = Field(min_length=1)
    paid_at: Optional[datetime] = None
    billing_cycle: str = "monthly"
    amount: Decimal = Decimal("0")
    currency: str = "usd"


class CancelRequest(BaseModel):
    external_id: Optional[str] = None


@router.post("/confirm")
async def confirm(
    request: ConfirmPaymentRequest,
    _service: None = Depends(require_service_token),
    db: AsyncSession = Depends(get_db),
):
    return await confirm_payment(
        request.external_id,
        db,
        plan_code=request.plan_code,
        paid_at=request.paid_at,
        external_payment_id=request.external_payment_id,
        billing_cycle=request.billing_cycle,
        amount=request.amount,
        currency=request.currency,
    )


@router.get("/me")
async def subscription_details(
    external_id: Optional[str] = Query(default=None),
    session: SessionClaims = Depends(require_scope(SCOPE_LEDGER_READ)),
    db: AsyncSession = Depends(get_db),
):
    scoped = ensure_user_scope(session, external_id)
    return await get_subscription_details(scoped, db)


@router.post("/cancel")
async def cancel(
    request: CancelRequest,
    session: SessionClaims = Depends(require_scope(SCOPE_SUBSCRIPTION_CANCEL)),
    db: AsyncSession = Depends(get_db),
):
    scoped = ensure_user_scope(session, request.external_id)
    return await cancel_subscription(scoped, db)
