"""Normalization of verified payment gateway events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.billing_periods import validate_billing_cycle
from services.errors import InvalidInputError
from services.subscriptions import confirm_payment


HANDLED_EVENT_TYPES = ("payment_intent.succeeded", "checkout.session.completed")


@dataclass(frozen=True)
class PaymentNotification:
    user_identity: str
    plan_code: str
    paid_at: datetime
    external_payment_id: str
    billing_cycle: str
    amount: Decimal
    currency: str


def normalize_gateway_event(event: Dict[str, Any]) -> Optional[PaymentNotification]:
    """Map a gateway event into a PaymentNotification.

    Returns None for event types that do not confirm a payment. The event must
    already be authenticated by the caller; amounts arrive in minor units.
    """
    event_type = str(event.get("type") or "")
    if event_type not in HANDLED_EVENT_TYPES:
        return None

    payment = (event.get("data") or {}).get("object") or {}
    metadata = payment.get("metadata") or {}
    user_identity = str(metadata.get("userId") or "").strip()
    plan_code = str(metadata.get("planId") or "").strip()
    if not user_identity or not plan_code:
        raise InvalidInputError("Missing userId or planId in payment metadata")

    billing_cycle = validate_billing_cycle(metadata.get("billingCycle") or "monthly")
    payment_id = payment.get("payment_intent") or payment.get("id")
    if not payment_id:
        raise InvalidInputError("Payment event has no payment identifier")

    minor_units = payment.get("amount")
    if minor_units is None:
        minor_units = payment.get("amount_total")
    amount = (Decimal(str(minor_units)) / Decimal(100)) if minor_units else Decimal("0")

    created = payment.get("created") or event.get("created")
    paid_at = (
        datetime.fromtimestamp(int(created), tz=timezone.utc)
        if created
        else datetime.now(timezone.utc)
    )

    return PaymentNotification(
        user_identity=user_identity,
        plan_code=plan_code,
        paid_at=paid_at,
        external_payment_id=str(payment_id),
        billing_cycle=billing_cycle,
        amount=amount,
        currency=str(payment.get("currency") or "usd").lower(),
    )


async def apply_payment_notification(notification: PaymentNotification, db: AsyncSession) -> Dict[str, Any]:
    return await confirm_payment(
        notification.user_identity,
        db,
        plan_code=notification.plan_code,
        paid_at=notification.paid_at,
        external_payment_id=notification.external_payment_id,
        billing_cycle=notification.billing_cycle,
        amount=notification.amount,
        currency=notification.currency,
    )
