"""Payment gateway notification router."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_service_token
from services.payment_events import apply_payment_notification, normalize_gateway_event

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook")
async def payment_webhook(
    event: Dict[str, Any] = Body(...),
    _service: None = Depends(require_service_token),
    db: AsyncSession = Depends(get_db),
):
    """Apply an already-verified gateway event to the ledger.

    Non-payment events are acknowledged without side effects.
    """
    notification = normalize_gateway_event(event)
    if notification is None:
        return {"received": True, "handled": False, "event_type": event.get("type")}

    result = await apply_payment_notification(notification, db)
    logger.info(
        "Applied %s event %s for user %s",
        event.get("type"),
        notification.external_payment_id,
        notification.user_identity,
    )
    return {"received": True, "handled": True, **result}
