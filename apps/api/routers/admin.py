"""Trusted renewal triggers for schedulers and operators."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_factory
from routers.auth_scope import require_service_token
from services.renewal_queue import enqueue_renewal_cycle
from services.renewals import expire_lapsed_cancellations, run_renewal_cycle

router = APIRouter(dependencies=[Depends(require_service_token)])
logger = logging.getLogger(__name__)


@router.post("/subscriptions/renew-due")
async def renew_due(
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Run one renewal cycle inline and return per-subscription results."""
    return await run_renewal_cycle(session_factory)


@router.post("/subscriptions/expire-canceled")
async def expire_canceled(
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    return await expire_lapsed_cancellations(session_factory)


@router.post("/subscriptions/renew-due/enqueue")
async def enqueue_renewals():
    try:
        job = enqueue_renewal_cycle()
    except Exception as exc:
        logger.warning("Renewal enqueue failed: %s", exc)
        raise HTTPException(status_code=503, detail="Renewal queue is unavailable.") from exc
    return {"queued": True, "job_id": job.id}
