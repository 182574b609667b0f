"""
Health check endpoints.
"""

from typing import Any, Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
import redis.asyncio as redis

from config import settings
from database import async_session_maker
from models.plan import Plan
from services.renewal_queue import RENEWAL_QUEUE_NAME

router = APIRouter()


async def _ledger_store() -> Dict[str, Any]:
    """Reachability of the ledger database plus the size of the plan catalog."""
    try:
        async with async_session_maker() as db:
            result = await db.execute(select(func.count(Plan.id)))
            return {"status": "up", "plans": int(result.scalar() or 0)}
    except Exception as e:
        return {"status": f"down: {str(e)}", "plans": None}


async def _renewal_queue() -> Dict[str, Any]:
    """Redis reachability and the number of renewal jobs waiting (RQ list key)."""
    client = redis.from_url(settings.REDIS_URL)
    try:
        pending = await client.llen(f"rq:queue:{RENEWAL_QUEUE_NAME}")
        return {"status": "up", "pending_renewal_jobs": int(pending)}
    except Exception as e:
        return {"status": f"down: {str(e)}", "pending_renewal_jobs": None}
    finally:
        await client.aclose()


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Redis only backs rate limits and queued renewals, so an outage there
    degrades the service without taking the ledger down.
    """
    store = await _ledger_store()
    queue = await _renewal_queue()
    degraded = store["status"] != "up" or queue["status"] != "up"
    return {
        "status": "degraded" if degraded else "healthy",
        "api": "up",
        "database": store["status"],
        "plans": store["plans"],
        "redis": queue["status"],
        "pending_renewal_jobs": queue["pending_renewal_jobs"],
        "renewal_loop_minutes": int(settings.RENEWAL_INTERVAL_MINUTES),
    }


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe; the ledger store must answer."""
    store = await _ledger_store()
    if store["status"] != "up":
        return JSONResponse(status_code=503, content={"ready": False, "database": store["status"]})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
