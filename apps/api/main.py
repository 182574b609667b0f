"""
Subscription Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    plans,
    users,
    subscriptions,
    usage,
    billing,
    admin,
)
from services.errors import LedgerError
from services.renewals import run_renewal_cycle


async def _periodic_renewal_cycle() -> None:
    interval_minutes = max(int(settings.RENEWAL_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_renewal_cycle()
            print(
                f"🔄 Renewal tick: renewed={result.get('renewed', 0)} "
                f"failed={result.get('failed', 0)} expired={result.get('expired', 0)} "
                f"trials_expired={result.get('trials_expired', 0)}"
            )
        except Exception as exc:
            print(f"⚠️ Renewal tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Subscription Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    renewal_task = None
    if int(settings.RENEWAL_INTERVAL_MINUTES) > 0:
        renewal_task = asyncio.create_task(_periodic_renewal_cycle())
        print(f"📅 Renewal loop enabled (every {int(settings.RENEWAL_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    if renewal_task is not None:
        renewal_task.cancel()
        try:
            await renewal_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Subscription Ledger API",
    description="Subscriptions, credit ledger, usage limits, renewals and referral commissions",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(plans.router, prefix="/plans", tags=["Plans"])
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
app.include_router(usage.router, prefix="/usage", tags=["Usage"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Subscription Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
