"""Fixed-window request quotas keyed by caller identity."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings
from services.session_token import decode_session_token

logger = logging.getLogger(__name__)

# key -> (hits in window, window reset timestamp)
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _caller_key(request: Request) -> str:
    """Prefer the session subject so one user shares a quota across addresses."""
    authorization = request.headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    subject = None
    if scheme.lower() == "bearer" and token:
        try:
            subject = decode_session_token(token.strip()).external_id
        except ValueError:
            # Invalid tokens are rejected by get_session; count them per address.
            subject = None
    if subject:
        return f"user:{subject}"

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


async def _redis_hit(key: str, window_seconds: int) -> Tuple[int, int]:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        hits = await client.incr(key)
        if hits == 1:
            await client.expire(key, window_seconds)
        ttl = await client.ttl(key)
    finally:
        await client.aclose()
    return int(hits), max(int(ttl), 1)


async def _local_hit(key: str, window_seconds: int) -> Tuple[int, int]:
    now = time.time()
    async with _local_lock:
        hits, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            hits, reset_at = 0, now + window_seconds
        hits += 1
        _local_counters[key] = (hits, reset_at)
    return hits, max(int(reset_at - now), 1)


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Dependency allowing ``limit`` requests per caller every ``window_seconds``."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ledger:rate:{prefix}:{_caller_key(request)}"
        try:
            hits, retry_after = await _redis_hit(key, window_seconds)
        except Exception as exc:
            logger.debug("Rate limit store unavailable, counting in-process: %s", exc)
            hits, retry_after = await _local_hit(key, window_seconds)

        if hits > limit:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
