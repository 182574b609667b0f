"""Renewal job queue helpers (Redis/RQ)."""

from __future__ import annotations

from datetime import datetime, timezone

from redis import Redis
from rq import Queue
from rq.job import Job

from config import settings


RENEWAL_QUEUE_NAME = "renewal_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_renewal_queue() -> Queue:
    """Return the configured renewal queue."""
    return Queue(
        name=RENEWAL_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def enqueue_renewal_cycle() -> Job:
    """Enqueue one renewal cycle. Failed jobs are not retried."""
    queue = get_renewal_queue()
    slot = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return queue.enqueue(
        "services.renewals.run_renewal_cycle_job",
        job_id=f"renewal:{slot}",
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )
