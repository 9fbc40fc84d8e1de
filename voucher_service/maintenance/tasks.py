"""
Recurring maintenance task bodies.

Each body is a plain coroutine taking its collaborators and a clock, so it
can be run directly (tests, one-off operator runs) or by the Scheduler.
"""

import logging
import time
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voucher_service.db.connection import ping, session_scope
from voucher_service.db.event_repository import EventRepository
from voucher_service.observability.metrics import get_metrics
from voucher_service.queue.pipeline import JobQueue
from voucher_service.types.results import HealthStatus
from voucher_service.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)


async def reap_expired_leases(
    session_factory: async_sessionmaker[AsyncSession],
    clock: Clock = utc_now,
) -> int:
    """
    Clear editing_by/edit_lock_at on every event whose lease has expired.

    Expiry is already enforced by the lease predicates; this only tidies
    stale holder fields.

    Returns:
        Number of leases cleared.
    """
    async with session_scope(session_factory) as session:
        count = await EventRepository(session).clear_expired_leases(clock())

    get_metrics().record_leases_reaped(count)
    return count


async def probe_store_health(
    session_factory: async_sessionmaker[AsyncSession],
    clock: Clock = utc_now,
) -> HealthStatus:
    """
    Round-trip a trivial statement against the store.

    Store errors are reported in the returned status, not raised.
    """
    checked_at = clock()
    start = time.monotonic()
    error = None

    try:
        async with session_scope(session_factory) as session:
            await ping(session)
    except (SQLAlchemyError, OSError) as e:
        error = str(e) or e.__class__.__name__

    status = HealthStatus(
        healthy=error is None,
        checked_at=checked_at,
        latency_ms=round((time.monotonic() - start) * 1000, 2),
        error=error,
    )

    get_metrics().set_store_up(status.healthy)
    if status.healthy:
        logger.info("Store health check passed", extra={"latency_ms": status.latency_ms})
    else:
        logger.error("Store health check failed", extra={"error": error})
    return status


async def sweep_finished_jobs(queue: JobQueue, retention: timedelta | None = None) -> int:
    """Purge completed and failed jobs older than the retention window."""
    return await queue.purge_finished(retention)


async def recover_stalled_jobs(queue: JobQueue) -> dict[str, int]:
    """Requeue (or fail) active jobs whose worker lease expired."""
    requeued, failed = await queue.recover_stalled()
    return {"requeued": len(requeued), "failed": len(failed)}


async def report_queue_stats(queue: JobQueue) -> dict[str, Any]:
    """Log and export job counts by state."""
    counts = await queue.counts()
    get_metrics().update_queue_depth(counts)
    logger.info("Queue stats", extra={"counts": counts})
    return counts
