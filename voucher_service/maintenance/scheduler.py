"""
Fixed-interval scheduler for maintenance tasks.

Replicas sharing a database each run a Scheduler. Before running a due
task, a replica claims the run through the task's row in recurring_tasks;
only the replica whose conditional update moves last_run_at forward runs
it, so a due task runs once across the group. The store health probe is
per-process and runs on every replica without a claim.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voucher_service.config import Settings, get_settings
from voucher_service.constants import (
    TASK_HEALTH_PROBE,
    TASK_JOB_RETENTION,
    TASK_LEASE_REAPER,
    TASK_QUEUE_STATS,
    TASK_STALLED_JOBS,
)
from voucher_service.db.connection import session_scope
from voucher_service.db.task_repository import RecurringTaskRepository
from voucher_service.errors import is_transient_conflict
from voucher_service.maintenance import tasks as maintenance_tasks
from voucher_service.observability.metrics import get_metrics
from voucher_service.queue.pipeline import JobQueue
from voucher_service.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class RecurringTask:
    """
    A named task body run every interval_seconds.

    Tasks with claim=False run on every replica without a run claim, so they
    keep running when the store is unreachable.
    """

    name: str
    interval_seconds: float
    body: Callable[[], Awaitable[Any]]
    last_run_at: datetime | None = None
    claim: bool = True

    def is_due(self, now: datetime) -> bool:
        if self.last_run_at is None:
            return True
        return now - self.last_run_at >= timedelta(seconds=self.interval_seconds)


class Scheduler:
    """
    Runs recurring tasks on their intervals.

    A failing task body or run claim is logged and counted; it never stops
    the loop or the other tasks.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tasks: list[RecurringTask] | None = None,
        clock: Clock = utc_now,
        runner_id: str | None = None,
        tick_seconds: float | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            session_factory: Factory for run-claim sessions.
            tasks: Initial tasks.
            clock: Source of the current time.
            runner_id: Identifier recorded on claimed runs.
            tick_seconds: Sleep between due checks.
        """
        self._session_factory = session_factory
        self._tasks: dict[str, RecurringTask] = {}
        self._clock = clock
        self.runner_id = runner_id or f"{os.uname().nodename}-{os.getpid()}"
        self.tick_seconds = tick_seconds or get_settings().scheduler_tick_seconds
        self._running = False
        self._metrics = get_metrics()

        for task in tasks or []:
            self.add(task)

    def add(self, task: RecurringTask) -> None:
        if task.name in self._tasks:
            raise ValueError(f"Recurring task already registered: {task.name}")
        self._tasks[task.name] = task

    @property
    def tasks(self) -> list[RecurringTask]:
        return list(self._tasks.values())

    async def run_due(self) -> list[str]:
        """
        Run every task that is due and successfully claimed.

        Returns:
            Names of the tasks run by this replica.
        """
        ran = []
        for task in self.tasks:
            now = self._clock()
            if not task.is_due(now):
                continue
            if task.claim and not await self._try_claim(task, now):
                continue
            task.last_run_at = now
            await self.run_task(task)
            ran.append(task.name)
        return ran

    async def run_task(self, task: RecurringTask) -> Any:
        """Run one task body, recording its outcome."""
        try:
            result = await task.body()
        except Exception as e:
            self._metrics.record_task_run(task.name, "error")
            logger.exception(
                f"Recurring task failed: {e}",
                extra={"task": task.name},
            )
            return None

        self._metrics.record_task_run(task.name, "ok")
        logger.debug("Recurring task finished", extra={"task": task.name, "result": result})
        return result

    async def _try_claim(self, task: RecurringTask, now: datetime) -> bool:
        """Claim a run; a store failure skips the task until the next tick."""
        try:
            return await self._claim(task, now)
        except (SQLAlchemyError, OSError) as e:
            self._metrics.record_task_run(task.name, "claim_error")
            logger.error(
                f"Could not claim recurring task run: {e}",
                extra={"task": task.name, "runner_id": self.runner_id},
            )
            return False

    async def _claim(self, task: RecurringTask, now: datetime) -> bool:
        try:
            async with session_scope(self._session_factory) as session:
                claimed = await RecurringTaskRepository(session).claim_run(
                    task.name, task.interval_seconds, now, self.runner_id
                )
        except IntegrityError:
            # Another replica created the marker first
            claimed = False
        except DBAPIError as e:
            if not is_transient_conflict(e):
                raise
            claimed = False

        if not claimed:
            # Track the shared marker locally so we don't re-check every tick
            task.last_run_at = now
            self._metrics.record_task_run(task.name, "skipped")
        return claimed

    async def start(self) -> None:
        """Run the scheduling loop until stop() is called."""
        logger.info(
            "Scheduler starting",
            extra={"runner_id": self.runner_id, "tasks": [t.name for t in self.tasks]},
        )
        self._running = True

        while self._running:
            try:
                await self.run_due()
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            await asyncio.sleep(self.tick_seconds)

        logger.info("Scheduler stopped")

    async def stop(self) -> None:
        """Stop the scheduler."""
        logger.info("Scheduler stopping")
        self._running = False


def build_default_tasks(
    session_factory: async_sessionmaker[AsyncSession],
    queue: JobQueue,
    settings: Settings | None = None,
    clock: Clock = utc_now,
) -> list[RecurringTask]:
    """Create the standard maintenance tasks with their configured intervals."""
    settings = settings or get_settings()
    retention = timedelta(hours=settings.job_retention_hours)

    return [
        RecurringTask(
            name=TASK_LEASE_REAPER,
            interval_seconds=settings.lease_reaper_interval_seconds,
            body=lambda: maintenance_tasks.reap_expired_leases(session_factory, clock),
        ),
        RecurringTask(
            name=TASK_HEALTH_PROBE,
            interval_seconds=settings.health_probe_interval_seconds,
            body=lambda: maintenance_tasks.probe_store_health(session_factory, clock),
            claim=False,
        ),
        RecurringTask(
            name=TASK_STALLED_JOBS,
            interval_seconds=settings.stalled_job_interval_seconds,
            body=lambda: maintenance_tasks.recover_stalled_jobs(queue),
        ),
        RecurringTask(
            name=TASK_QUEUE_STATS,
            interval_seconds=settings.queue_stats_interval_seconds,
            body=lambda: maintenance_tasks.report_queue_stats(queue),
        ),
        RecurringTask(
            name=TASK_JOB_RETENTION,
            interval_seconds=settings.job_cleanup_interval_seconds,
            body=lambda: maintenance_tasks.sweep_finished_jobs(queue, retention),
        ),
    ]
