"""
Durable job queue for the notification lane.

State lives in the jobs table; every transition is a conditional update
owned by JobRepository. JobQueue adds session handling, defaults from
settings, the injectable clock and event publication.
"""

import logging
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voucher_service.config import Settings, get_settings
from voucher_service.constants import BackoffType, JobKind, JobState
from voucher_service.db.connection import session_scope
from voucher_service.db.models import Job
from voucher_service.db.repository import JobRepository
from voucher_service.errors import JobNotFound
from voucher_service.queue.events import JobEventBus, create_event_bus
from voucher_service.types.events import JobEvent
from voucher_service.types.job import JobContext, JobHandle, JobOptions
from voucher_service.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Job queue backed by the relational store.

    Each operation runs in its own short transaction; events are published
    only after the transaction commits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        event_bus: JobEventBus | None = None,
        clock: Clock = utc_now,
    ):
        """
        Initialize the queue.

        Args:
            session_factory: Factory for store sessions.
            settings: Pipeline defaults. Uses global settings if not provided.
            event_bus: Destination for lifecycle events.
            clock: Source of the current time.
        """
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self.events = event_bus or create_event_bus()
        self._clock = clock

    @property
    def clock(self) -> Clock:
        return self._clock

    async def enqueue(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> JobHandle:
        """
        Submit a job in its own transaction.

        Args:
            kind: The job kind.
            payload: Data the handler needs.
            options: Per-job overrides of attempts, backoff and delay.

        Returns:
            JobHandle for the stored job.
        """
        async with session_scope(self._session_factory) as session:
            job = await self.enqueue_in(session, kind, payload, options)

        await self.announce(job)
        return JobHandle.model_validate(job)

    async def enqueue_in(
        self,
        session: AsyncSession,
        kind: JobKind,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> Job:
        """
        Insert a job inside the caller's transaction.

        The job becomes visible to workers only when the caller commits.
        Call announce() after the commit to publish the submission event.
        """
        options = options or JobOptions()
        settings = self._settings

        repo = JobRepository(session)
        return await repo.create_job(
            kind=JobKind(kind),
            payload=payload,
            now=self._clock(),
            max_attempts=options.max_attempts or settings.job_max_attempts,
            backoff_type=options.backoff_type or BackoffType(settings.job_backoff_type),
            backoff_delay_ms=(
                options.backoff_delay_ms
                if options.backoff_delay_ms is not None
                else settings.job_backoff_delay_ms
            ),
            backoff_factor=options.backoff_factor or settings.job_backoff_factor,
            delay_ms=options.delay_ms,
        )

    async def announce(self, job: Job) -> None:
        """Publish the submission event for a committed job."""
        delay_ms = 0
        if job.state == JobState.DELAYED:
            delay_ms = int((job.available_at - job.created_at).total_seconds() * 1000)
        await self.events.publish(
            JobEvent.waiting(job.id, job.kind, self._clock(), delay_ms=delay_ms)
        )

    async def reserve(
        self,
        worker_id: str,
        batch_size: int | None = None,
        lease_duration: timedelta | None = None,
    ) -> list[JobContext]:
        """
        Reserve due jobs for a worker.

        Args:
            worker_id: The reserving worker.
            batch_size: Maximum number of jobs. Defaults to worker_batch_size.
            lease_duration: Job lease length. Defaults to
                worker_lease_duration_seconds.

        Returns:
            Execution contexts for the reserved jobs.
        """
        now = self._clock()
        lease_duration = lease_duration or timedelta(
            seconds=self._settings.worker_lease_duration_seconds
        )

        async with session_scope(self._session_factory) as session:
            repo = JobRepository(session)
            jobs = await repo.reserve_jobs(
                worker_id=worker_id,
                now=now,
                lease_duration=lease_duration,
                batch_size=batch_size or self._settings.worker_batch_size,
            )

        contexts = []
        for job in jobs:
            await self.events.publish(
                JobEvent.active(job.id, job.kind, now, worker_id, job.attempts_made)
            )
            contexts.append(
                JobContext(
                    job_id=job.id,
                    kind=JobKind(job.kind),
                    attempt=job.attempts_made,
                    max_attempts=job.max_attempts,
                    payload=dict(job.payload or {}),
                    lease_owner=worker_id,
                    lease_expires_at=job.lease_expires_at,
                )
            )
        return contexts

    async def complete(
        self,
        job_id: UUID,
        worker_id: str,
        result: dict[str, Any] | None = None,
    ) -> JobHandle | None:
        """
        Mark a reserved job completed.

        Returns:
            The updated job, or None if the worker no longer holds it.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            job = await JobRepository(session).complete_job(job_id, worker_id, now, result)

        if job is None:
            logger.warning(
                "Completion ignored, job lease lost",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
            return None

        await self.events.publish(JobEvent.completed(job.id, job.kind, now, result))
        return JobHandle.model_validate(job)

    async def fail(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
        retryable: bool = True,
    ) -> JobHandle | None:
        """
        Record a failed attempt.

        The job is delayed by its backoff when attempts remain and the error
        is retryable, otherwise it is failed and retained.

        Returns:
            The updated job, or None if the worker no longer holds it.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            job = await JobRepository(session).fail_job(
                job_id, worker_id, now, error, retryable=retryable
            )

        if job is None:
            return None

        if job.state == JobState.DELAYED:
            event = JobEvent.delayed(
                job.id, job.kind, now, error, job.attempts_made, job.available_at
            )
        else:
            event = JobEvent.failed(job.id, job.kind, now, error, job.attempts_made)
        await self.events.publish(event)
        return JobHandle.model_validate(job)

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        extension: timedelta | None = None,
    ) -> bool:
        """
        Heartbeat: push the job lease expiry forward.

        Returns:
            True if the worker still holds the job.
        """
        extension = extension or timedelta(
            seconds=self._settings.worker_lease_duration_seconds
        )
        async with session_scope(self._session_factory) as session:
            return await JobRepository(session).extend_lease(
                job_id, worker_id, self._clock(), extension
            )

    async def recover_stalled(self) -> tuple[list[UUID], list[UUID]]:
        """
        Return active jobs with expired leases to the queue.

        Returns:
            Tuple of (requeued job ids, failed job ids).
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            requeued, failed = await JobRepository(session).recover_stalled_jobs(now)

        for job_id in requeued:
            await self.events.publish(JobEvent.stalled(job_id, now, requeued=True))
        for job_id in failed:
            await self.events.publish(JobEvent.stalled(job_id, now, requeued=False))
        return requeued, failed

    async def retry(self, job_id: UUID, reset_attempts: bool = True) -> JobHandle:
        """
        Manually re-queue a failed job.

        Raises:
            JobNotFound: If the job does not exist or is not failed.
        """
        now = self._clock()
        async with session_scope(self._session_factory) as session:
            job = await JobRepository(session).retry_failed_job(
                job_id, now, reset_attempts=reset_attempts
            )

        if job is None:
            raise JobNotFound(job_id)

        await self.events.publish(JobEvent.retried(job.id, job.kind, now))
        return JobHandle.model_validate(job)

    async def purge_finished(self, older_than: timedelta | None = None) -> int:
        """
        Delete completed and failed jobs past retention.

        Args:
            older_than: Retention window. Defaults to job_retention_hours.

        Returns:
            Number of purged jobs.
        """
        now = self._clock()
        older_than = older_than or timedelta(hours=self._settings.job_retention_hours)

        async with session_scope(self._session_factory) as session:
            count = await JobRepository(session).purge_finished_jobs(now - older_than)

        if count:
            await self.events.publish(JobEvent.purged(now, count))
        return count

    async def get(self, job_id: UUID) -> JobHandle:
        """
        Get a job by ID.

        Raises:
            JobNotFound: If the job does not exist.
        """
        async with session_scope(self._session_factory) as session:
            job = await JobRepository(session).get_job(job_id)

        if job is None:
            raise JobNotFound(job_id)
        return JobHandle.model_validate(job)

    async def list(
        self,
        state: JobState | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[JobHandle], int]:
        """
        List jobs, newest first.

        Returns:
            Tuple of (jobs, total_count).
        """
        async with session_scope(self._session_factory) as session:
            jobs, total = await JobRepository(session).list_jobs(state, limit, offset)

        return [JobHandle.model_validate(job) for job in jobs], total

    async def counts(self) -> dict[str, int]:
        """Job counts by state, with every state present."""
        async with session_scope(self._session_factory) as session:
            return await JobRepository(session).get_state_counts()
