"""
Job repository for database operations.
Implements the core data access patterns for the ad-hoc job lane.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_service.constants import (
    FINISHED_STATES,
    RESERVABLE_STATES,
    BackoffType,
    JobKind,
    JobState,
)
from voucher_service.db.models import Job
from voucher_service.queue.backoff import compute_backoff_ms

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job submission
    - Reservation with FOR UPDATE SKIP LOCKED
    - State transitions guarded by the reserving worker's lease
    - Stalled job recovery and retention cleanup
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        kind: JobKind,
        payload: dict[str, Any],
        now: datetime,
        max_attempts: int = 3,
        backoff_type: BackoffType = BackoffType.EXPONENTIAL,
        backoff_delay_ms: int = 2000,
        backoff_factor: float = 2.0,
        delay_ms: int = 0,
    ) -> Job:
        """
        Create a new job.

        Args:
            kind: The job kind.
            payload: The job payload.
            now: Current time.
            max_attempts: Maximum delivery attempts.
            backoff_type: Retry delay growth policy.
            backoff_delay_ms: Base retry delay.
            backoff_factor: Growth factor for exponential backoff.
            delay_ms: Initial delay before the job becomes available.

        Returns:
            The created Job.
        """
        state = JobState.DELAYED if delay_ms > 0 else JobState.WAITING
        job = Job(
            kind=kind,
            payload=payload,
            state=state,
            attempts_made=0,
            max_attempts=max_attempts,
            backoff_type=backoff_type,
            backoff_delay_ms=backoff_delay_ms,
            backoff_factor=backoff_factor,
            available_at=now + timedelta(milliseconds=delay_ms),
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created new job",
            extra={"job_id": str(job.id), "kind": kind.value, "state": state.value},
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        state: JobState | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional state filtering.

        Args:
            state: Optional state filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if state is not None:
            filters.append(Job.state == state)

        count_stmt = select(func.count()).select_from(Job).where(*filters)
        count_result = await self._session.execute(count_stmt)
        total = count_result.scalar() or 0

        stmt = (
            select(Job)
            .where(*filters)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        jobs = result.scalars().all()

        return jobs, total

    async def reserve_jobs(
        self,
        worker_id: str,
        now: datetime,
        lease_duration: timedelta,
        batch_size: int = 1,
    ) -> Sequence[Job]:
        """
        Reserve due jobs using FOR UPDATE SKIP LOCKED.

        This is the critical path for job distribution. Reservation moves the
        job to ACTIVE, counts the attempt and records the worker's lease in a
        single statement, so two workers never reserve the same job.

        Args:
            worker_id: The worker identifier.
            now: Current time.
            lease_duration: How long the worker may hold the job.
            batch_size: Number of jobs to reserve.

        Returns:
            List of reserved jobs.
        """
        due = and_(
            Job.state.in_(RESERVABLE_STATES),
            Job.available_at <= now,
            Job.attempts_made < Job.max_attempts,
        )
        candidates = (
            select(Job.id)
            .where(due)
            .order_by(Job.available_at.asc(), Job.created_at.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )

        stmt = (
            update(Job)
            .where(and_(Job.id.in_(candidates), due))
            .values(
                state=JobState.ACTIVE,
                attempts_made=Job.attempts_made + 1,
                lease_owner=worker_id,
                lease_expires_at=now + lease_duration,
                updated_at=now,
            )
            .returning(Job)
            .execution_options(synchronize_session=False, populate_existing=True)
        )

        result = await self._session.execute(stmt)
        jobs = list(result.scalars().all())

        if jobs:
            logger.info(
                f"Reserved {len(jobs)} jobs",
                extra={"worker_id": worker_id, "job_count": len(jobs)},
            )

        return jobs

    async def complete_job(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime,
        result: dict[str, Any] | None = None,
    ) -> Job | None:
        """
        Mark job as successfully completed.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must match lease owner).
            now: Current time.
            result: Optional job result data.

        Returns:
            Updated Job or None if the worker no longer owns the job.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.ACTIVE,
                    Job.lease_owner == worker_id,
                )
            )
            .values(
                state=JobState.COMPLETED,
                finished_at=now,
                updated_at=now,
                lease_owner=None,
                lease_expires_at=None,
                last_error=None,
                result=result,
            )
            .returning(Job)
            .execution_options(populate_existing=True)
        )

        result_obj = await self._session.execute(stmt)
        job = result_obj.scalar_one_or_none()

        if job:
            logger.info("Job completed successfully", extra={"job_id": str(job_id)})

        return job

    async def fail_job(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime,
        error: str,
        retryable: bool = True,
    ) -> Job | None:
        """
        Handle job failure. Either schedule a delayed retry or mark FAILED.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier.
            now: Current time.
            error: Error message.
            retryable: False to fail the job regardless of attempts left.

        Returns:
            Updated Job or None if the worker no longer owns the job.
        """
        job = await self.get_job(job_id)
        if job is None:
            return None

        if job.state != JobState.ACTIVE or job.lease_owner != worker_id:
            logger.warning(
                "Worker doesn't own job lease",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
            return None

        if retryable and job.attempts_made < job.max_attempts:
            delay_ms = compute_backoff_ms(
                job.backoff_type,
                job.backoff_delay_ms,
                job.backoff_factor,
                job.attempts_made,
            )
            values = {
                "state": JobState.DELAYED,
                "available_at": now + timedelta(milliseconds=delay_ms),
                "finished_at": None,
            }
            logger.info(
                "Job scheduled for retry",
                extra={
                    "job_id": str(job_id),
                    "attempt": job.attempts_made,
                    "delay_ms": delay_ms,
                },
            )
        else:
            values = {"state": JobState.FAILED, "finished_at": now}
            logger.warning(
                f"Job failed after {job.attempts_made} attempts",
                extra={"job_id": str(job_id), "error": error, "retryable": retryable},
            )

        # Guarded by the attempt we read so a concurrent recovery can't be overwritten
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.ACTIVE,
                    Job.lease_owner == worker_id,
                    Job.attempts_made == job.attempts_made,
                )
            )
            .values(
                last_error=error,
                updated_at=now,
                lease_owner=None,
                lease_expires_at=None,
                **values,
            )
            .returning(Job)
            .execution_options(populate_existing=True)
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        now: datetime,
        extension: timedelta,
    ) -> bool:
        """
        Extend the lease on an active job (heartbeat).

        Returns:
            True if lease was extended, False otherwise.
        """
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.lease_owner == worker_id,
                    Job.state == JobState.ACTIVE,
                )
            )
            .values(
                lease_expires_at=now + extension,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def recover_stalled_jobs(self, now: datetime) -> tuple[list[UUID], list[UUID]]:
        """
        Recover active jobs whose worker lease expired.

        Jobs with attempts left go back to WAITING; jobs that used their last
        attempt are marked FAILED so they are never retried automatically.

        Returns:
            Tuple of (requeued job ids, failed job ids).
        """
        stalled = and_(
            Job.state == JobState.ACTIVE,
            Job.lease_expires_at.is_not(None),
            Job.lease_expires_at < now,
        )

        exhausted_stmt = (
            update(Job)
            .where(and_(stalled, Job.attempts_made >= Job.max_attempts))
            .values(
                state=JobState.FAILED,
                last_error=STALLED_ERROR,
                finished_at=now,
                lease_owner=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        failed = list((await self._session.execute(exhausted_stmt)).scalars().all())

        requeue_stmt = (
            update(Job)
            .where(stalled)
            .values(
                state=JobState.WAITING,
                available_at=now,
                lease_owner=None,
                lease_expires_at=None,
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        requeued = list((await self._session.execute(requeue_stmt)).scalars().all())

        if requeued or failed:
            logger.info(
                f"Recovered {len(requeued)} stalled jobs, failed {len(failed)}",
            )

        return requeued, failed

    async def retry_failed_job(
        self,
        job_id: UUID,
        now: datetime,
        reset_attempts: bool = True,
    ) -> Job | None:
        """
        Put a FAILED job back in the queue (manual operator retry).

        Args:
            job_id: The job UUID.
            now: Current time.
            reset_attempts: Whether to reset the attempt counter.

        Returns:
            Updated Job or None if not found or not FAILED.
        """
        values: dict[str, Any] = {
            "state": JobState.WAITING,
            "available_at": now,
            "updated_at": now,
            "finished_at": None,
            "last_error": None,
        }

        if reset_attempts:
            values["attempts_made"] = 0
        else:
            # One more attempt beyond what was used
            values["max_attempts"] = Job.attempts_made + 1

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.FAILED,
                )
            )
            .values(**values)
            .returning(Job)
            .execution_options(populate_existing=True)
        )

        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job:
            logger.info("Failed job queued for retry", extra={"job_id": str(job_id)})

        return job

    async def purge_finished_jobs(self, finished_before: datetime) -> int:
        """
        Delete completed and failed jobs that finished before the cutoff.

        Returns:
            Number of purged jobs.
        """
        stmt = (
            delete(Job)
            .where(
                and_(
                    Job.state.in_(FINISHED_STATES),
                    Job.finished_at.is_not(None),
                    Job.finished_at < finished_before,
                )
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Purged {count} finished jobs")

        return count

    async def get_state_counts(self) -> dict[str, int]:
        """
        Get job counts by state.

        Returns:
            Dictionary of state -> count, with every state present.
        """
        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self._session.execute(stmt)

        counts = {state.value: 0 for state in JobState}
        for state, count in result.all():
            counts[JobState(state).value] = count
        return counts
