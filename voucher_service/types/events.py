"""
Job lifecycle event definitions for in-process messaging.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from voucher_service.constants import (
    JOB_EVENT_ACTIVE,
    JOB_EVENT_COMPLETED,
    JOB_EVENT_DELAYED,
    JOB_EVENT_FAILED,
    JOB_EVENT_PURGED,
    JOB_EVENT_RETRIED,
    JOB_EVENT_STALLED,
    JOB_EVENT_WAITING,
    JobKind,
    JobState,
)


class JobEvent(BaseModel):
    """
    Event emitted when a job changes state.
    Delivered to JobEventBus subscribers.
    """

    event_type: str
    job_id: UUID | None
    kind: JobKind | None = None
    state: JobState | None = None
    timestamp: datetime
    data: dict[str, Any] | None = None

    @classmethod
    def waiting(cls, job_id: UUID, kind: JobKind, at: datetime, delay_ms: int = 0) -> "JobEvent":
        """Create a job submitted event."""
        return cls(
            event_type=JOB_EVENT_WAITING,
            job_id=job_id,
            kind=kind,
            state=JobState.DELAYED if delay_ms > 0 else JobState.WAITING,
            timestamp=at,
            data={"delay_ms": delay_ms},
        )

    @classmethod
    def active(
        cls,
        job_id: UUID,
        kind: JobKind,
        at: datetime,
        worker_id: str,
        attempt: int,
    ) -> "JobEvent":
        """Create a job reserved event."""
        return cls(
            event_type=JOB_EVENT_ACTIVE,
            job_id=job_id,
            kind=kind,
            state=JobState.ACTIVE,
            timestamp=at,
            data={"worker_id": worker_id, "attempt": attempt},
        )

    @classmethod
    def completed(
        cls,
        job_id: UUID,
        kind: JobKind,
        at: datetime,
        result: dict[str, Any] | None = None,
    ) -> "JobEvent":
        """Create a job completed event."""
        return cls(
            event_type=JOB_EVENT_COMPLETED,
            job_id=job_id,
            kind=kind,
            state=JobState.COMPLETED,
            timestamp=at,
            data={"result": result},
        )

    @classmethod
    def delayed(
        cls,
        job_id: UUID,
        kind: JobKind,
        at: datetime,
        error: str,
        attempt: int,
        available_at: datetime,
    ) -> "JobEvent":
        """Create a retry scheduled event."""
        return cls(
            event_type=JOB_EVENT_DELAYED,
            job_id=job_id,
            kind=kind,
            state=JobState.DELAYED,
            timestamp=at,
            data={
                "error": error,
                "attempt": attempt,
                "available_at": available_at.isoformat(),
            },
        )

    @classmethod
    def failed(
        cls,
        job_id: UUID,
        kind: JobKind,
        at: datetime,
        error: str,
        attempts: int,
    ) -> "JobEvent":
        """Create a job failed (terminal) event."""
        return cls(
            event_type=JOB_EVENT_FAILED,
            job_id=job_id,
            kind=kind,
            state=JobState.FAILED,
            timestamp=at,
            data={"error": error, "total_attempts": attempts},
        )

    @classmethod
    def stalled(cls, job_id: UUID, at: datetime, requeued: bool) -> "JobEvent":
        return cls(
            event_type=JOB_EVENT_STALLED,
            job_id=job_id,
            state=JobState.WAITING if requeued else JobState.FAILED,
            timestamp=at,
            data={"requeued": requeued},
        )

    @classmethod
    def retried(cls, job_id: UUID, kind: JobKind, at: datetime) -> "JobEvent":
        return cls(
            event_type=JOB_EVENT_RETRIED,
            job_id=job_id,
            kind=kind,
            state=JobState.WAITING,
            timestamp=at,
        )

    @classmethod
    def purged(cls, at: datetime, count: int) -> "JobEvent":
        return cls(
            event_type=JOB_EVENT_PURGED,
            job_id=None,
            timestamp=at,
            data={"count": count},
        )
