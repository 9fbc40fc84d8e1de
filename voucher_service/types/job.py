"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from voucher_service.constants import BackoffType, JobKind, JobState


class JobOptions(BaseModel):
    """
    Per-job overrides of the pipeline defaults.

    Unset fields fall back to the configured job_* settings.
    """

    max_attempts: int | None = Field(default=None, ge=1)
    backoff_type: BackoffType | None = None
    backoff_delay_ms: int | None = Field(default=None, ge=0)
    backoff_factor: float | None = Field(default=None, gt=0)
    delay_ms: int = Field(default=0, ge=0)


class JobHandle(BaseModel):
    """Snapshot of a job as seen by producers and operators."""

    id: UUID
    kind: JobKind
    state: JobState
    payload: dict[str, Any]
    attempts_made: int
    max_attempts: int
    available_at: datetime
    created_at: datetime
    finished_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None

    model_config = {"from_attributes": True}


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.

    A failed result with retryable=False fails the job immediately,
    regardless of attempts left.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    retryable: bool = True

    @classmethod
    def ok(cls, **output: Any) -> "JobResult":
        return cls(success=True, output=output)

    @classmethod
    def failed(cls, error: str, retryable: bool = True) -> "JobResult":
        return cls(success=False, error=error, retryable=retryable)


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: UUID
    kind: JobKind
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    lease_owner: str
    lease_expires_at: datetime | None

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts
