"""
SQLAlchemy database models.
Defines the event, voucher, job and recurring task tables.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from voucher_service.constants import BackoffType, JobKind, JobState
from voucher_service.utils.time import utc_now

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Event(Base):
    """
    Event offering a quota-bounded supply of vouchers.

    issued_count is mutated only by the voucher allocator, and
    editing_by/edit_lock_at only by the edit lease manager and the lease
    reaper. Both are always changed through conditional updates.
    """

    __tablename__ = "events"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    max_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    issued_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Edit lease
    editing_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    edit_lock_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("max_quantity > 0", name="ck_events_max_quantity_positive"),
        CheckConstraint(
            "issued_count >= 0 AND issued_count <= max_quantity",
            name="ck_events_issued_within_quota",
        ),
        Index("ix_events_edit_lock_at", "edit_lock_at"),
    )

    def lease_active(self, now: datetime) -> bool:
        """A lease is active iff it has a holder and an expiry in the future."""
        return (
            self.editing_by is not None
            and self.edit_lock_at is not None
            and self.edit_lock_at > now
        )

    def __repr__(self) -> str:
        return (
            f"Event(id={self.id}, issued={self.issued_count}/{self.max_quantity}, "
            f"editing_by={self.editing_by})"
        )


class Voucher(Base):
    """A single issued voucher. Codes are unique across all vouchers."""

    __tablename__ = "vouchers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    event_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("events.id"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    issued_to: Mapped[str] = mapped_column(String(255), nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"Voucher(code={self.code}, event={self.event_id}, used={self.is_used})"


class Job(Base):
    """
    Ad-hoc job in the notification lane.

    This is the authoritative source of truth for job state. lease_owner and
    lease_expires_at track which worker holds an active job, so a crashed
    worker's jobs can be recovered for at-least-once delivery.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    kind: Mapped[JobKind] = mapped_column(_enum(JobKind, "job_kind"), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    state: Mapped[JobState] = mapped_column(
        _enum(JobState, "job_state"),
        nullable=False,
        default=JobState.WAITING,
        index=True,
    )

    # Retry tracking
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    backoff_type: Mapped[BackoffType] = mapped_column(
        _enum(BackoffType, "job_backoff_type"),
        nullable=False,
        default=BackoffType.EXPONENTIAL,
    )
    backoff_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    backoff_factor: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)
    available_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now
    )

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utc_now, server_default=func.now()
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Outcome
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "attempts_made >= 0 AND attempts_made <= max_attempts",
            name="ck_jobs_attempts_bounded",
        ),
        # Index for efficient queue polling
        Index("ix_jobs_reserve", "state", "available_at"),
        # Index for stalled job checks
        Index("ix_jobs_lease_expiry", "state", "lease_expires_at"),
        # Index for the retention sweep
        Index("ix_jobs_finished", "state", "finished_at"),
    )

    @property
    def is_retryable(self) -> bool:
        """Check if the job has attempts left."""
        return self.attempts_made < self.max_attempts

    @property
    def is_finished(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, kind={self.kind}, state={self.state}, "
            f"attempt={self.attempts_made}/{self.max_attempts})"
        )


class RecurringTaskRun(Base):
    """Last run marker of a named recurring task, shared by all replicas."""

    __tablename__ = "recurring_tasks"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    interval_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    last_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_run_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"RecurringTaskRun(name={self.name}, last_run_at={self.last_run_at})"
