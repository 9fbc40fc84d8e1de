"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> ACTIVE (reserved by a worker, attempt counted)
    - DELAYED -> ACTIVE (backoff elapsed, reserved by a worker)
    - ACTIVE -> COMPLETED (success)
    - ACTIVE -> DELAYED (failure, attempts remain)
    - ACTIVE -> FAILED (attempts exhausted or non-retryable failure)
    - ACTIVE -> WAITING (job lease expired - stalled worker)
    - FAILED -> WAITING (manual retry)
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class JobKind(StrEnum):
    """Kinds of ad-hoc jobs understood by the notification worker."""

    ISSUE_AND_NOTIFY = "issue_and_notify"
    PROCESS_ONLY = "process_only"
    EMAIL_ONLY = "email_only"


class BackoffType(StrEnum):
    """Retry delay growth policies."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class LeaseOutcome(StrEnum):
    """Successful edit lease operation outcomes."""

    GRANTED = "granted"
    ALREADY_HELD = "already_held"
    RENEWED = "renewed"
    RELEASED = "released"


# States a worker may reserve from
RESERVABLE_STATES: tuple[JobState, ...] = (JobState.WAITING, JobState.DELAYED)

# Terminal states subject to the retention sweep
FINISHED_STATES: tuple[JobState, ...] = (JobState.COMPLETED, JobState.FAILED)

# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_DELAY_MS = 2000
DEFAULT_EDIT_LOCK_TTL_SECONDS = 300

# Caller-facing status for an exhausted voucher quota
QUOTA_EXHAUSTED_STATUS = 456

# Recurring task names
TASK_LEASE_REAPER = "lease-reaper"
TASK_HEALTH_PROBE = "store-health-probe"
TASK_JOB_RETENTION = "job-retention-sweep"
TASK_STALLED_JOBS = "stalled-job-recovery"
TASK_QUEUE_STATS = "queue-stats"

# Metrics names
METRIC_VOUCHERS_ISSUED = "vouchers_allocations_total"
METRIC_LEASE_OPERATIONS = "edit_lease_operations_total"
METRIC_STALE_LEASES_CLEARED = "edit_leases_reaped_total"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_EMAILS_SENT = "emails_sent_total"
METRIC_TASK_RUNS = "maintenance_task_runs_total"
METRIC_STORE_UP = "store_up"

# Trace span names
SPAN_ISSUE_VOUCHER = "issue_voucher"
SPAN_LEASE_OPERATION = "edit_lease"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_SEND_EMAIL = "send_email"

# Job event types
JOB_EVENT_WAITING = "job.waiting"
JOB_EVENT_ACTIVE = "job.active"
JOB_EVENT_COMPLETED = "job.completed"
JOB_EVENT_FAILED = "job.failed"
JOB_EVENT_DELAYED = "job.delayed"
JOB_EVENT_STALLED = "job.stalled"
JOB_EVENT_RETRIED = "job.retried"
JOB_EVENT_PURGED = "job.purged"
