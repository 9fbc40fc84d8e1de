"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    start_http_server,
)

from voucher_service.constants import (
    METRIC_EMAILS_SENT,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASE_OPERATIONS,
    METRIC_QUEUE_DEPTH,
    METRIC_STALE_LEASES_CLEARED,
    METRIC_STORE_UP,
    METRIC_TASK_RUNS,
    METRIC_VOUCHERS_ISSUED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the voucher service.

    Collects metrics for:
    - Voucher allocations by outcome
    - Edit lease operations
    - Job enqueues, completions and durations
    - Queue depth by state
    - Email deliveries
    - Maintenance task runs and store liveness
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.vouchers_issued = Counter(
            METRIC_VOUCHERS_ISSUED,
            "Voucher allocation attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.lease_operations = Counter(
            METRIC_LEASE_OPERATIONS,
            "Edit lease operations by operation and outcome",
            ["operation", "outcome"],
            registry=self._registry,
        )

        self.leases_reaped = Counter(
            METRIC_STALE_LEASES_CLEARED,
            "Expired edit leases cleared by the reaper",
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["kind"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Job attempts finished by kind and resulting state",
            ["kind", "state"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["kind", "state"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of jobs by state",
            ["state"],
            registry=self._registry,
        )

        self.emails_sent = Counter(
            METRIC_EMAILS_SENT,
            "Email delivery attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.task_runs = Counter(
            METRIC_TASK_RUNS,
            "Recurring maintenance task runs by task and outcome",
            ["task", "outcome"],
            registry=self._registry,
        )

        self.store_up = Gauge(
            METRIC_STORE_UP,
            "1 if the last store health probe passed, else 0",
            registry=self._registry,
        )

    def record_allocation(self, outcome: str) -> None:
        """Record a voucher allocation outcome."""
        self.vouchers_issued.labels(outcome=outcome).inc()

    def record_lease_operation(self, operation: str, outcome: str) -> None:
        """Record an edit lease operation outcome."""
        self.lease_operations.labels(operation=operation, outcome=outcome).inc()

    def record_leases_reaped(self, count: int) -> None:
        if count > 0:
            self.leases_reaped.inc(count)

    def record_job_enqueued(self, kind: str) -> None:
        """Record a job submission."""
        self.jobs_enqueued.labels(kind=kind).inc()

    def record_job_finished(
        self,
        kind: str,
        state: str,
        duration_seconds: float,
    ) -> None:
        """Record the end of a job attempt."""
        self.jobs_finished.labels(kind=kind, state=state).inc()
        self.job_duration.labels(kind=kind, state=state).observe(duration_seconds)

    def update_queue_depth(self, counts: dict[str, int]) -> None:
        """Update queue depth for every state."""
        for state, depth in counts.items():
            self.queue_depth.labels(state=state).set(depth)

    def record_email(self, outcome: str) -> None:
        self.emails_sent.labels(outcome=outcome).inc()

    def record_task_run(self, task: str, outcome: str) -> None:
        self.task_runs.labels(task=task, outcome=outcome).inc()

    def set_store_up(self, healthy: bool) -> None:
        self.store_up.set(1 if healthy else 0)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics(port: int | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: If given, expose the registry over HTTP on this port.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port is not None:
        start_http_server(port, registry=_metrics._registry)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
