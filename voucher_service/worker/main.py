"""
Notification worker process.

The worker reserves jobs from the queue, executes them, and reports the
outcome so the pipeline can retry with backoff or fail the job.
"""

import asyncio
import logging
import os
import signal
import time
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voucher_service.config import Settings, get_settings
from voucher_service.constants import SPAN_EXECUTE_JOB
from voucher_service.db import close_db, get_engine, init_db
from voucher_service.notifications.email import EmailSender, EmailTransport, build_transport
from voucher_service.observability.logging import bind_context, clear_context, setup_logging
from voucher_service.observability.metrics import get_metrics, setup_metrics
from voucher_service.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from voucher_service.queue.pipeline import JobQueue
from voucher_service.types.job import JobContext
from voucher_service.worker.handlers import HandlerServices, execute_job

logger = logging.getLogger(__name__)


class NotificationWorker:
    """
    Job worker that polls for and executes notification jobs.

    Features:
    - Atomic reservation using FOR UPDATE SKIP LOCKED
    - Heartbeat to extend job leases for long-running jobs
    - Graceful shutdown on SIGTERM/SIGINT
    - Outcome reporting that drives retry/backoff
    """

    def __init__(
        self,
        queue: JobQueue,
        session_factory: async_sessionmaker[AsyncSession],
        transport: EmailTransport,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ):
        """
        Initialize the worker.

        Args:
            queue: Job queue to reserve from and report to.
            session_factory: Factory for handler reads.
            transport: Email delivery backend.
            settings: Worker settings. Uses global settings if not provided.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
        """
        settings = settings or get_settings()

        self.worker_id = worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        self.batch_size = settings.worker_batch_size
        self.poll_interval = settings.worker_poll_interval_seconds
        self.heartbeat_interval = settings.worker_heartbeat_interval_seconds

        self._queue = queue
        self._services = HandlerServices(
            session_factory=session_factory,
            email_sender=EmailSender(transport, settings),
        )
        self._running = False
        self._current_jobs: dict[UUID, asyncio.Task] = {}
        self._heartbeat_task: asyncio.Task | None = None
        self._metrics = get_metrics()

    async def start(self) -> None:
        """Start the worker."""
        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "batch_size": self.batch_size},
        )

        self._running = True

        # Start heartbeat task
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        # Main polling loop
        while self._running:
            try:
                jobs_processed = await self.run_once()

                # If no jobs were processed, wait before polling again
                if jobs_processed == 0:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self.poll_interval)

        # Wait for current jobs to complete
        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
            await asyncio.gather(*self._current_jobs.values(), return_exceptions=True)

        # Cancel heartbeat
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def run_once(self) -> int:
        """
        Reserve one batch and execute it.

        Returns:
            Number of jobs processed.
        """
        contexts = await self._queue.reserve(self.worker_id, self.batch_size)
        if not contexts:
            return 0

        logger.info(
            f"Reserved {len(contexts)} jobs",
            extra={"worker_id": self.worker_id},
        )

        # Execute jobs concurrently
        tasks = []
        for context in contexts:
            task = asyncio.create_task(self._execute_job(context))
            self._current_jobs[context.job_id] = task
            tasks.append(task)

        await asyncio.gather(*tasks, return_exceptions=True)

        return len(contexts)

    async def _execute_job(self, context: JobContext) -> None:
        """
        Execute a single reserved job and report its outcome.

        Args:
            context: The reserved job.
        """
        start_time = time.monotonic()
        job_id = context.job_id
        bind_context(job_id=str(job_id), worker_id=self.worker_id)

        try:
            logger.info(
                "Executing job",
                extra={"kind": context.kind.value, "attempt": context.attempt},
            )

            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(job_id))
                span.set_attribute("kind", context.kind.value)
                span.set_attribute("attempt", context.attempt)

                result = await execute_job(context, self._services)

            duration = time.monotonic() - start_time

            if result.success:
                job = await self._queue.complete(job_id, self.worker_id, result.output)
                final_state = job.state.value if job else "lost"
            else:
                job = await self._queue.fail(
                    job_id,
                    self.worker_id,
                    result.error or "Unknown error",
                    retryable=result.retryable,
                )
                final_state = job.state.value if job else "lost"
                logger.warning(
                    "Job attempt failed",
                    extra={
                        "error": result.error,
                        "attempt": context.attempt,
                        "last_attempt": context.is_last_attempt,
                        "state": final_state,
                    },
                )

            self._metrics.record_job_finished(context.kind.value, final_state, duration)

        except Exception as e:
            logger.exception("Exception executing job", extra={"error": str(e)})

            # Try to mark job as failed
            try:
                await self._queue.fail(job_id, self.worker_id, f"Worker exception: {e}")
            except Exception:
                logger.exception("Failed to mark job as failed")

        finally:
            self._current_jobs.pop(job_id, None)
            clear_context()

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being recovered as stalled while they're
        still being executed.
        """
        while self._running:
            try:
                await asyncio.sleep(self.heartbeat_interval)

                for job_id in list(self._current_jobs.keys()):
                    extended = await self._queue.extend_lease(job_id, self.worker_id)
                    if extended:
                        logger.debug("Extended lease", extra={"job_id": str(job_id)})

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_tracing()
    setup_metrics(settings.prometheus_port)

    session_factory = await init_db()
    instrument_sqlalchemy(get_engine())

    queue = JobQueue(session_factory, settings)
    worker = NotificationWorker(queue, session_factory, build_transport(settings), settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop()),
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
