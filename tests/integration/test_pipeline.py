"""
Integration tests for the job pipeline.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from voucher_service.constants import (
    JOB_EVENT_ACTIVE,
    JOB_EVENT_COMPLETED,
    JOB_EVENT_DELAYED,
    JOB_EVENT_FAILED,
    JOB_EVENT_PURGED,
    JOB_EVENT_RETRIED,
    JOB_EVENT_STALLED,
    JOB_EVENT_WAITING,
    BackoffType,
    JobKind,
    JobState,
)
from voucher_service.errors import JobNotFound
from voucher_service.queue.pipeline import JobQueue
from voucher_service.types.job import JobOptions

PAYLOAD = {"voucher_code": "VC-AAAAAAAAA", "email": "alice@example.com"}


class TestJobRetries:
    """Attempt accounting and backoff."""

    @pytest.mark.asyncio
    async def test_retry_bound(self, job_queue: JobQueue, clock, recorder):
        """A job that always fails is attempted exactly max_attempts times."""
        handle = await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        delays = []

        for attempt in range(1, 4):
            [context] = await job_queue.reserve("w1")
            assert context.attempt == attempt

            failed = await job_queue.fail(context.job_id, "w1", "smtp down")
            if failed.state == JobState.DELAYED:
                delays.append(failed.available_at - clock())
                clock.now = failed.available_at

        assert failed.state == JobState.FAILED
        assert failed.attempts_made == 3
        assert failed.finished_at == clock()
        assert delays == [timedelta(seconds=2), timedelta(seconds=4)]

        clock.advance(hours=1)
        assert await job_queue.reserve("w1") == []

        stored = await job_queue.get(handle.id)
        assert stored.state == JobState.FAILED
        assert stored.last_error == "smtp down"
        assert recorder.types().count(JOB_EVENT_DELAYED) == 2
        assert recorder.types().count(JOB_EVENT_FAILED) == 1

    @pytest.mark.asyncio
    async def test_delayed_job_not_reserved_early(self, job_queue: JobQueue, clock):
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        [context] = await job_queue.reserve("w1")
        await job_queue.fail(context.job_id, "w1", "timeout")

        clock.advance(seconds=1)
        assert await job_queue.reserve("w1") == []

        clock.advance(seconds=1)
        assert len(await job_queue.reserve("w1")) == 1

    @pytest.mark.asyncio
    async def test_fixed_backoff_option(self, job_queue: JobQueue, clock):
        options = JobOptions(max_attempts=5, backoff_type=BackoffType.FIXED, backoff_delay_ms=500)
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD, options)

        for _ in range(3):
            [context] = await job_queue.reserve("w1")
            failed = await job_queue.fail(context.job_id, "w1", "timeout")
            assert failed.available_at - clock() == timedelta(milliseconds=500)
            clock.now = failed.available_at

        assert failed.max_attempts == 5

    @pytest.mark.asyncio
    async def test_non_retryable_failure_is_terminal(self, job_queue: JobQueue):
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        [context] = await job_queue.reserve("w1")

        failed = await job_queue.fail(context.job_id, "w1", "bad address", retryable=False)

        assert failed.state == JobState.FAILED
        assert failed.attempts_made == 1

    @pytest.mark.asyncio
    async def test_initial_delay(self, job_queue: JobQueue, clock):
        handle = await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD, JobOptions(delay_ms=3000))

        assert handle.state == JobState.DELAYED
        assert await job_queue.reserve("w1") == []

        clock.advance(seconds=3)
        assert len(await job_queue.reserve("w1")) == 1


class TestJobLifecycle:
    """Completion, lease ownership, recovery and housekeeping."""

    @pytest.mark.asyncio
    async def test_complete(self, job_queue: JobQueue, recorder):
        handle = await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        [context] = await job_queue.reserve("w1")

        assert context.payload == PAYLOAD
        assert context.kind == JobKind.EMAIL_ONLY

        done = await job_queue.complete(context.job_id, "w1", {"email_sent": True})

        assert done.id == handle.id
        assert done.state == JobState.COMPLETED
        assert done.result == {"email_sent": True}
        assert recorder.types() == [JOB_EVENT_WAITING, JOB_EVENT_ACTIVE, JOB_EVENT_COMPLETED]

    @pytest.mark.asyncio
    async def test_job_reserved_by_one_worker(self, job_queue: JobQueue):
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)

        first = await job_queue.reserve("w1")
        second = await job_queue.reserve("w2")

        assert len(first) == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_lost_lease_ignored(self, job_queue: JobQueue):
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        [context] = await job_queue.reserve("w1")

        assert await job_queue.complete(context.job_id, "w2") is None
        assert await job_queue.fail(context.job_id, "w2", "boom") is None

        assert (await job_queue.get(context.job_id)).state == JobState.ACTIVE

    @pytest.mark.asyncio
    async def test_extend_lease(self, job_queue: JobQueue, clock):
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        [context] = await job_queue.reserve("w1")

        clock.advance(seconds=20)
        assert await job_queue.extend_lease(context.job_id, "w1") is True
        assert await job_queue.extend_lease(context.job_id, "w2") is False

        # The original lease would have expired by now
        clock.advance(seconds=20)
        assert await job_queue.recover_stalled() == ([], [])

    @pytest.mark.asyncio
    async def test_recover_stalled(self, job_queue: JobQueue, clock, recorder):
        handle = await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        await job_queue.reserve("w1")

        clock.advance(seconds=31)
        requeued, failed = await job_queue.recover_stalled()

        assert requeued == [handle.id]
        assert failed == []
        assert JOB_EVENT_STALLED in recorder.types()

        [context] = await job_queue.reserve("w2")
        assert context.attempt == 2

    @pytest.mark.asyncio
    async def test_manual_retry(self, job_queue: JobQueue, recorder):
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        [context] = await job_queue.reserve("w1")
        await job_queue.fail(context.job_id, "w1", "bad address", retryable=False)

        retried = await job_queue.retry(context.job_id)

        assert retried.state == JobState.WAITING
        assert retried.attempts_made == 0
        assert retried.last_error is None
        assert JOB_EVENT_RETRIED in recorder.types()

        # Only failed jobs can be retried
        with pytest.raises(JobNotFound):
            await job_queue.retry(context.job_id)

    @pytest.mark.asyncio
    async def test_retry_keeping_attempts(self, job_queue: JobQueue):
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD, JobOptions(max_attempts=1))
        [context] = await job_queue.reserve("w1")
        await job_queue.fail(context.job_id, "w1", "down")

        retried = await job_queue.retry(context.job_id, reset_attempts=False)

        assert retried.attempts_made == 1
        assert retried.max_attempts == 2

    @pytest.mark.asyncio
    async def test_purge_finished(self, job_queue: JobQueue, clock, recorder):
        await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        [context] = await job_queue.reserve("w1")
        await job_queue.complete(context.job_id, "w1")
        pending = await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)

        assert await job_queue.purge_finished() == 0

        clock.advance(hours=25)
        assert await job_queue.purge_finished() == 1
        assert JOB_EVENT_PURGED in recorder.types()

        with pytest.raises(JobNotFound):
            await job_queue.get(context.job_id)
        assert (await job_queue.get(pending.id)).state == JobState.WAITING

    @pytest.mark.asyncio
    async def test_get_unknown(self, job_queue: JobQueue):
        with pytest.raises(JobNotFound):
            await job_queue.get(uuid4())

    @pytest.mark.asyncio
    async def test_list_and_counts(self, job_queue: JobQueue):
        for _ in range(3):
            await job_queue.enqueue(JobKind.EMAIL_ONLY, PAYLOAD)
        await job_queue.reserve("w1", batch_size=1)

        waiting, total = await job_queue.list(JobState.WAITING)
        assert total == 2
        assert len(waiting) == 2

        page, total = await job_queue.list(limit=1)
        assert total == 3
        assert len(page) == 1

        counts = await job_queue.counts()
        assert counts["waiting"] == 2
        assert counts["active"] == 1
