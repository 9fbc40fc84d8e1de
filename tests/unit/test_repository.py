"""
Unit tests for the repositories' conditional updates.
"""

from datetime import datetime, timedelta

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_service.constants import BackoffType, JobKind, JobState
from voucher_service.db.event_repository import EventRepository
from voucher_service.db.repository import STALLED_ERROR, JobRepository
from voucher_service.db.task_repository import RecurringTaskRepository
from voucher_service.db.voucher_repository import VoucherRepository

NOW = datetime(2026, 1, 1, 12, 0, 0)
LEASE = timedelta(seconds=30)


class TestJobRepository:
    """Tests for JobRepository."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session)

    async def _create(self, repo: JobRepository, **kwargs):
        defaults = {
            "kind": JobKind.EMAIL_ONLY,
            "payload": {"voucher_code": "VC-1", "email": "a@b.co"},
            "now": NOW,
        }
        defaults.update(kwargs)
        return await repo.create_job(**defaults)

    async def test_create_job(self, repo: JobRepository, db_session: AsyncSession):
        job = await self._create(repo)
        await db_session.commit()

        assert job.state == JobState.WAITING
        assert job.attempts_made == 0
        assert job.max_attempts == 3
        assert job.available_at == NOW

    async def test_create_delayed_job(self, repo: JobRepository, db_session: AsyncSession):
        job = await self._create(repo, delay_ms=5000)
        await db_session.commit()

        assert job.state == JobState.DELAYED
        assert job.available_at == NOW + timedelta(seconds=5)

    async def test_reserve_counts_attempt(self, repo: JobRepository, db_session: AsyncSession):
        job = await self._create(repo)
        await db_session.commit()

        reserved = await repo.reserve_jobs("w1", NOW, LEASE, batch_size=5)
        await db_session.commit()

        assert [j.id for j in reserved] == [job.id]
        assert reserved[0].state == JobState.ACTIVE
        assert reserved[0].attempts_made == 1
        assert reserved[0].lease_owner == "w1"
        assert reserved[0].lease_expires_at == NOW + LEASE

        # Nothing left to reserve
        assert await repo.reserve_jobs("w2", NOW, LEASE) == []

    async def test_reserve_skips_jobs_not_yet_due(self, repo: JobRepository, db_session: AsyncSession):
        await self._create(repo, delay_ms=10_000)
        await db_session.commit()

        assert await repo.reserve_jobs("w1", NOW, LEASE) == []
        assert len(await repo.reserve_jobs("w1", NOW + timedelta(seconds=10), LEASE)) == 1

    async def test_complete_requires_lease_owner(self, repo: JobRepository, db_session: AsyncSession):
        job = await self._create(repo)
        await repo.reserve_jobs("w1", NOW, LEASE)
        await db_session.commit()

        assert await repo.complete_job(job.id, "intruder", NOW) is None

        completed = await repo.complete_job(job.id, "w1", NOW, {"ok": True})
        await db_session.commit()

        assert completed.state == JobState.COMPLETED
        assert completed.finished_at == NOW
        assert completed.result == {"ok": True}
        assert completed.lease_owner is None

    async def test_fail_schedules_backoff(self, repo: JobRepository, db_session: AsyncSession):
        job = await self._create(repo, backoff_type=BackoffType.EXPONENTIAL, backoff_delay_ms=2000)
        await repo.reserve_jobs("w1", NOW, LEASE)
        await db_session.commit()

        failed = await repo.fail_job(job.id, "w1", NOW, "smtp down")
        await db_session.commit()

        assert failed.state == JobState.DELAYED
        assert failed.available_at == NOW + timedelta(milliseconds=2000)
        assert failed.last_error == "smtp down"
        assert failed.lease_owner is None

    async def test_fail_not_retryable(self, repo: JobRepository, db_session: AsyncSession):
        job = await self._create(repo)
        await repo.reserve_jobs("w1", NOW, LEASE)
        await db_session.commit()

        failed = await repo.fail_job(job.id, "w1", NOW, "bad address", retryable=False)
        await db_session.commit()

        assert failed.state == JobState.FAILED
        assert failed.attempts_made == 1
        assert failed.finished_at == NOW

    async def test_fail_after_last_attempt(self, repo: JobRepository, db_session: AsyncSession):
        job = await self._create(repo, max_attempts=1)
        await repo.reserve_jobs("w1", NOW, LEASE)
        await db_session.commit()

        failed = await repo.fail_job(job.id, "w1", NOW, "still down")
        await db_session.commit()

        assert failed.state == JobState.FAILED

    async def test_recover_stalled_jobs(self, repo: JobRepository, db_session: AsyncSession):
        retryable = await self._create(repo)
        exhausted = await self._create(repo, max_attempts=1)
        await repo.reserve_jobs("w1", NOW, LEASE, batch_size=10)
        await db_session.commit()

        # Leases still live
        assert await repo.recover_stalled_jobs(NOW + timedelta(seconds=10)) == ([], [])

        requeued, failed = await repo.recover_stalled_jobs(NOW + timedelta(seconds=31))
        await db_session.commit()

        assert requeued == [retryable.id]
        assert failed == [exhausted.id]

        dead = await repo.get_job(exhausted.id)
        assert dead.state == JobState.FAILED
        assert dead.last_error == STALLED_ERROR

        back = await repo.get_job(retryable.id)
        assert back.state == JobState.WAITING
        assert back.attempts_made == 1

    async def test_purge_finished(self, repo: JobRepository, db_session: AsyncSession):
        old = await self._create(repo)
        await repo.reserve_jobs("w1", NOW, LEASE)
        await repo.complete_job(old.id, "w1", NOW)
        pending = await self._create(repo)
        await db_session.commit()

        assert await repo.purge_finished_jobs(NOW) == 0
        assert await repo.purge_finished_jobs(NOW + timedelta(seconds=1)) == 1
        await db_session.commit()

        assert await repo.get_job(old.id) is None
        assert await repo.get_job(pending.id) is not None

    async def test_state_counts(self, repo: JobRepository, db_session: AsyncSession):
        await self._create(repo)
        await self._create(repo, delay_ms=1000)
        await db_session.commit()

        counts = await repo.get_state_counts()

        assert counts == {
            "waiting": 1,
            "active": 0,
            "completed": 0,
            "failed": 0,
            "delayed": 1,
        }


class TestEventRepository:
    """Tests for the event counters and lease predicates."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> EventRepository:
        return EventRepository(db_session)

    async def test_increment_stops_at_quota(self, repo: EventRepository, db_session: AsyncSession):
        event = await repo.create_event("Gala", max_quantity=2, now=NOW)
        await db_session.commit()

        assert (await repo.increment_issued_if_available(event.id, NOW)).issued_count == 1
        assert (await repo.increment_issued_if_available(event.id, NOW)).issued_count == 2
        assert await repo.increment_issued_if_available(event.id, NOW) is None

    async def test_lease_predicates(self, repo: EventRepository, db_session: AsyncSession):
        event = await repo.create_event("Gala", max_quantity=1, now=NOW)
        await db_session.commit()
        until = NOW + timedelta(minutes=5)

        assert await repo.acquire_edit_lease(event.id, "alice", NOW, until) is not None
        assert await repo.acquire_edit_lease(event.id, "bob", NOW, until) is None
        assert await repo.renew_edit_lease(event.id, "bob", NOW, until) is None
        assert await repo.release_edit_lease(event.id, "bob", NOW) is None

        # After expiry anyone may take it
        later = until + timedelta(seconds=1)
        taken = await repo.acquire_edit_lease(event.id, "bob", later, later + timedelta(minutes=5))
        assert taken.editing_by == "bob"

    async def test_clear_expired_leases(self, repo: EventRepository, db_session: AsyncSession):
        stale = await repo.create_event("Stale", max_quantity=1, now=NOW)
        live = await repo.create_event("Live", max_quantity=1, now=NOW)
        await repo.acquire_edit_lease(stale.id, "alice", NOW, NOW + timedelta(minutes=1))
        await repo.acquire_edit_lease(live.id, "bob", NOW, NOW + timedelta(minutes=10))
        await db_session.commit()

        cleared = await repo.clear_expired_leases(NOW + timedelta(minutes=5))
        await db_session.commit()

        assert cleared == 1
        assert (await repo.get_event(stale.id)).editing_by is None
        assert (await repo.get_event(live.id)).editing_by == "bob"


class TestVoucherRepository:
    @pytest_asyncio.fixture
    async def event_id(self, db_session: AsyncSession):
        event = await EventRepository(db_session).create_event("Gala", max_quantity=5, now=NOW)
        await db_session.commit()
        return event.id

    async def test_mark_used_once(self, db_session: AsyncSession, event_id):
        repo = VoucherRepository(db_session)
        await repo.add_voucher(event_id, "VC-AAAAAAAAA", "alice", NOW)
        await db_session.commit()

        assert (await repo.mark_used("VC-AAAAAAAAA", NOW)).is_used is True
        assert await repo.mark_used("VC-AAAAAAAAA", NOW) is None

    async def test_delete_only_unused(self, db_session: AsyncSession, event_id):
        repo = VoucherRepository(db_session)
        unused = await repo.add_voucher(event_id, "VC-UNUSED00", "alice", NOW)
        used = await repo.add_voucher(event_id, "VC-USED0000", "bob", NOW)
        await repo.mark_used("VC-USED0000", NOW)
        await db_session.commit()

        assert await repo.delete_unused(used.id) is False
        assert await repo.delete_unused(unused.id) is True
        assert await repo.count_for_event(event_id) == 1


class TestRecurringTaskRepository:
    async def test_claim_once_per_interval(self, db_session: AsyncSession):
        repo = RecurringTaskRepository(db_session)

        assert await repo.claim_run("lease-reaper", 60, NOW, "r1") is True
        await db_session.commit()

        assert await repo.claim_run("lease-reaper", 60, NOW + timedelta(seconds=30), "r2") is False
        assert await repo.claim_run("lease-reaper", 60, NOW + timedelta(seconds=60), "r2") is True
        await db_session.commit()

        run = await repo.get_run("lease-reaper")
        assert run.last_run_by == "r2"
        assert run.last_run_at == NOW + timedelta(seconds=60)
