"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from voucher_service.config import Settings
from voucher_service.db.connection import get_test_engine, make_session_factory, session_scope
from voucher_service.db.event_repository import EventRepository
from voucher_service.db.models import Base
from voucher_service.notifications.email import EmailMessage
from voucher_service.queue.events import JobEventBus
from voucher_service.queue.pipeline import JobQueue
from voucher_service.types.events import JobEvent

# Set TEST_DATABASE_URL to run against PostgreSQL; defaults to a SQLite file per test
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

START_TIME = datetime(2026, 1, 1, 12, 0, 0)


class FakeClock:
    """Controllable clock for lease and backoff tests."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeEmailTransport:
    """In-memory transport that can be told to fail the next N sends."""

    def __init__(self, failures: int = 0, error: Exception | None = None):
        self.sent: list[EmailMessage] = []
        self.calls = 0
        self.failures = failures
        self.error = error or ConnectionRefusedError("smtp unavailable")

    async def send(self, message: EmailMessage) -> str:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        self.sent.append(message)
        return f"msg-{len(self.sent)}"


class EventRecorder:
    """Job event subscriber that keeps everything it receives."""

    def __init__(self):
        self.events: list[JobEvent] = []

    def __call__(self, event: JobEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.event_type for event in self.events]


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'vouchers.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an engine with a freshly created schema."""
    engine = get_test_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(async_engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        log_level="DEBUG",
        log_format="console",
        voucher_max_retries=3,
        edit_lock_ttl_seconds=300,
        job_max_attempts=3,
        job_backoff_type="exponential",
        job_backoff_delay_ms=2000,
        job_backoff_factor=2.0,
        job_retention_hours=24,
        worker_id="test-worker",
        worker_lease_duration_seconds=30,
        worker_poll_interval_seconds=0.01,
        worker_batch_size=10,
        email_send_attempts=3,
        email_retry_delay_seconds=0,
    )


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def job_queue(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    clock: FakeClock,
    recorder: EventRecorder,
) -> JobQueue:
    bus = JobEventBus()
    bus.subscribe(recorder)
    return JobQueue(session_factory, test_settings, event_bus=bus, clock=clock)


@pytest.fixture
def email_transport() -> FakeEmailTransport:
    return FakeEmailTransport()


@pytest.fixture
def make_event(session_factory: async_sessionmaker[AsyncSession], clock: FakeClock):
    """Factory fixture creating an event and returning its id."""

    async def _make_event(max_quantity: int = 10, name: str = "Launch Party") -> UUID:
        async with session_scope(session_factory) as session:
            event = await EventRepository(session).create_event(
                name=name,
                max_quantity=max_quantity,
                now=clock(),
            )
        return event.id

    return _make_event


@pytest.fixture
def load_event(session_factory: async_sessionmaker[AsyncSession]):
    """Factory fixture reading an event straight from the store."""

    async def _load_event(event_id: UUID):
        async with session_scope(session_factory) as session:
            return await EventRepository(session).get_event(event_id)

    return _load_event


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    """Create a database session for repository tests."""
    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def make_transport():
    """Factory fixture for in-memory email transports."""
    return FakeEmailTransport
