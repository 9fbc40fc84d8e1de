"""
Unit tests for job handlers.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from voucher_service.config import Settings
from voucher_service.constants import JobKind
from voucher_service.notifications.email import EmailSender
from voucher_service.types.job import JobContext, JobResult
from voucher_service.worker import handlers
from voucher_service.worker.handlers import (
    HandlerServices,
    execute_job,
    get_handler,
    handle_email_only,
    handle_issue_and_notify,
    list_handlers,
)


class TestJobHandlers:
    """Tests for job handlers that need no store access."""

    @pytest.fixture
    def transport(self, make_transport):
        return make_transport()

    @pytest.fixture
    def services(self, transport, test_settings: Settings) -> HandlerServices:
        return HandlerServices(
            session_factory=None,
            email_sender=EmailSender(transport, test_settings),
        )

    def make_context(self, kind: JobKind = JobKind.EMAIL_ONLY, **payload) -> JobContext:
        """Create a test job context."""
        return JobContext(
            job_id=uuid4(),
            kind=kind,
            attempt=1,
            max_attempts=3,
            payload={"voucher_code": "VC-ABCDEFGHI", **payload},
            lease_owner="test-worker",
            lease_expires_at=datetime(2026, 1, 1) + timedelta(seconds=30),
        )

    def test_list_handlers(self):
        """Every job kind has a handler."""
        assert set(list_handlers()) == {kind.value for kind in JobKind}

    def test_get_handler(self):
        assert get_handler(JobKind.ISSUE_AND_NOTIFY) is handle_issue_and_notify
        assert get_handler(JobKind.EMAIL_ONLY) is handle_email_only

    @pytest.mark.asyncio
    async def test_email_only_sends(self, services: HandlerServices, transport):
        result = await handle_email_only(self.make_context(email="user@example.com"), services)

        assert result.success is True
        assert result.output["email_sent"] is True
        assert len(transport.sent) == 1
        assert "VC-ABCDEFGHI" in transport.sent[0].text

    @pytest.mark.asyncio
    async def test_missing_email_is_skipped(self, services: HandlerServices, transport):
        """No address is a no-op outcome, not a failure."""
        result = await handle_email_only(self.make_context(email=None), services)

        assert result.success is True
        assert result.output == {
            "email_sent": False,
            "skipped": "no_email",
            "voucher_code": "VC-ABCDEFGHI",
        }
        assert transport.calls == 0

    @pytest.mark.asyncio
    async def test_invalid_email_is_not_retryable(self, services: HandlerServices):
        result = await handle_email_only(self.make_context(email="nope"), services)

        assert result.success is False
        assert result.retryable is False

    @pytest.mark.asyncio
    async def test_delivery_failure_is_retryable(self, make_transport, test_settings: Settings):
        services = HandlerServices(
            session_factory=None,
            email_sender=EmailSender(make_transport(failures=99), test_settings),
        )

        result = await handle_email_only(self.make_context(email="user@example.com"), services)

        assert result.success is False
        assert result.retryable is True
        assert "failed after 3 attempts" in result.error

    @pytest.mark.asyncio
    async def test_execute_job_dispatches_by_kind(self, services: HandlerServices):
        result = await execute_job(self.make_context(email=None), services)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_execute_job_handler_exception(self, services: HandlerServices, monkeypatch):
        """A crashing handler becomes a retryable failure."""

        async def crash(context: JobContext, services: HandlerServices) -> JobResult:
            raise RuntimeError("kaboom")

        monkeypatch.setitem(handlers._handlers, JobKind.EMAIL_ONLY, crash)

        result = await execute_job(self.make_context(), services)

        assert result.success is False
        assert result.retryable is True
        assert "kaboom" in result.error

    @pytest.mark.asyncio
    async def test_execute_job_without_handler(self, services: HandlerServices, monkeypatch):
        monkeypatch.delitem(handlers._handlers, JobKind.PROCESS_ONLY)

        result = await execute_job(self.make_context(JobKind.PROCESS_ONLY), services)

        assert result.success is False
        assert result.retryable is False

    def test_is_last_attempt(self):
        context = self.make_context()
        assert context.is_last_attempt is False

        context.attempt = context.max_attempts
        assert context.is_last_attempt is True
