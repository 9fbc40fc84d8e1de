"""
Unit tests for voucher email delivery.
"""

import httpx
import pytest

from voucher_service.config import Settings
from voucher_service.errors import DeliveryFailure, InvalidInput
from voucher_service.notifications.email import (
    VOUCHER_SUBJECT,
    EmailSender,
    HttpEmailTransport,
    SmtpEmailTransport,
    build_transport,
    is_valid_email,
    render_voucher_email,
)


class TestEmailValidation:
    """Tests for is_valid_email."""

    @pytest.mark.parametrize("address", ["a@b.co", "first.last@example.com"])
    def test_valid(self, address: str):
        assert is_valid_email(address)

    @pytest.mark.parametrize("address", ["", None, "no-at-sign", "a@b", "a b@c.com", "@c.com"])
    def test_invalid(self, address):
        assert not is_valid_email(address)


class TestRendering:
    def test_voucher_email_contains_code(self):
        message = render_voucher_email("a@b.co", "VC-ABC123XYZ", "no-reply@x.com")

        assert message.subject == VOUCHER_SUBJECT
        assert "VC-ABC123XYZ" in message.text
        assert "VC-ABC123XYZ" in message.html
        assert message.to == "a@b.co"


class TestEmailSender:
    """Tests for local delivery retry."""

    @pytest.fixture
    def settings(self, test_settings: Settings) -> Settings:
        return test_settings

    @pytest.mark.asyncio
    async def test_sends_once_on_success(self, settings: Settings, make_transport):
        transport = make_transport()
        sender = EmailSender(transport, settings)

        message_id = await sender.send_voucher("user@example.com", "VC-123456789")

        assert message_id == "msg-1"
        assert transport.calls == 1
        assert transport.sent[0].to == "user@example.com"

    @pytest.mark.asyncio
    async def test_retries_transient_transport_errors(self, settings: Settings, make_transport):
        """Two failures then success stays within the 3 local attempts."""
        transport = make_transport(failures=2)
        sender = EmailSender(transport, settings)

        await sender.send_voucher("user@example.com", "VC-123456789")

        assert transport.calls == 3
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_raises_delivery_failure_when_exhausted(self, settings: Settings, make_transport):
        transport = make_transport(failures=10)
        sender = EmailSender(transport, settings)

        with pytest.raises(DeliveryFailure) as exc_info:
            await sender.send_voucher("user@example.com", "VC-123456789")

        assert transport.calls == settings.email_send_attempts
        assert exc_info.value.attempts == settings.email_send_attempts
        assert "smtp unavailable" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_invalid_address_is_not_sent(self, settings: Settings, make_transport):
        transport = make_transport()
        sender = EmailSender(transport, settings)

        with pytest.raises(InvalidInput):
            await sender.send_voucher("not-an-email", "VC-123456789")

        assert transport.calls == 0

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, settings: Settings, make_transport):
        """Only delivery errors are retried locally."""
        transport = make_transport(failures=1, error=RuntimeError("bug"))
        sender = EmailSender(transport, settings)

        with pytest.raises(RuntimeError):
            await sender.send_voucher("user@example.com", "VC-123456789")

        assert transport.calls == 1


class TestHttpTransport:
    """Tests for the HTTP mail API transport."""

    @pytest.fixture
    def settings(self) -> Settings:
        return Settings(
            email_transport="http",
            email_api_url="https://mail.example.com/send",
            email_api_key="secret",
        )

    @pytest.mark.asyncio
    async def test_posts_message(self, settings: Settings):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers.get("Authorization")
            captured["body"] = request.read()
            return httpx.Response(200, json={"id": "abc"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpEmailTransport(settings, client=client)
            message_id = await transport.send(
                render_voucher_email("a@b.co", "VC-1", "no-reply@x.com")
            )

        assert message_id == "abc"
        assert captured["auth"] == "Bearer secret"
        assert b"VC-1" in captured["body"]

    @pytest.mark.asyncio
    async def test_server_error_is_retryable_delivery_error(self, settings: Settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = HttpEmailTransport(settings, client=client)
            sender = EmailSender(transport, settings.model_copy(update={"email_retry_delay_seconds": 0}))

            with pytest.raises(DeliveryFailure):
                await sender.send_voucher("a@b.co", "VC-1")

    def test_requires_api_url(self):
        with pytest.raises(ValueError):
            HttpEmailTransport(Settings(email_transport="http", email_api_url=None))


class TestBuildTransport:
    def test_smtp_by_default(self):
        assert isinstance(build_transport(Settings(email_transport="smtp")), SmtpEmailTransport)

    def test_http(self):
        settings = Settings(email_transport="http", email_api_url="https://mail.example.com")
        assert isinstance(build_transport(settings), HttpEmailTransport)
