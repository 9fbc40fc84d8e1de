"""
Voucher notification email delivery.

Delivery goes through a pluggable EmailTransport. EmailSender wraps the
transport with a short local retry, separate from the job pipeline's own
retry: only when every local attempt fails is DeliveryFailure raised, which
fails the job attempt.
"""

import asyncio
import logging
import re
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Protocol

import httpx

from voucher_service.config import Settings, get_settings
from voucher_service.constants import SPAN_SEND_EMAIL
from voucher_service.errors import DeliveryFailure, InvalidInput
from voucher_service.observability.metrics import get_metrics
from voucher_service.observability.tracing import get_tracer

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

VOUCHER_SUBJECT = "Your Voucher Code is Here!"


def is_valid_email(address: str | None) -> bool:
    return bool(address) and EMAIL_PATTERN.match(address) is not None


@dataclass(frozen=True)
class EmailMessage:
    """A rendered email ready for a transport."""

    to: str
    subject: str
    text: str
    html: str
    sender: str


def render_voucher_email(to: str, code: str, sender: str) -> EmailMessage:
    """Render the voucher notification as plain text and HTML."""
    text = (
        "Congratulations!\n\n"
        f"Your voucher code is: {code}\n\n"
        "Present this code to redeem your voucher.\n"
        "This is an automated email. Please do not reply."
    )
    html = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="text-align: center;">Congratulations!</h2>
        <p style="text-align: center;">Your voucher code:</p>
        <p style="text-align: center; font-size: 24px; font-weight: bold;
                  border: 2px dashed #3498db; padding: 15px;">{code}</p>
        <p style="text-align: center; color: #95a5a6; font-size: 12px;">
            This is an automated email. Please do not reply.
        </p>
    </div>
    """
    return EmailMessage(to=to, subject=VOUCHER_SUBJECT, text=text, html=html, sender=sender)


class EmailTransport(Protocol):
    """Anything that can hand a message to a mail system."""

    async def send(self, message: EmailMessage) -> str:
        """Send the message and return a provider message id."""
        ...


class SmtpEmailTransport:
    """SMTP delivery using the standard library client in a worker thread."""

    def __init__(self, settings: Settings):
        self.host = settings.email_host
        self.port = settings.email_port
        self.use_tls = settings.email_use_tls
        self.username = settings.email_username
        self.password = settings.email_password
        self.timeout = settings.email_timeout_seconds

    def _build(self, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = message.sender
        msg["To"] = message.to
        msg["Message-ID"] = make_msgid()
        msg.attach(MIMEText(message.text, "plain"))
        msg.attach(MIMEText(message.html, "html"))
        return msg

    def _send_sync(self, message: EmailMessage) -> str:
        msg = self._build(message)
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)
        return msg["Message-ID"]

    async def send(self, message: EmailMessage) -> str:
        return await asyncio.to_thread(self._send_sync, message)


class HttpEmailTransport:
    """Delivery through a JSON HTTP mail API."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        if not settings.email_api_url:
            raise ValueError("email_api_url is required for the http email transport")
        self.url = settings.email_api_url
        self.api_key = settings.email_api_key
        self.timeout = settings.email_timeout_seconds
        self._client = client

    async def send(self, message: EmailMessage) -> str:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        body = {
            "from": message.sender,
            "to": [message.to],
            "subject": message.subject,
            "text": message.text,
            "html": message.html,
        }

        if self._client is not None:
            response = await self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.url, json=body, headers=headers, timeout=self.timeout)

        response.raise_for_status()
        try:
            data = response.json()
        except ValueError:
            data = {}
        return str(data.get("id", "")) if isinstance(data, dict) else ""


def build_transport(settings: Settings | None = None) -> EmailTransport:
    """Create the transport selected by email_transport."""
    settings = settings or get_settings()
    if settings.email_transport == "http":
        return HttpEmailTransport(settings)
    return SmtpEmailTransport(settings)


# Errors a transport may raise that are worth another local attempt
RETRYABLE_DELIVERY_ERRORS = (smtplib.SMTPException, OSError, httpx.HTTPError)


class EmailSender:
    """
    Sends voucher emails with bounded local retry.

    Args:
        transport: Delivery backend.
        settings: Sender address, attempt count and retry delay.
    """

    def __init__(self, transport: EmailTransport, settings: Settings | None = None):
        self._transport = transport
        self._settings = settings or get_settings()
        self._metrics = get_metrics()

    async def send_voucher(self, to: str, code: str) -> str:
        """
        Deliver a voucher code.

        Returns:
            The transport's message id.

        Raises:
            InvalidInput: If the address is malformed (not worth retrying).
            DeliveryFailure: If every local attempt failed.
        """
        if not is_valid_email(to):
            logger.warning("Invalid email format", extra={"email": to})
            self._metrics.record_email("invalid_address")
            raise InvalidInput(f"Invalid email format: {to}")

        message = render_voucher_email(to, code, self._settings.email_from)
        attempts = max(1, self._settings.email_send_attempts)
        last_error = ""

        with get_tracer().start_as_current_span(SPAN_SEND_EMAIL) as span:
            span.set_attribute("email.to", to)

            for attempt in range(1, attempts + 1):
                try:
                    message_id = await self._transport.send(message)
                except RETRYABLE_DELIVERY_ERRORS as e:
                    last_error = str(e) or e.__class__.__name__
                    logger.warning(
                        f"Email send attempt {attempt}/{attempts} failed: {last_error}",
                        extra={"email": to, "attempt": attempt},
                    )
                    if attempt < attempts:
                        await asyncio.sleep(self._settings.email_retry_delay_seconds)
                    continue

                self._metrics.record_email("sent")
                span.set_attribute("email.attempts", attempt)
                logger.info(
                    "Email sent",
                    extra={"email": to, "message_id": message_id, "attempt": attempt},
                )
                return message_id

            self._metrics.record_email("failed")
            span.set_attribute("email.attempts", attempts)

        raise DeliveryFailure(to, attempts, last_error)
