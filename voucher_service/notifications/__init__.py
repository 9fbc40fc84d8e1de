"""
Email notifications for issued vouchers.
"""

from voucher_service.notifications.email import (
    EmailMessage,
    EmailSender,
    EmailTransport,
    HttpEmailTransport,
    SmtpEmailTransport,
    build_transport,
    is_valid_email,
    render_voucher_email,
)

__all__ = [
    "EmailMessage",
    "EmailSender",
    "EmailTransport",
    "HttpEmailTransport",
    "SmtpEmailTransport",
    "build_transport",
    "is_valid_email",
    "render_voucher_email",
]
