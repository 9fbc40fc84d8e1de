"""
Job handlers registry and implementations.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes. A duplicate notification email
after a crash is an accepted risk.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voucher_service.constants import JobKind
from voucher_service.db.connection import session_scope
from voucher_service.db.voucher_repository import VoucherRepository
from voucher_service.errors import DeliveryFailure, InvalidInput
from voucher_service.notifications.email import EmailSender
from voucher_service.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)


@dataclass
class HandlerServices:
    """Collaborators available to every handler."""

    session_factory: async_sessionmaker[AsyncSession]
    email_sender: EmailSender


# Type alias for job handler functions
JobHandler = Callable[[JobContext, HandlerServices], Awaitable[JobResult]]

# Handler registry
_handlers: dict[JobKind, JobHandler] = {}


def register_handler(kind: JobKind) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Example:
        @register_handler(JobKind.EMAIL_ONLY)
        async def handle_email_only(context, services) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[kind] = handler
        return handler
    return decorator


def get_handler(kind: JobKind) -> JobHandler | None:
    return _handlers.get(kind)


def list_handlers() -> list[str]:
    """List all registered job kinds."""
    return [kind.value for kind in _handlers]


async def _confirm_voucher(context: JobContext, services: HandlerServices) -> JobResult | None:
    """Return a non-retryable failure if the payload's voucher does not exist."""
    code = context.payload.get("voucher_code")
    if not code:
        return JobResult.failed("Missing 'voucher_code' in payload", retryable=False)

    async with session_scope(services.session_factory) as session:
        voucher = await VoucherRepository(session).get_by_code(code)

    if voucher is None:
        logger.warning(
            "Voucher not found for job",
            extra={"job_id": str(context.job_id), "code": code},
        )
        return JobResult.failed(f"Voucher not found: {code}", retryable=False)
    return None


async def _deliver(context: JobContext, services: HandlerServices) -> JobResult:
    """Send the voucher email, or skip when the payload has no address."""
    email = context.payload.get("email")
    code = context.payload.get("voucher_code")

    if not email:
        logger.info(
            "No email address on job, skipping delivery",
            extra={"job_id": str(context.job_id), "code": code},
        )
        return JobResult.ok(email_sent=False, skipped="no_email", voucher_code=code)

    if not code:
        return JobResult.failed("Missing 'voucher_code' in payload", retryable=False)

    try:
        message_id = await services.email_sender.send_voucher(email, code)
    except InvalidInput as e:
        return JobResult.failed(e.message, retryable=False)
    except DeliveryFailure as e:
        return JobResult.failed(e.message)

    return JobResult.ok(email_sent=True, message_id=message_id, voucher_code=code)


@register_handler(JobKind.ISSUE_AND_NOTIFY)
async def handle_issue_and_notify(context: JobContext, services: HandlerServices) -> JobResult:
    """Confirm the issued voucher exists, then email its code."""
    missing = await _confirm_voucher(context, services)
    if missing is not None:
        return missing
    return await _deliver(context, services)


@register_handler(JobKind.PROCESS_ONLY)
async def handle_process_only(context: JobContext, services: HandlerServices) -> JobResult:
    """Confirm the issued voucher exists without sending anything."""
    missing = await _confirm_voucher(context, services)
    if missing is not None:
        return missing
    return JobResult.ok(
        email_sent=False,
        voucher_code=context.payload.get("voucher_code"),
    )


@register_handler(JobKind.EMAIL_ONLY)
async def handle_email_only(context: JobContext, services: HandlerServices) -> JobResult:
    """Email a voucher code."""
    return await _deliver(context, services)


async def execute_job(context: JobContext, services: HandlerServices) -> JobResult:
    """
    Execute a job using the appropriate handler.

    Args:
        context: The job context.
        services: Handler collaborators.

    Returns:
        JobResult from the handler. Unexpected exceptions become retryable
        failures.
    """
    handler = get_handler(context.kind)

    if handler is None:
        logger.error(
            f"No handler for job kind: {context.kind}",
            extra={"job_id": str(context.job_id)},
        )
        return JobResult.failed(
            f"No handler registered for job kind: {context.kind}",
            retryable=False,
        )

    try:
        return await handler(context, services)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)},
        )
        return JobResult.failed(f"Handler exception: {e}")
