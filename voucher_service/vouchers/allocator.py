"""
Quota-bounded voucher allocator.

One allocation attempt is one transaction:

1. ``UPDATE events SET issued_count = issued_count + 1
   WHERE id = :id AND issued_count < max_quantity RETURNING ...``
2. insert the voucher with a freshly generated code
3. insert the notification job (transactional outbox)
4. commit

The quota check and the increment are one server-side statement, so
concurrent callers can never both pass the check on the same pre-increment
value. Anything that goes wrong after step 1 rolls the increment back with
the rest of the transaction.
"""

import logging
from collections.abc import Callable
from uuid import UUID

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voucher_service.config import Settings, get_settings
from voucher_service.constants import SPAN_ISSUE_VOUCHER, JobKind
from voucher_service.db.connection import session_scope
from voucher_service.db.event_repository import EventRepository
from voucher_service.db.models import Job
from voucher_service.db.voucher_repository import VoucherRepository
from voucher_service.errors import (
    InternalError,
    NotFound,
    QuotaExhausted,
    TransientConflict,
    VoucherServiceError,
    is_transient_conflict,
)
from voucher_service.observability.metrics import get_metrics
from voucher_service.observability.tracing import get_tracer
from voucher_service.queue.pipeline import JobQueue
from voucher_service.types.results import IssuedVoucher
from voucher_service.utils.ids import parse_uuid, require_text
from voucher_service.utils.time import Clock, utc_now
from voucher_service.vouchers.codes import generate_voucher_code

logger = logging.getLogger(__name__)


class VoucherAllocator:
    """
    Issues vouchers without ever exceeding an event's max_quantity.

    Unique-code collisions and transient store conflicts are retried with a
    fresh code, at most voucher_max_retries extra times.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        job_queue: JobQueue,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        code_generator: Callable[[], str] | None = None,
    ):
        """
        Initialize the allocator.

        Args:
            session_factory: Factory for store sessions.
            job_queue: Queue receiving the notification job.
            settings: Code format and retry budget.
            clock: Source of the current time.
            code_generator: Override for code generation.
        """
        self._session_factory = session_factory
        self._queue = job_queue
        self._settings = settings or get_settings()
        self._clock = clock
        self._generate_code = code_generator or (
            lambda: generate_voucher_code(
                self._settings.voucher_code_prefix,
                self._settings.voucher_code_length,
            )
        )
        self._metrics = get_metrics()

    async def issue(
        self,
        event_id: UUID | str,
        requester_id: str,
        email: str | None = None,
    ) -> IssuedVoucher:
        """
        Issue one voucher for an event.

        Args:
            event_id: The event identifier.
            requester_id: Who the voucher is issued to.
            email: Resolved email of the requester, carried by the
                notification job.

        Returns:
            IssuedVoucher with the new code.

        Raises:
            InvalidInput: If event_id is malformed or requester_id is blank.
            NotFound: If the event does not exist.
            QuotaExhausted: If every voucher has been issued.
            InternalError: If the retry budget is exhausted.
        """
        event_uuid = parse_uuid(event_id, "event id")
        requester_id = require_text(requester_id, "requester id")

        max_attempts = self._settings.voucher_max_retries + 1

        with get_tracer().start_as_current_span(SPAN_ISSUE_VOUCHER) as span:
            span.set_attribute("event_id", str(event_uuid))
            span.set_attribute("requester_id", requester_id)

            for attempt in range(1, max_attempts + 1):
                try:
                    issued, job = await self._attempt(event_uuid, requester_id, email)
                except IntegrityError:
                    logger.warning(
                        "Voucher code collision, retrying",
                        extra={"event_id": str(event_uuid), "attempt": attempt},
                    )
                    continue
                except (DBAPIError, TransientConflict) as e:
                    if not is_transient_conflict(e):
                        raise
                    logger.warning(
                        "Transient conflict during allocation, retrying",
                        extra={"event_id": str(event_uuid), "attempt": attempt},
                    )
                    continue
                except VoucherServiceError as e:
                    self._metrics.record_allocation(e.code.lower())
                    span.set_attribute("outcome", e.code.lower())
                    raise

                await self._queue.announce(job)
                self._metrics.record_allocation("issued")
                span.set_attribute("outcome", "issued")
                span.set_attribute("attempts", attempt)

                logger.info(
                    "Voucher issued",
                    extra={
                        "event_id": str(event_uuid),
                        "requester_id": requester_id,
                        "code": issued.code,
                        "job_id": str(job.id),
                    },
                )
                return issued

            self._metrics.record_allocation("retries_exhausted")
            span.set_attribute("outcome", "retries_exhausted")

        raise InternalError(
            f"Could not issue voucher for event {event_uuid} after {max_attempts} attempts"
        )

    async def _attempt(
        self,
        event_id: UUID,
        requester_id: str,
        email: str | None,
    ) -> tuple[IssuedVoucher, Job]:
        """Run one all-or-nothing allocation transaction."""
        now = self._clock()
        code = self._generate_code()

        async with session_scope(self._session_factory) as session:
            events = EventRepository(session)

            event = await events.increment_issued_if_available(event_id, now)
            if event is None:
                existing = await events.get_event(event_id)
                if existing is None:
                    raise NotFound("Event", event_id)
                raise QuotaExhausted(event_id, existing.max_quantity)

            voucher = await VoucherRepository(session).add_voucher(
                event_id=event_id,
                code=code,
                issued_to=requester_id,
                now=now,
            )

            job = await self._queue.enqueue_in(
                session,
                JobKind.ISSUE_AND_NOTIFY,
                {
                    "event_id": str(event_id),
                    "user_id": requester_id,
                    "voucher_code": code,
                    "email": email,
                },
            )

            issued = IssuedVoucher(
                voucher_id=voucher.id,
                event_id=event_id,
                code=code,
                issued_to=requester_id,
                issued_at=now,
                job_id=job.id,
            )

        return issued, job
