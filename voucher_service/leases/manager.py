"""
Lease-based edit lock for events.

A lease is active iff editing_by is set and edit_lock_at is in the future.
Acquire, renew and release are each one conditional UPDATE. When the update
matches no row, a follow-up read only classifies why; if the read disagrees
with the refusal (the row changed in between), the operation is retried.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voucher_service.config import Settings, get_settings
from voucher_service.constants import SPAN_LEASE_OPERATION, LeaseOutcome
from voucher_service.db.connection import session_scope
from voucher_service.db.event_repository import EventRepository
from voucher_service.errors import (
    InternalError,
    LeaseInvalid,
    LockConflict,
    NotFound,
    NotHolder,
    TransientConflict,
    VoucherServiceError,
    is_transient_conflict,
)
from voucher_service.observability.metrics import get_metrics
from voucher_service.observability.tracing import get_tracer
from voucher_service.types.results import LeaseResult, LeaseStatus
from voucher_service.utils.ids import parse_uuid, require_text
from voucher_service.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)

# Returned by an attempt whose refusal was contradicted by the follow-up read
_RETRY = None

LeaseAttempt = Callable[[EventRepository, datetime], Awaitable[LeaseResult | None]]


class EditLeaseManager:
    """
    Grants, renews and releases the single-holder edit lease of an event.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        clock: Clock = utc_now,
    ):
        """
        Initialize the lease manager.

        Args:
            session_factory: Factory for store sessions.
            settings: Lease TTL and retry budget.
            clock: Source of the current time.
        """
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._clock = clock
        self._metrics = get_metrics()

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self._settings.edit_lock_ttl_seconds)

    async def acquire(self, event_id: UUID | str, user_id: str) -> LeaseResult:
        """
        Acquire the edit lease.

        Re-acquiring a live lease already held by user_id succeeds with
        ALREADY_HELD and leaves the expiry unchanged.

        Raises:
            InvalidInput: Malformed event id or blank user id.
            NotFound: The event does not exist.
            LockConflict: Another user holds a live lease.
        """
        event_uuid = parse_uuid(event_id, "event id")
        user_id = require_text(user_id, "user id")

        async def attempt(repo: EventRepository, now: datetime) -> LeaseResult | None:
            lock_until = now + self.ttl
            event = await repo.acquire_edit_lease(event_uuid, user_id, now, lock_until)
            if event is not None:
                return LeaseResult(
                    event_id=event_uuid,
                    user_id=user_id,
                    outcome=LeaseOutcome.GRANTED,
                    lock_until=event.edit_lock_at,
                )

            current = await repo.get_event(event_uuid)
            if current is None:
                raise NotFound("Event", event_uuid)
            if not current.lease_active(now):
                return _RETRY
            if current.editing_by == user_id:
                return LeaseResult(
                    event_id=event_uuid,
                    user_id=user_id,
                    outcome=LeaseOutcome.ALREADY_HELD,
                    lock_until=current.edit_lock_at,
                )
            raise LockConflict(event_uuid, current.editing_by)

        return await self._run("acquire", event_uuid, user_id, attempt)

    async def release(self, event_id: UUID | str, user_id: str) -> LeaseResult:
        """
        Release the edit lease. Only the recorded holder may release it,
        whether or not the lease has expired.

        Raises:
            InvalidInput: Malformed event id or blank user id.
            NotFound: The event does not exist.
            NotHolder: user_id is not the recorded holder.
        """
        event_uuid = parse_uuid(event_id, "event id")
        user_id = require_text(user_id, "user id")

        async def attempt(repo: EventRepository, now: datetime) -> LeaseResult | None:
            event = await repo.release_edit_lease(event_uuid, user_id, now)
            if event is not None:
                return LeaseResult(
                    event_id=event_uuid,
                    user_id=user_id,
                    outcome=LeaseOutcome.RELEASED,
                )

            current = await repo.get_event(event_uuid)
            if current is None:
                raise NotFound("Event", event_uuid)
            if current.editing_by == user_id:
                return _RETRY
            raise NotHolder(event_uuid, user_id)

        return await self._run("release", event_uuid, user_id, attempt)

    async def renew(self, event_id: UUID | str, user_id: str) -> LeaseResult:
        """
        Extend a live lease held by user_id to now + TTL.

        Raises:
            InvalidInput: Malformed event id or blank user id.
            NotFound: The event does not exist.
            LeaseInvalid: The lease expired or is held by someone else.
        """
        event_uuid = parse_uuid(event_id, "event id")
        user_id = require_text(user_id, "user id")

        async def attempt(repo: EventRepository, now: datetime) -> LeaseResult | None:
            lock_until = now + self.ttl
            event = await repo.renew_edit_lease(event_uuid, user_id, now, lock_until)
            if event is not None:
                return LeaseResult(
                    event_id=event_uuid,
                    user_id=user_id,
                    outcome=LeaseOutcome.RENEWED,
                    lock_until=event.edit_lock_at,
                )

            current = await repo.get_event(event_uuid)
            if current is None:
                raise NotFound("Event", event_uuid)
            if current.editing_by == user_id and current.lease_active(now):
                return _RETRY
            raise LeaseInvalid(event_uuid, user_id)

        return await self._run("renew", event_uuid, user_id, attempt)

    async def status(self, event_id: UUID | str) -> LeaseStatus:
        """
        Read-only view of the lease.

        Raises:
            NotFound: The event does not exist.
        """
        event_uuid = parse_uuid(event_id, "event id")
        now = self._clock()

        async with session_scope(self._session_factory) as session:
            event = await EventRepository(session).get_event(event_uuid)

        if event is None:
            raise NotFound("Event", event_uuid)

        active = event.lease_active(now)
        return LeaseStatus(
            event_id=event_uuid,
            holder=event.editing_by if active else None,
            lock_until=event.edit_lock_at if active else None,
            active=active,
        )

    async def _run(
        self,
        operation: str,
        event_id: UUID,
        user_id: str,
        attempt: LeaseAttempt,
    ) -> LeaseResult:
        """Run a lease attempt in its own transaction, retrying contradicted refusals."""
        max_attempts = self._settings.lease_max_retries + 1

        with get_tracer().start_as_current_span(SPAN_LEASE_OPERATION) as span:
            span.set_attribute("operation", operation)
            span.set_attribute("event_id", str(event_id))
            span.set_attribute("user_id", user_id)

            for attempt_no in range(1, max_attempts + 1):
                try:
                    async with session_scope(self._session_factory) as session:
                        result = await attempt(EventRepository(session), self._clock())
                except (DBAPIError, TransientConflict) as e:
                    if not is_transient_conflict(e):
                        raise
                    logger.warning(
                        f"Transient conflict during lease {operation}, retrying",
                        extra={"event_id": str(event_id), "attempt": attempt_no},
                    )
                    continue
                except VoucherServiceError as e:
                    self._metrics.record_lease_operation(operation, e.code.lower())
                    span.set_attribute("outcome", e.code.lower())
                    logger.info(
                        f"Edit lease {operation} refused",
                        extra={
                            "event_id": str(event_id),
                            "user_id": user_id,
                            "reason": e.code,
                        },
                    )
                    raise

                if result is _RETRY:
                    logger.debug(
                        f"Lease {operation} refusal contradicted by re-read, retrying",
                        extra={"event_id": str(event_id), "attempt": attempt_no},
                    )
                    continue

                self._metrics.record_lease_operation(operation, result.outcome.value)
                span.set_attribute("outcome", result.outcome.value)
                logger.info(
                    f"Edit lease {operation}",
                    extra={
                        "event_id": str(event_id),
                        "user_id": user_id,
                        "outcome": result.outcome.value,
                        "lock_until": result.lock_until.isoformat() if result.lock_until else None,
                    },
                )
                return result

            self._metrics.record_lease_operation(operation, "retries_exhausted")

        raise InternalError(
            f"Edit lease {operation} on event {event_id} did not settle after {max_attempts} attempts"
        )
