"""
Error taxonomy for voucher allocation, edit leases and the job pipeline.

Decisions (quota exhausted, lease refused, not found) propagate unchanged to
callers. Transient store conflicts are absorbed by bounded internal retry and
only surface as InternalError once the retry budget is spent.
"""

from sqlalchemy.exc import DBAPIError, IntegrityError

from voucher_service.constants import QUOTA_EXHAUSTED_STATUS

# SQLSTATE codes for serialization failure and deadlock
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


class VoucherServiceError(Exception):
    """Base error for voucher service operations."""

    status_code: int = 500

    def __init__(self, message: str, code: str = "VOUCHER_SERVICE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class InvalidInput(VoucherServiceError):
    """Malformed identifier or argument."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, "INVALID_INPUT")


class NotFound(VoucherServiceError):
    """Referenced record does not exist."""

    status_code = 404

    def __init__(self, resource: str, identifier: object):
        super().__init__(f"{resource} not found: {identifier}", "NOT_FOUND")
        self.resource = resource
        self.identifier = identifier


class QuotaExhausted(VoucherServiceError):
    """The event has no vouchers left to issue."""

    status_code = QUOTA_EXHAUSTED_STATUS

    def __init__(self, event_id: object, max_quantity: int):
        super().__init__(
            f"Voucher has been exhausted for event {event_id} (limit: {max_quantity})",
            "QUOTA_EXHAUSTED",
        )
        self.event_id = event_id
        self.max_quantity = max_quantity


class LockConflict(VoucherServiceError):
    """Event is being edited by another user."""

    status_code = 409

    def __init__(self, event_id: object, holder: str | None):
        super().__init__(
            f"Event {event_id} is being edited by another user",
            "LOCK_CONFLICT",
        )
        self.event_id = event_id
        self.holder = holder


class NotHolder(VoucherServiceError):
    """Caller does not hold the edit lease."""

    status_code = 403

    def __init__(self, event_id: object, user_id: str):
        super().__init__(
            f"User {user_id} is not the editing user of event {event_id}",
            "NOT_HOLDER",
        )
        self.event_id = event_id
        self.user_id = user_id


class LeaseInvalid(VoucherServiceError):
    """Edit lease is not held by the caller or has expired."""

    status_code = 409

    def __init__(self, event_id: object, user_id: str):
        super().__init__(
            f"Edit lock not valid or expired for event {event_id}",
            "LEASE_INVALID",
        )
        self.event_id = event_id
        self.user_id = user_id


class AlreadyRedeemed(VoucherServiceError):
    """Voucher has already been used."""

    status_code = 409

    def __init__(self, voucher: object):
        super().__init__(f"Voucher already used: {voucher}", "ALREADY_REDEEMED")
        self.voucher = voucher


class TransientConflict(VoucherServiceError):
    """Write conflict detected by the store; the operation may be retried."""

    def __init__(self, message: str = "Concurrent write conflict"):
        super().__init__(message, "TRANSIENT_CONFLICT")


class InternalError(VoucherServiceError):
    """Retry budget exhausted or unexpected store state."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message, "INTERNAL_ERROR")


class JobNotFound(VoucherServiceError):
    """Job does not exist or is not in the requested state."""

    status_code = 404

    def __init__(self, job_id: object):
        super().__init__(f"Job not found: {job_id}", "JOB_NOT_FOUND")
        self.job_id = job_id


class DeliveryFailure(VoucherServiceError):
    """Email delivery failed after local retries."""

    def __init__(self, recipient: str, attempts: int, reason: str):
        super().__init__(
            f"Email delivery to {recipient} failed after {attempts} attempts: {reason}",
            "DELIVERY_FAILURE",
        )
        self.recipient = recipient
        self.attempts = attempts
        self.reason = reason


def is_transient_conflict(exc: BaseException) -> bool:
    """
    Check whether a database error is a retryable write conflict.

    Covers PostgreSQL serialization failures and deadlocks, and SQLite
    lock timeouts. Integrity errors are never transient here; callers that
    treat a unique violation as retryable handle it explicitly.
    """
    if isinstance(exc, TransientConflict):
        return True
    if not isinstance(exc, DBAPIError) or isinstance(exc, IntegrityError):
        return False

    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig).lower()
