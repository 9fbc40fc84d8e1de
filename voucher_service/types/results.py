"""
Result types returned by the allocator, the edit lease manager and the
maintenance tasks.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel

from voucher_service.constants import LeaseOutcome


class IssuedVoucher(BaseModel):
    """A voucher handed out by the allocator."""

    voucher_id: UUID
    event_id: UUID
    code: str
    issued_to: str
    issued_at: datetime
    job_id: UUID | None = None

    model_config = {"from_attributes": True}


class VoucherView(BaseModel):
    """Read view of a stored voucher."""

    id: UUID
    event_id: UUID
    code: str
    issued_to: str
    is_used: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class LeaseResult(BaseModel):
    """Outcome of a successful edit lease operation."""

    event_id: UUID
    user_id: str
    outcome: LeaseOutcome
    lock_until: datetime | None = None


class LeaseStatus(BaseModel):
    """Read-only view of an event's edit lease."""

    event_id: UUID
    holder: str | None
    lock_until: datetime | None
    active: bool


class HealthStatus(BaseModel):
    """Outcome of a store health probe."""

    healthy: bool
    checked_at: datetime
    latency_ms: float
    error: str | None = None
