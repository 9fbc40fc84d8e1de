"""
Type definitions for the voucher service.
Contains input/output type definitions for all functions, grouped by module.
"""

from voucher_service.types.events import JobEvent
from voucher_service.types.job import (
    JobContext,
    JobHandle,
    JobOptions,
    JobResult,
)
from voucher_service.types.results import (
    HealthStatus,
    IssuedVoucher,
    LeaseResult,
    LeaseStatus,
    VoucherView,
)

__all__ = [
    # Job types
    "JobOptions",
    "JobHandle",
    "JobResult",
    "JobContext",
    # Event types
    "JobEvent",
    # Result types
    "IssuedVoucher",
    "VoucherView",
    "LeaseResult",
    "LeaseStatus",
    "HealthStatus",
]
