"""
Maintenance module.
Recurring tasks: lease reaper, store health probe, stalled job recovery,
queue stats and job retention sweep.
"""

from voucher_service.maintenance.scheduler import (
    RecurringTask,
    Scheduler,
    build_default_tasks,
)

__all__ = ["RecurringTask", "Scheduler", "build_default_tasks"]
