"""
Database module.
Contains database connection, models, and repository implementations.
"""

from voucher_service.db.connection import (
    close_db,
    get_engine,
    init_db,
    make_session_factory,
    ping,
    session_scope,
)
from voucher_service.db.models import Base, Event, Job, RecurringTaskRun, Voucher

__all__ = [
    "get_engine",
    "init_db",
    "close_db",
    "make_session_factory",
    "session_scope",
    "ping",
    "Base",
    "Event",
    "Voucher",
    "Job",
    "RecurringTaskRun",
]
