"""Time utilities."""

from collections.abc import Callable
from datetime import datetime, timezone

# Injectable source of "now" for services and recurring tasks
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """
    Return the current UTC time as a naive datetime.

    All stored timestamps are naive UTC so comparisons behave the same on
    PostgreSQL and SQLite.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)
