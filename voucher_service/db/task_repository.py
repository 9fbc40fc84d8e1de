"""
Recurring task run markers.

A replica may run a recurring task only after it moves the task's
last_run_at forward with a conditional update, so replicas sharing a
database never run the same due task twice.
"""

from datetime import datetime, timedelta

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_service.db.models import RecurringTaskRun


class RecurringTaskRepository:
    """Repository for recurring task run claims."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def claim_run(
        self,
        name: str,
        interval_seconds: float,
        now: datetime,
        runner_id: str,
    ) -> bool:
        """
        Claim the right to run a task now.

        Returns:
            True if the caller should run the task.

        Raises:
            IntegrityError: If another replica created the marker first.
        """
        due_before = now - timedelta(seconds=interval_seconds)
        stmt = (
            update(RecurringTaskRun)
            .where(
                and_(
                    RecurringTaskRun.name == name,
                    RecurringTaskRun.last_run_at <= due_before,
                )
            )
            .values(
                last_run_at=now,
                last_run_by=runner_id,
                interval_seconds=interval_seconds,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount > 0:
            return True

        existing = await self._session.execute(
            select(RecurringTaskRun.name).where(RecurringTaskRun.name == name)
        )
        if existing.scalar_one_or_none() is not None:
            return False

        self._session.add(
            RecurringTaskRun(
                name=name,
                interval_seconds=interval_seconds,
                last_run_at=now,
                last_run_by=runner_id,
            )
        )
        await self._session.flush()
        return True

    async def get_run(self, name: str) -> RecurringTaskRun | None:
        stmt = (
            select(RecurringTaskRun)
            .where(RecurringTaskRun.name == name)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()
