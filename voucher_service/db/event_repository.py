"""
Event repository.

Every write to the shared counters (issued_count) and the edit lease fields
(editing_by, edit_lock_at) is a single conditional UPDATE carrying both the
predicate and the mutation, so concurrent callers are serialized by the
store rather than by application code.
"""

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_service.db.models import Event

logger = logging.getLogger(__name__)


class EventRepository:
    """Repository for event reads and conditional updates."""

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_event(
        self,
        name: str,
        max_quantity: int,
        description: str = "",
        now: datetime | None = None,
    ) -> Event:
        """
        Create an event. Event management proper lives outside this service;
        this exists for seeding and tests.
        """
        values = {
            "name": name,
            "description": description,
            "max_quantity": max_quantity,
            "issued_count": 0,
        }
        if now is not None:
            values.update(created_at=now, updated_at=now)

        event = Event(**values)
        self._session.add(event)
        await self._session.flush()
        return event

    async def get_event(self, event_id: UUID) -> Event | None:
        """
        Get an event by ID, always reading the stored row.

        Args:
            event_id: The event UUID.

        Returns:
            The Event or None if not found.
        """
        stmt = (
            select(Event)
            .where(Event.id == event_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def increment_issued_if_available(
        self,
        event_id: UUID,
        now: datetime,
    ) -> Event | None:
        """
        Take one unit of quota.

        UPDATE events SET issued_count = issued_count + 1
        WHERE id = :id AND issued_count < max_quantity

        Returns:
            The updated Event, or None if the event is missing or exhausted.
        """
        stmt = (
            update(Event)
            .where(
                and_(
                    Event.id == event_id,
                    Event.issued_count < Event.max_quantity,
                )
            )
            .values(
                issued_count=Event.issued_count + 1,
                updated_at=now,
            )
            .returning(Event)
            .execution_options(populate_existing=True)
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def acquire_edit_lease(
        self,
        event_id: UUID,
        user_id: str,
        now: datetime,
        lock_until: datetime,
    ) -> Event | None:
        """
        Grant the edit lease if nobody holds a live one.

        Returns:
            The updated Event, or None if the event is missing or a live
            lease exists.
        """
        stmt = (
            update(Event)
            .where(
                and_(
                    Event.id == event_id,
                    or_(
                        Event.editing_by.is_(None),
                        Event.edit_lock_at.is_(None),
                        Event.edit_lock_at <= now,
                    ),
                )
            )
            .values(
                editing_by=user_id,
                edit_lock_at=lock_until,
                updated_at=now,
            )
            .returning(Event)
            .execution_options(populate_existing=True)
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def renew_edit_lease(
        self,
        event_id: UUID,
        user_id: str,
        now: datetime,
        lock_until: datetime,
    ) -> Event | None:
        """
        Extend a live lease held by user_id.

        Returns:
            The updated Event, or None if the caller does not hold a live
            lease (or the event is missing).
        """
        stmt = (
            update(Event)
            .where(
                and_(
                    Event.id == event_id,
                    Event.editing_by == user_id,
                    Event.edit_lock_at > now,
                )
            )
            .values(
                edit_lock_at=lock_until,
                updated_at=now,
            )
            .returning(Event)
            .execution_options(populate_existing=True)
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def release_edit_lease(
        self,
        event_id: UUID,
        user_id: str,
        now: datetime,
    ) -> Event | None:
        """
        Clear the lease if user_id is the recorded holder, expired or not.

        Returns:
            The updated Event, or None if the caller is not the holder (or the
            event is missing).
        """
        stmt = (
            update(Event)
            .where(
                and_(
                    Event.id == event_id,
                    Event.editing_by == user_id,
                )
            )
            .values(
                editing_by=None,
                edit_lock_at=None,
                updated_at=now,
            )
            .returning(Event)
            .execution_options(populate_existing=True)
        )

        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def clear_expired_leases(self, now: datetime) -> int:
        """
        Bulk clear every lease whose expiry has passed.

        Returns:
            Number of events whose lease was cleared.
        """
        stmt = (
            update(Event)
            .where(
                and_(
                    Event.edit_lock_at.is_not(None),
                    Event.edit_lock_at <= now,
                )
            )
            .values(
                editing_by=None,
                edit_lock_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(f"Cleared {count} expired edit leases")

        return count
