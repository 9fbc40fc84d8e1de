"""
Voucher repository for database operations.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from voucher_service.db.models import Voucher

logger = logging.getLogger(__name__)


class VoucherRepository:
    """
    Repository for voucher database operations.

    Insertion relies on the unique index on code; a duplicate surfaces as
    IntegrityError on flush and is handled by the allocator.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add_voucher(
        self,
        event_id: UUID,
        code: str,
        issued_to: str,
        now: datetime,
    ) -> Voucher:
        """
        Insert a voucher and flush so uniqueness is checked immediately.

        Raises:
            IntegrityError: If the code already exists.
        """
        voucher = Voucher(
            event_id=event_id,
            code=code,
            issued_to=issued_to,
            is_used=False,
            created_at=now,
            updated_at=now,
        )
        self._session.add(voucher)
        await self._session.flush()
        return voucher

    async def get_voucher(self, voucher_id: UUID) -> Voucher | None:
        stmt = select(Voucher).where(Voucher.id == voucher_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Voucher | None:
        stmt = select(Voucher).where(Voucher.code == code)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_event(self, event_id: UUID) -> Sequence[Voucher]:
        stmt = (
            select(Voucher)
            .where(Voucher.event_id == event_id)
            .order_by(Voucher.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def count_for_event(self, event_id: UUID) -> int:
        stmt = select(func.count()).select_from(Voucher).where(Voucher.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def mark_used(self, code: str, now: datetime) -> Voucher | None:
        """
        Flip is_used from false to true.

        Returns:
            The updated Voucher, or None if missing or already used.
        """
        stmt = (
            update(Voucher)
            .where(
                and_(
                    Voucher.code == code,
                    Voucher.is_used.is_(False),
                )
            )
            .values(is_used=True, updated_at=now)
            .returning(Voucher)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete_unused(self, voucher_id: UUID) -> bool:
        """
        Delete a voucher only while it has not been used.

        Returns:
            True if a row was deleted.
        """
        stmt = (
            delete(Voucher)
            .where(
                and_(
                    Voucher.id == voucher_id,
                    Voucher.is_used.is_(False),
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0
