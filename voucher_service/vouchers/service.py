"""
Voucher reads, redemption and deletion.
"""

import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from voucher_service.db.connection import session_scope
from voucher_service.db.event_repository import EventRepository
from voucher_service.db.voucher_repository import VoucherRepository
from voucher_service.errors import AlreadyRedeemed, NotFound
from voucher_service.types.results import VoucherView
from voucher_service.utils.ids import parse_uuid, require_text
from voucher_service.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)


class VoucherService:
    """
    Operations on issued vouchers.

    is_used flips exactly once, and a voucher can be deleted only while it
    is unused; both are conditional statements.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def redeem(self, code: str) -> VoucherView:
        """
        Mark a voucher as used.

        Raises:
            NotFound: If no voucher has this code.
            AlreadyRedeemed: If the voucher was already used.
        """
        code = require_text(code, "voucher code")

        async with session_scope(self._session_factory) as session:
            repo = VoucherRepository(session)
            voucher = await repo.mark_used(code, self._clock())
            if voucher is None:
                if await repo.get_by_code(code) is None:
                    raise NotFound("Voucher", code)
                raise AlreadyRedeemed(code)

        logger.info("Voucher redeemed", extra={"code": code})
        return VoucherView.model_validate(voucher)

    async def delete(self, voucher_id: UUID | str) -> None:
        """
        Delete an unused voucher.

        The event's issued_count is left unchanged.

        Raises:
            NotFound: If the voucher does not exist.
            AlreadyRedeemed: If the voucher has been used.
        """
        voucher_uuid = parse_uuid(voucher_id, "voucher id")

        async with session_scope(self._session_factory) as session:
            repo = VoucherRepository(session)
            if not await repo.delete_unused(voucher_uuid):
                if await repo.get_voucher(voucher_uuid) is None:
                    raise NotFound("Voucher", voucher_uuid)
                raise AlreadyRedeemed(voucher_uuid)

        logger.info("Voucher deleted", extra={"voucher_id": str(voucher_uuid)})

    async def get_by_code(self, code: str) -> VoucherView:
        """
        Raises:
            NotFound: If no voucher has this code.
        """
        code = require_text(code, "voucher code")
        async with session_scope(self._session_factory) as session:
            voucher = await VoucherRepository(session).get_by_code(code)
        if voucher is None:
            raise NotFound("Voucher", code)
        return VoucherView.model_validate(voucher)

    async def list_for_event(self, event_id: UUID | str) -> list[VoucherView]:
        """
        List an event's vouchers, oldest first.

        Raises:
            NotFound: If the event does not exist.
        """
        event_uuid = parse_uuid(event_id, "event id")
        async with session_scope(self._session_factory) as session:
            if await EventRepository(session).get_event(event_uuid) is None:
                raise NotFound("Event", event_uuid)
            vouchers = await VoucherRepository(session).list_for_event(event_uuid)
        return [VoucherView.model_validate(v) for v in vouchers]
