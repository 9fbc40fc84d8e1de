"""Shared utilities."""

from voucher_service.utils.ids import parse_uuid, require_text
from voucher_service.utils.time import Clock, utc_now

__all__ = ["Clock", "utc_now", "parse_uuid", "require_text"]
