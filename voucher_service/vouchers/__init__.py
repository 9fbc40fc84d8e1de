"""
Voucher allocation and lifecycle.
"""

from voucher_service.vouchers.allocator import VoucherAllocator
from voucher_service.vouchers.codes import generate_voucher_code
from voucher_service.vouchers.service import VoucherService

__all__ = ["VoucherAllocator", "VoucherService", "generate_voucher_code"]
