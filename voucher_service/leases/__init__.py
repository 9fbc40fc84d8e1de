"""
Event edit leases.
"""

from voucher_service.leases.manager import EditLeaseManager

__all__ = ["EditLeaseManager"]
