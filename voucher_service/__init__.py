"""
Voucher Service

Quota-bounded voucher allocation, lease-based event edit locks, and a
retrying notification job pipeline with periodic maintenance.
"""

__version__ = "1.0.0"
