"""
Notification worker module.
Reserves jobs from the queue and delivers voucher emails.
"""

from voucher_service.worker.main import NotificationWorker

__all__ = ["NotificationWorker"]
