"""
Job pipeline.

Only dependency-free modules are re-exported here; import JobQueue from
voucher_service.queue.pipeline.
"""

from voucher_service.queue.backoff import compute_backoff_ms

__all__ = ["compute_backoff_ms"]
