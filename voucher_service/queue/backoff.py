"""
Retry backoff policy for the job pipeline.
"""

from voucher_service.constants import BackoffType


def compute_backoff_ms(
    backoff_type: BackoffType,
    delay_ms: int,
    factor: float,
    attempts_made: int,
) -> int:
    """
    Delay before the next attempt after attempts_made failed attempts.

    fixed:       delay
    exponential: delay * factor ** (attempts_made - 1)

    Args:
        backoff_type: Growth policy.
        delay_ms: Base delay in milliseconds.
        factor: Growth factor for exponential backoff.
        attempts_made: Attempts used so far (1 after the first failure).

    Returns:
        Delay in milliseconds.
    """
    if delay_ms <= 0:
        return 0
    if BackoffType(backoff_type) == BackoffType.FIXED:
        return delay_ms
    exponent = max(0, attempts_made - 1)
    return int(round(delay_ms * (factor**exponent)))
