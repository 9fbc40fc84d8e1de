"""
Unit tests for the retry backoff policy.
"""

import pytest

from voucher_service.constants import BackoffType
from voucher_service.queue.backoff import compute_backoff_ms


class TestComputeBackoff:
    """Tests for compute_backoff_ms."""

    @pytest.mark.parametrize(
        ("attempts_made", "expected"),
        [(1, 2000), (2, 4000), (3, 8000)],
    )
    def test_exponential_schedule(self, attempts_made: int, expected: int):
        """Default policy doubles a 2 second base delay per attempt."""
        assert compute_backoff_ms(BackoffType.EXPONENTIAL, 2000, 2.0, attempts_made) == expected

    def test_fixed_schedule(self):
        """Fixed backoff ignores the attempt number."""
        delays = [compute_backoff_ms(BackoffType.FIXED, 1500, 2.0, n) for n in (1, 2, 5)]
        assert delays == [1500, 1500, 1500]

    def test_custom_factor(self):
        assert compute_backoff_ms(BackoffType.EXPONENTIAL, 1000, 3.0, 3) == 9000

    def test_zero_delay(self):
        assert compute_backoff_ms(BackoffType.EXPONENTIAL, 0, 2.0, 3) == 0

    def test_accepts_string_type(self):
        """Values loaded from settings arrive as plain strings."""
        assert compute_backoff_ms("fixed", 500, 2.0, 4) == 500
