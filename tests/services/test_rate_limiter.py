# tests/services/test_rate_limiter.py
"""
Tests for the sliding-window call budget.
"""

import pytest

from valuation_engine.services.rate_limiter import SlidingWindowRateLimiter


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter."""

    def test_rejects_invalid_configuration(self):
        """Should reject a zero budget or window."""
        with pytest.raises(ValueError, match="max_calls must be at least 1"):
            SlidingWindowRateLimiter("test", max_calls=0, window_seconds=60)
        with pytest.raises(ValueError, match="window_seconds must be positive"):
            SlidingWindowRateLimiter("test", max_calls=1, window_seconds=0)

    def test_allows_calls_up_to_budget(self, clock):
        """Should accept exactly max_calls inside one window."""
        limiter = SlidingWindowRateLimiter("test", max_calls=3, window_seconds=60, clock=clock)

        results = [limiter.try_acquire() for _ in range(4)]

        assert results == [True, True, True, False]
        assert limiter.calls_in_window() == 3

    def test_window_slides(self, clock):
        """Calls older than the window should free budget one by one."""
        limiter = SlidingWindowRateLimiter("test", max_calls=2, window_seconds=60, clock=clock)
        limiter.try_acquire()
        clock.advance(30)
        limiter.try_acquire()
        assert limiter.try_acquire() is False

        clock.advance(30)

        assert limiter.try_acquire() is True
        assert limiter.try_acquire() is False

    def test_seconds_until_available(self, clock):
        """Should report when the oldest call leaves the window."""
        limiter = SlidingWindowRateLimiter("test", max_calls=1, window_seconds=60, clock=clock)
        assert limiter.seconds_until_available() == 0.0

        limiter.try_acquire()
        clock.advance(15)

        assert limiter.seconds_until_available() == pytest.approx(45.0)

    def test_reset(self, clock):
        """Should forget every recorded call."""
        limiter = SlidingWindowRateLimiter("test", max_calls=1, window_seconds=60, clock=clock)
        limiter.try_acquire()

        limiter.reset()

        assert limiter.try_acquire() is True
