# valuation_engine/services/rate_limiter.py
"""
Sliding-window call budget for rate-limited vendors.

The secondary equity channel allows a fixed number of calls per rolling
window. Each accepted call records its timestamp; timestamps older than the
window are pruned before every check. When the budget is exhausted the
caller gets False and moves on to the next fallback tier (no waiting).

Usage:
    limiter = SlidingWindowRateLimiter(name="finnhub", max_calls=55, window_seconds=60)

    if not limiter.try_acquire():
        raise RateLimitError("finnhub", limiter.seconds_until_available())
"""

import logging
import threading
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Thread-safe sliding-window limiter.

    Attributes:
        name: Identifier used in logs
        max_calls: Calls allowed inside any window
        window_seconds: Length of the rolling window
    """

    def __init__(
            self,
            name: str,
            max_calls: int,
            window_seconds: float,
            clock: Callable[[], float] = time.time,
    ) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.name = name
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        """Drop timestamps outside the window. Caller holds the lock."""
        cutoff = now - self.window_seconds
        while self._calls and self._calls[0] <= cutoff:
            self._calls.popleft()

    def try_acquire(self) -> bool:
        """
        Record a call if the budget allows it.

        Returns:
            True if the call may proceed, False if the budget is exhausted
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) >= self.max_calls:
                logger.warning(
                    f"Rate budget '{self.name}' exhausted: "
                    f"{len(self._calls)}/{self.max_calls} in {self.window_seconds:.0f}s"
                )
                return False
            self._calls.append(now)
            return True

    def calls_in_window(self) -> int:
        """Number of calls counted against the current window."""
        with self._lock:
            self._prune(self._clock())
            return len(self._calls)

    def seconds_until_available(self) -> float:
        """Seconds until the oldest call leaves the window (0 if budget left)."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self.max_calls:
                return 0.0
            return max(0.0, self._calls[0] + self.window_seconds - now)

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()
