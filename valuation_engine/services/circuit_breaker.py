# valuation_engine/services/circuit_breaker.py
"""
Circuit breaker guarding a single price tier.

Every tier of a fallback chain owns one breaker. A vendor that keeps failing
gets its breaker tripped, and the chain then skips the tier outright instead
of paying a timeout on each lookup. Once the recovery timeout has passed a
single probe lookup is admitted; its outcome closes or re-opens the circuit.

States:
    CLOSED    - Tier is called normally
    OPEN      - Tier is skipped, CircuitBreakerOpen raised immediately
    HALF_OPEN - Recovery timeout passed, probe lookups admitted

Usage:
    breaker = CircuitBreaker(name="equity:finnhub", failure_threshold=5)

    try:
        with breaker:
            quote = provider.get_quote(symbol, exchange)
    except CircuitBreakerOpen:
        ...  # advance to the next tier
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from functools import wraps
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """
    Raised when a tier is skipped because its breaker is open.

    Attributes:
        breaker_name: Name of the circuit breaker
        time_remaining: Seconds until a probe lookup is admitted
    """

    def __init__(self, breaker_name: str, time_remaining: float) -> None:
        self.breaker_name = breaker_name
        self.time_remaining = time_remaining
        super().__init__(
            f"Tier '{breaker_name}' is short-circuited, "
            f"next probe in {time_remaining:.1f}s"
        )


@dataclass
class CircuitBreakerStats:
    """Lookup counters for one tier."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None


class CircuitBreaker:
    """
    Thread-safe breaker for one vendor tier.

    Failures are kept as timestamps. With a failure_window only failures
    younger than the window count toward the threshold; without one the
    count is of consecutive failures, and any success clears it.

    Exceptions listed in excluded_exceptions propagate to the caller but
    are booked as successes: they say nothing about the vendor's health.
    """

    def __init__(
            self,
            name: str,
            failure_threshold: int = 5,
            recovery_timeout: float = 60.0,
            half_open_max_calls: int = 1,
            failure_window: float = 0.0,
            excluded_exceptions: tuple[type[Exception], ...] = (),
            clock: Callable[[], float] = time.time,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if recovery_timeout < 0:
            raise ValueError("recovery_timeout cannot be negative")
        if half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be at least 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self.failure_window = failure_window
        self.excluded_exceptions = excluded_exceptions
        self.clock = clock

        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._probes = 0
        self._stats = CircuitBreakerStats()

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._advance()
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        with self._lock:
            return replace(self._stats)

    @property
    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def reset(self) -> None:
        """Close the circuit, e.g. on a user-forced refresh."""
        with self._lock:
            if self._state != CircuitState.CLOSED:
                self._move_to(CircuitState.CLOSED)
            self._failures.clear()

    def _advance(self) -> None:
        """OPEN becomes HALF_OPEN once the recovery timeout has passed."""
        if self._state == CircuitState.OPEN and self._seconds_to_probe() == 0:
            self._move_to(CircuitState.HALF_OPEN)

    def _seconds_to_probe(self) -> float:
        return max(0.0, self.recovery_timeout - (self.clock() - self._opened_at))

    def _move_to(self, state: CircuitState) -> None:
        previous, self._state = self._state, state
        self._stats.state_changes += 1
        if state == CircuitState.OPEN:
            self._opened_at = self.clock()
        elif state == CircuitState.HALF_OPEN:
            self._probes = 0
        else:
            self._failures.clear()

        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"Tier breaker '{self.name}': {previous.value} -> {state.value}")

    # =========================================================================
    # OUTCOMES
    # =========================================================================

    def _admit(self) -> bool:
        self._advance()
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.HALF_OPEN and self._probes < self.half_open_max_calls:
            self._probes += 1
            return True
        return False

    def _on_success(self) -> None:
        self._stats.successful_calls += 1
        self._stats.last_success_time = self.clock()
        if self._state == CircuitState.HALF_OPEN:
            self._move_to(CircuitState.CLOSED)
        elif self.failure_window <= 0:
            self._failures.clear()

    def _on_failure(self) -> None:
        now = self.clock()
        self._stats.failed_calls += 1
        self._stats.last_failure_time = now

        if self._state == CircuitState.HALF_OPEN:
            self._move_to(CircuitState.OPEN)
            return

        self._failures.append(now)
        if self.failure_window > 0:
            while self._failures and self._failures[0] <= now - self.failure_window:
                self._failures.popleft()
        if len(self._failures) >= self.failure_threshold:
            self._move_to(CircuitState.OPEN)

    # =========================================================================
    # CALL PROTOCOLS
    # =========================================================================

    def __enter__(self) -> "CircuitBreaker":
        """
        Raises:
            CircuitBreakerOpen: If the tier must be skipped
        """
        with self._lock:
            self._stats.total_calls += 1
            if not self._admit():
                self._stats.rejected_calls += 1
                raise CircuitBreakerOpen(self.name, self._seconds_to_probe())
        return self

    def __exit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> bool:
        with self._lock:
            if exc_val is None or isinstance(exc_val, self.excluded_exceptions):
                self._on_success()
            else:
                self._on_failure()
        return False

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def guarded(*args: Any, **kwargs: Any) -> T:
            with self:
                return func(*args, **kwargs)
        return guarded
