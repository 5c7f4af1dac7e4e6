# valuation_engine/services/fallback.py
"""
Declarative fallback ladders.

A FallbackChain is an ordered list of Tier strategies. Running the chain
attempts each tier in order and stops at the first success; every failure
is recorded and logged, never raised. What happens when every tier failed
(stale cache, hardcoded table, UNAVAILABLE) is decided by the owning
provider, which knows its own last-resort data.

Each tier owns a CircuitBreaker, so a vendor that keeps failing is skipped
without paying its timeout until the recovery period has passed.

Usage:
    chain = FallbackChain("equity", [
        Tier("yahoo", Provenance.PRIMARY_API, yahoo.get_quote, breaker=...),
        Tier("finnhub", Provenance.SECONDARY_API, finnhub.get_quote, breaker=...),
    ])

    result = chain.run("RELIANCE", "NSE")
    if result.succeeded:
        quote = result.value
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Generic, TypeVar, Any

from valuation_engine.models import Provenance
from valuation_engine.services.circuit_breaker import CircuitBreaker, CircuitBreakerOpen
from valuation_engine.services.constants import (
    CIRCUIT_BREAKER_FAILURE_WINDOW,
    CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
)
from valuation_engine.services.exceptions import (
    AllTiersFailedError,
    MarketDataError,
    RateLimitError,
    TickerNotFoundError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always() -> bool:
    return True


def build_tier_breaker(
        name: str,
        failure_threshold: int,
        recovery_timeout: float,
        clock: Callable[[], float] = time.time,
) -> CircuitBreaker:
    """
    Circuit breaker configured for a price tier.

    Budget exhaustion and unknown instruments say nothing about the vendor's
    health, so they don't count as failures.
    """
    return CircuitBreaker(
        name=name,
        failure_threshold=failure_threshold,
        recovery_timeout=recovery_timeout,
        half_open_max_calls=CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
        failure_window=CIRCUIT_BREAKER_FAILURE_WINDOW,
        excluded_exceptions=(RateLimitError, TickerNotFoundError),
        clock=clock,
    )


@dataclass
class Tier(Generic[T]):
    """
    One rung of a fallback ladder.

    Attributes:
        name: Identifier used in logs (e.g. "coingecko")
        provenance: Provenance stamped on values this tier produces
        fetch: Callable doing the actual lookup; raises MarketDataError on failure
        breaker: Optional circuit breaker guarding the tier
        is_enabled: Checked before every attempt; disabled tiers are skipped
    """
    name: str
    provenance: Provenance
    fetch: Callable[..., T]
    breaker: CircuitBreaker | None = None
    is_enabled: Callable[[], bool] = _always

    def __call__(self, *args: Any, **kwargs: Any) -> T:
        if self.breaker is None:
            return self.fetch(*args, **kwargs)
        with self.breaker:
            return self.fetch(*args, **kwargs)


@dataclass
class ChainResult(Generic[T]):
    """
    Outcome of running a chain.

    Attributes:
        value: Value of the first successful tier, None if all failed
        tier: The tier that produced the value
        errors: (tier name, exception) for every failed attempt, in order
    """
    value: T | None = None
    tier: Tier[T] | None = None
    errors: list[tuple[str, Exception]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.tier is not None

    @property
    def provenance(self) -> Provenance | None:
        return self.tier.provenance if self.tier else None


class FallbackChain(Generic[T]):
    """Attempt tiers in order, stop at the first success."""

    def __init__(self, name: str, tiers: list[Tier[T]]) -> None:
        self.name = name
        self.tiers = list(tiers)

    def run(self, *args: Any, **kwargs: Any) -> ChainResult[T]:
        """
        Run the ladder with the given lookup arguments.

        Never raises for tier failures: MarketDataError, CircuitBreakerOpen
        and any unexpected exception from a tier are recorded in the result
        and the next tier is attempted.
        """
        result: ChainResult[T] = ChainResult()

        for tier in self.tiers:
            if not tier.is_enabled():
                logger.debug(f"Chain '{self.name}': tier '{tier.name}' disabled, skipping")
                continue
            try:
                value = tier(*args, **kwargs)
            except CircuitBreakerOpen as e:
                logger.debug(f"Chain '{self.name}': tier '{tier.name}' skipped, {e}")
                result.errors.append((tier.name, e))
                continue
            except MarketDataError as e:
                logger.warning(f"Chain '{self.name}': tier '{tier.name}' failed: {e}")
                result.errors.append((tier.name, e))
                continue
            except Exception as e:
                logger.exception(f"Chain '{self.name}': tier '{tier.name}' raised unexpectedly")
                result.errors.append((tier.name, e))
                continue

            logger.info(f"Chain '{self.name}': served by tier '{tier.name}'")
            result.value = value
            result.tier = tier
            return result

        return result

    def run_or_raise(self, *args: Any, **kwargs: Any) -> tuple[T, Tier[T]]:
        """
        Like run(), but raise when no tier succeeded.

        Raises:
            AllTiersFailedError: With the per-tier errors attached
        """
        result = self.run(*args, **kwargs)
        if not result.succeeded:
            raise AllTiersFailedError(self.name, result.errors)
        return result.value, result.tier

    def reset_breakers(self) -> None:
        """Close every tier circuit, e.g. when the user forces a refresh."""
        for tier in self.tiers:
            if tier.breaker is not None:
                tier.breaker.reset()
