# valuation_engine/services/market_data/base.py
"""
Abstract interface for market data providers.

Every vendor the engine talks to (Yahoo chart data, Finnhub, mfapi.in,
CoinGecko, CoinCap, Binance) is a MarketDataProvider. A provider is ONE
tier: it either returns data or raises a MarketDataError subclass. It never
falls back on its own; the price services compose providers into
FallbackChains.

Design Principles:
- One place for retry behavior (`_execute_with_retry`)
- One place for HTTP error classification (`HttpMarketDataProvider._get_json`)
- Domain exceptions only; no httpx types escape a provider
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import TypeVar, Callable, Any

import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from valuation_engine.models import Provenance
from valuation_engine.services.constants import ZERO
from valuation_engine.services.exceptions import (
    MalformedResponseError,
    ProviderUnavailableError,
    RateLimitError,
    TickerNotFoundError,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# DATA CLASSES - QUOTES
# =============================================================================

@dataclass(frozen=True)
class PriceQuote:
    """
    Current price of one instrument, in the instrument's native currency.

    Immutable: a refresh produces a new quote, the cache swaps it in.

    Attributes:
        price: Last price or NAV (0 only when provenance is UNAVAILABLE)
        change_absolute: Price change since previous close
        change_percent: Same change as a percentage of previous close
        as_of: When the vendor reported the price
        provenance: Which tier or fallback produced the quote
        is_stale: True when served from an expired cache entry
        name: Display name reported by the vendor (fund scheme name)
    """

    price: Decimal
    change_absolute: Decimal = ZERO
    change_percent: Decimal = ZERO
    as_of: datetime = field(default_factory=utc_now)
    provenance: Provenance = Provenance.PRIMARY_API
    is_stale: bool = False
    name: str | None = None

    def __post_init__(self) -> None:
        if self.price < 0:
            raise ValueError(f"price cannot be negative, got {self.price}")

    @classmethod
    def unavailable(cls) -> "PriceQuote":
        """Terminal 'nothing more can be done' quote."""
        return cls(price=ZERO, provenance=Provenance.UNAVAILABLE)

    @property
    def is_available(self) -> bool:
        return self.provenance != Provenance.UNAVAILABLE

    @property
    def previous_close(self) -> Decimal:
        return self.price - self.change_absolute

    def as_stale(self) -> "PriceQuote":
        """Copy served from an expired cache entry."""
        return replace(self, is_stale=True, provenance=Provenance.CACHED_STALE)

    def with_provenance(self, provenance: Provenance) -> "PriceQuote":
        return replace(self, provenance=provenance)


# =============================================================================
# DATA CLASSES - SEARCH RESULTS
# =============================================================================

@dataclass(frozen=True)
class InstrumentMatch:
    """
    One hit from a stock search.

    Attributes:
        symbol: Symbol without exchange suffix (e.g., "RELIANCE")
        full_symbol: Symbol as the vendor returned it (e.g., "RELIANCE.NS")
        name: Vendor description
        exchange: NSE, BSE or US
    """
    symbol: str
    full_symbol: str
    name: str
    exchange: str


@dataclass(frozen=True)
class FundMatch:
    """One hit from a mutual fund search; code is the mfapi.in scheme code."""
    code: str
    name: str
    exchange: str = "MF"


# =============================================================================
# ABSTRACT BASE CLASSES
# =============================================================================

class MarketDataProvider(ABC):
    """
    Abstract base class for every vendor tier.

    Retry Behavior:
        `_execute_with_retry` retries ProviderUnavailableError (network
        failures, timeouts, 5xx) with exponential backoff, up to
        `max_attempts` attempts in total.

        RateLimitError is NOT retried: waiting out a budget would stall the
        whole pass, so the chain moves to the next tier instead.
        TickerNotFoundError and MalformedResponseError are permanent.
    """

    RETRY_MIN_WAIT: float = 0.5
    RETRY_MAX_WAIT: float = 4.0
    RETRY_MULTIPLIER: float = 0.5

    def __init__(self, max_attempts: int = 2) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier for logs and errors (e.g., "finnhub")."""
        pass

    def is_available(self) -> bool:
        """
        Whether the tier may be attempted at all.

        Default implementation returns True. Subclasses override when a
        channel depends on configuration (API key, bridge switch).
        """
        return True

    def _execute_with_retry(
            self,
            func: Callable[..., T],
            *args: Any,
            **kwargs: Any,
    ) -> T:
        """
        Execute func, retrying transient failures.

        Raises:
            The last exception if all attempts fail
        """

        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.RETRY_MULTIPLIER,
                min=self.RETRY_MIN_WAIT,
                max=self.RETRY_MAX_WAIT,
            ),
            retry=retry_if_exception_type(ProviderUnavailableError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        def _inner() -> T:
            return func(*args, **kwargs)

        return _inner()


class QuoteProvider(MarketDataProvider):
    """A tier that prices one instrument at a time."""

    @abstractmethod
    def get_quote(self, symbol: str, exchange: str) -> PriceQuote:
        """
        Fetch the current quote for one instrument.

        Raises:
            TickerNotFoundError: Instrument unknown to the vendor
            ProviderUnavailableError: Network or server error (retried)
            RateLimitError: Call budget exhausted
            MalformedResponseError: Body without a usable price
        """
        pass


class HttpMarketDataProvider(MarketDataProvider):
    """
    Base for vendors reached with plain HTTP GET + JSON.

    The httpx.Client is owned by the composition root and shared by all
    providers; its timeout bounds every call.
    """

    def __init__(self, client: httpx.Client, base_url: str, max_attempts: int = 2) -> None:
        super().__init__(max_attempts=max_attempts)
        self._client = client
        self._base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}" if path else self._base_url

    def _get_json(
            self,
            path: str,
            params: dict[str, Any] | None = None,
            *,
            symbol: str = "",
            exchange: str = "",
    ) -> Any:
        """
        GET a JSON document and classify every failure.

        Mapping:
            timeout / transport error / 5xx -> ProviderUnavailableError
            429                             -> RateLimitError
            404                             -> TickerNotFoundError
            other non-2xx, non-JSON body    -> MalformedResponseError
        """
        url = self._url(path)
        try:
            response = self._client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(self.name, f"timeout: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, str(e) or type(e).__name__) from e

        status = response.status_code
        if status == 429:
            raise RateLimitError(self.name, retry_after=_retry_after(response))
        if status == 404:
            raise TickerNotFoundError(ticker=symbol or path, exchange=exchange, provider=self.name)
        if status >= 500:
            raise ProviderUnavailableError(self.name, f"HTTP {status}")
        if not response.is_success:
            raise MalformedResponseError(self.name, f"HTTP {status}")

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(self.name, "body is not JSON") from e


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
