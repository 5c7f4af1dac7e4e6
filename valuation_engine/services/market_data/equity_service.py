# valuation_engine/services/market_data/equity_service.py
"""
Equity Price Service: one quote per (symbol, exchange).

Lookup ladder (per key):
    0. Manual override      set by the user, authoritative until cleared
    1. Fresh cache entry    age < TTL (5 min), returned unchanged
    2. Primary channel      Yahoo chart data          -> PRIMARY_API
    3. Secondary channel    Finnhub, 55 calls / 60 s  -> SECONDARY_API
    4. Expired cache entry  or durable stored quote   -> CACHED_STALE
    5. Demo table                                     -> HARDCODED_FALLBACK
       otherwise price 0                              -> UNAVAILABLE

Mutual funds (exchange "MF", symbol = scheme code) use the same ladder
with mfapi.in as the only live tier.

get_price() never raises for provider failures. Only the search helpers,
which have no fallback, let MarketDataError through.

A forced lookup skips steps 0 and 1; when it succeeds it replaces both the
manual override and the cache entry, when it fails the manual override (if
any) is still returned.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable

from valuation_engine.models import Provenance
from valuation_engine.services.cache import TTLCache
from valuation_engine.services.constants import (
    DEMO_EQUITY_PRICES,
    MIN_SEARCH_QUERY_LENGTH,
    MUTUAL_FUND_EXCHANGE,
)
from valuation_engine.services.exceptions import (
    ProviderUnavailableError,
    RateLimitError,
    ValidationError,
)
from valuation_engine.services.fallback import FallbackChain, Tier, build_tier_breaker
from valuation_engine.services.market_data.base import (
    FundMatch,
    InstrumentMatch,
    PriceQuote,
    QuoteProvider,
    utc_now,
)
from valuation_engine.services.market_data.finnhub import FinnhubProvider
from valuation_engine.services.market_data.mfapi import MfapiProvider
from valuation_engine.services.protocols import QuoteStore
from valuation_engine.services.rate_limiter import SlidingWindowRateLimiter
from valuation_engine.utils.numbers import PERCENT_QUANTUM, safe_percent

logger = logging.getLogger(__name__)

InstrumentKey = tuple[str, str]

MUTUAL_FUND_ALIASES = frozenset({MUTUAL_FUND_EXCHANGE, "MUTUAL FUND", "MUTUAL_FUND"})


def instrument_key(symbol: str, exchange: str) -> InstrumentKey:
    """Normalized cache key; mutual fund aliases collapse to "MF"."""
    exch = (exchange or "").strip().upper()
    if exch in MUTUAL_FUND_ALIASES:
        exch = MUTUAL_FUND_EXCHANGE
    return symbol.strip().upper(), exch


@dataclass(frozen=True)
class EquityCacheStats:
    """Diagnostics for the equity cache; not correctness-critical."""
    size: int
    keys: list[InstrumentKey] = field(default_factory=list)
    secondary_calls_in_window: int = 0
    manual_overrides: list[InstrumentKey] = field(default_factory=list)


class EquityPriceService:
    """
    Owns the equity quote cache, the manual overrides, the secondary call
    budget and the two fallback chains (listed equities, mutual funds).

    Example:
        service = EquityPriceService(
            primary=YahooChartProvider(),
            secondary=FinnhubProvider(client, api_key="..."),
            nav_provider=MfapiProvider(client),
        )
        quote = service.get_price("RELIANCE", "NSE")
        quote.provenance  # Provenance.PRIMARY_API
    """

    def __init__(
            self,
            primary: QuoteProvider | None = None,
            secondary: FinnhubProvider | None = None,
            nav_provider: MfapiProvider | None = None,
            quote_store: QuoteStore | None = None,
            cache_ttl_seconds: float = 300,
            secondary_calls_per_window: int = 55,
            secondary_window_seconds: float = 60,
            breaker_failure_threshold: int = 5,
            breaker_recovery_seconds: float = 60,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self._primary = primary
        self._secondary = secondary
        self._nav_provider = nav_provider
        self._quote_store = quote_store
        self._clock = clock

        self._cache: TTLCache[InstrumentKey, PriceQuote] = TTLCache(
            "equity", cache_ttl_seconds, clock=clock
        )
        self._limiter = SlidingWindowRateLimiter(
            "finnhub", secondary_calls_per_window, secondary_window_seconds, clock=clock
        )

        self._manual: dict[InstrumentKey, PriceQuote] = {}
        self._manual_loaded: set[InstrumentKey] = set()
        self._manual_lock = threading.Lock()

        def breaker(name: str):
            return build_tier_breaker(
                f"equity:{name}", breaker_failure_threshold, breaker_recovery_seconds, clock
            )

        equity_tiers: list[Tier[PriceQuote]] = []
        if primary is not None:
            equity_tiers.append(Tier(
                name=primary.name,
                provenance=Provenance.PRIMARY_API,
                fetch=primary.get_quote,
                breaker=breaker(primary.name),
                is_enabled=primary.is_available,
            ))
        if secondary is not None:
            equity_tiers.append(Tier(
                name=secondary.name,
                provenance=Provenance.SECONDARY_API,
                fetch=self._fetch_secondary,
                breaker=breaker(secondary.name),
                is_enabled=secondary.is_available,
            ))
        self._equity_chain = FallbackChain("equity", equity_tiers)

        nav_tiers: list[Tier[PriceQuote]] = []
        if nav_provider is not None:
            nav_tiers.append(Tier(
                name=nav_provider.name,
                provenance=Provenance.PRIMARY_API,
                fetch=nav_provider.get_quote,
                breaker=breaker(nav_provider.name),
                is_enabled=nav_provider.is_available,
            ))
        self._nav_chain = FallbackChain("mutual-fund", nav_tiers)

        logger.info(
            f"EquityPriceService initialized (ttl={cache_ttl_seconds}s, "
            f"equity_tiers={[t.name for t in equity_tiers]}, "
            f"budget={secondary_calls_per_window}/{secondary_window_seconds:.0f}s)"
        )

    # =========================================================================
    # PRICE LOOKUP
    # =========================================================================

    def get_price(self, symbol: str, exchange: str, force: bool = False) -> PriceQuote:
        """
        Current quote for one instrument. Never raises for provider failures.

        Args:
            symbol: Ticker, or scheme code for mutual funds
            exchange: Exchange code ("NSE", "NASDAQ", "MF", ...)
            force: Bypass manual override and cache
        """
        key = instrument_key(symbol, exchange)

        if force:
            generation = self._cache.invalidate(key, keep_entry=True)
        else:
            manual = self._get_manual(key)
            if manual is not None:
                return manual
            cached = self._cache.get_fresh(key)
            if cached is not None:
                return cached
            generation = self._cache.generation(key)

        chain = self._nav_chain if key[1] == MUTUAL_FUND_EXCHANGE else self._equity_chain
        result = chain.run(*key)

        if result.succeeded:
            quote = result.value.with_provenance(result.provenance)
            if force:
                self._drop_manual(key)
            if self._cache.put_if_generation(key, quote, generation):
                self._save_stored(key, quote)
            return quote

        if force:
            manual = self._get_manual(key)
            if manual is not None:
                logger.warning(f"Forced refresh failed for {key[0]}/{key[1]}, keeping manual price")
                return manual

        return self._fallback(key)

    def _fetch_secondary(self, symbol: str, exchange: str) -> PriceQuote:
        """Secondary tier: spend one unit of the sliding budget, then call."""
        if not self._limiter.try_acquire():
            raise RateLimitError(self._secondary.name, self._limiter.seconds_until_available())
        return self._secondary.get_quote(symbol, exchange)

    def _fallback(self, key: InstrumentKey) -> PriceQuote:
        """Steps 4 and 5 of the ladder."""
        symbol, exchange = key

        entry = self._cache.get(key)
        if entry is not None:
            logger.warning(f"Serving stale cached quote for {symbol}/{exchange}")
            return entry.value.as_stale()

        stored = self._load_stored(key)
        if stored is not None and stored.is_available and stored.price > 0:
            logger.warning(f"Serving stored quote for {symbol}/{exchange}")
            return stored.as_stale()

        demo = DEMO_EQUITY_PRICES.get(symbol)
        if demo is not None:
            price, change = demo
            logger.warning(f"Serving demo price for {symbol}/{exchange}")
            return PriceQuote(
                price=price,
                change_absolute=change,
                change_percent=safe_percent(change, price - change).quantize(PERCENT_QUANTUM),
                as_of=utc_now(),
                provenance=Provenance.HARDCODED_FALLBACK,
            )

        logger.warning(f"No price available for {symbol}/{exchange}")
        return PriceQuote.unavailable()

    # =========================================================================
    # MANUAL OVERRIDES
    # =========================================================================

    def set_manual_price(
            self,
            symbol: str,
            exchange: str,
            price: Decimal,
            change_absolute: Decimal = Decimal("0"),
    ) -> PriceQuote:
        """
        Pin a user-entered price for an instrument.

        Raises:
            ValidationError: If price is not positive
        """
        price = Decimal(str(price))
        if price <= 0:
            raise ValidationError(f"Manual price must be positive, got {price}", field="price")

        change_absolute = Decimal(str(change_absolute))
        key = instrument_key(symbol, exchange)
        quote = PriceQuote(
            price=price,
            change_absolute=change_absolute,
            change_percent=safe_percent(change_absolute, price - change_absolute).quantize(PERCENT_QUANTUM),
            as_of=utc_now(),
            provenance=Provenance.MANUAL,
        )
        with self._manual_lock:
            self._manual[key] = quote
            self._manual_loaded.add(key)
        self._save_stored(key, quote)
        logger.info(f"Manual price set for {key[0]}/{key[1]}: {price}")
        return quote

    def clear_manual_price(self, symbol: str, exchange: str) -> bool:
        """
        Remove a manual override; the next lookup goes to the providers.

        Returns:
            True if an override existed
        """
        key = instrument_key(symbol, exchange)
        existed = self._drop_manual(key)
        if existed:
            logger.info(f"Manual price cleared for {key[0]}/{key[1]}")
        return existed

    def _get_manual(self, key: InstrumentKey) -> PriceQuote | None:
        """Override for key, adopting a MANUAL quote from the store on first use."""
        with self._manual_lock:
            if key in self._manual_loaded:
                return self._manual.get(key)

        stored = self._load_stored(key)
        with self._manual_lock:
            if key not in self._manual_loaded:
                self._manual_loaded.add(key)
                if stored is not None and stored.provenance == Provenance.MANUAL:
                    self._manual[key] = stored
            return self._manual.get(key)

    def _drop_manual(self, key: InstrumentKey) -> bool:
        with self._manual_lock:
            existed = self._manual.pop(key, None) is not None
            self._manual_loaded.add(key)
        if existed and self._quote_store is not None:
            self._quote_store.delete_stored_quote(*key)
        return existed

    # =========================================================================
    # DURABLE STORE
    # =========================================================================

    def _load_stored(self, key: InstrumentKey) -> PriceQuote | None:
        if self._quote_store is None:
            return None
        return self._quote_store.get_stored_quote(*key)

    def _save_stored(self, key: InstrumentKey, quote: PriceQuote) -> None:
        if self._quote_store is not None:
            self._quote_store.save_stored_quote(key[0], key[1], quote)

    # =========================================================================
    # CACHE MANAGEMENT
    # =========================================================================

    def clear_cache(self) -> None:
        """Empty the cache; lookups already in flight will not write back."""
        self._cache.clear()

    def reset_circuits(self) -> None:
        """Close every tier circuit so a forced refresh reaches the vendors."""
        self._equity_chain.reset_breakers()
        self._nav_chain.reset_breakers()

    def get_cache_stats(self) -> EquityCacheStats:
        stats = self._cache.stats()
        with self._manual_lock:
            manual = list(self._manual)
        return EquityCacheStats(
            size=stats.size,
            keys=stats.keys,
            secondary_calls_in_window=self._limiter.calls_in_window(),
            manual_overrides=manual,
        )

    # =========================================================================
    # SEARCH (uncached, failures propagate)
    # =========================================================================

    def search_stocks(self, query: str) -> list[InstrumentMatch]:
        """
        Raises:
            MarketDataError: Search backend failed or is not configured
        """
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_QUERY_LENGTH:
            return []
        if self._secondary is None or not self._secondary.is_available():
            raise ProviderUnavailableError("finnhub", "no API key configured")
        return self._secondary.search(query)

    def search_funds(self, query: str) -> list[FundMatch]:
        """
        Raises:
            MarketDataError: Scheme list could not be fetched
        """
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_QUERY_LENGTH:
            return []
        if self._nav_provider is None:
            raise ProviderUnavailableError("mfapi", "no NAV provider configured")
        return self._nav_provider.search(query)
