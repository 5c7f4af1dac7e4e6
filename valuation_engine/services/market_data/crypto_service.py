# valuation_engine/services/market_data/crypto_service.py
"""
Crypto Price Service: batch prices for CoinGecko ids.

One global cache entry holds the last merged batch (TTL 60 s). A lookup is a
cache hit only when that entry is fresh and already prices every requested
id; otherwise the whole batch goes down the tier chain:

    CoinGecko  -> PRIMARY_API
    CoinCap    -> SECONDARY_API
    Binance    -> TERTIARY_API

A successful tier is merged into the cached batch, never replaces it, so a
lookup for [bitcoin] followed by one for [ethereum] leaves both cached.

When every tier fails each id falls back on its own:
previous cached value (CACHED_STALE) -> hardcoded table (HARDCODED_FALLBACK)
-> UNAVAILABLE with price 0. get_prices() never raises.
"""

import logging
import threading
import time
from typing import Callable

from valuation_engine.models import Provenance
from valuation_engine.services.cache import TTLCache
from valuation_engine.services.constants import (
    CRYPTO_FALLBACK_PRICES,
    DEFAULT_EXCHANGE_RATES,
    MIN_SEARCH_QUERY_LENGTH,
    POPULAR_CRYPTO_IDS,
)
from valuation_engine.services.exceptions import ProviderUnavailableError
from valuation_engine.services.fallback import FallbackChain, Tier, build_tier_breaker
from valuation_engine.services.market_data.base import PriceQuote, utc_now
from valuation_engine.services.market_data.crypto import (
    CoinGeckoProvider,
    CryptoBatchProvider,
    CryptoMatch,
)
from valuation_engine.utils.numbers import PRICE_QUANTUM

logger = logging.getLogger(__name__)

BATCH_KEY = "batch"

CryptoBatch = dict[str, PriceQuote]


def normalize_ids(ids: list[str]) -> list[str]:
    """Lowercase, strip and de-duplicate ids, keeping first-seen order."""
    seen: dict[str, None] = {}
    for coin_id in ids:
        key = (coin_id or "").strip().lower()
        if key:
            seen.setdefault(key, None)
    return list(seen)


class CryptoPriceService:
    """
    Owns the crypto batch cache and the three-tier chain.

    Example:
        usd = UsdRateSource(client)
        service = CryptoPriceService(
            tiers=[CoinGeckoProvider(client), CoinCapProvider(client, usd), BinanceProvider(client, usd)],
        )
        prices = service.get_prices(["bitcoin", "ethereum"])
    """

    def __init__(
            self,
            tiers: list[CryptoBatchProvider],
            base_currency: str = "INR",
            search_provider: CoinGeckoProvider | None = None,
            cache_ttl_seconds: float = 60,
            breaker_failure_threshold: int = 5,
            breaker_recovery_seconds: float = 60,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_currency = base_currency.upper()
        self._clock = clock
        self._cache: TTLCache[str, CryptoBatch] = TTLCache("crypto", cache_ttl_seconds, clock=clock)
        self._merge_lock = threading.Lock()

        if search_provider is None:
            search_provider = next((t for t in tiers if isinstance(t, CoinGeckoProvider)), None)
        self._search_provider = search_provider

        self._chain: FallbackChain[CryptoBatch] = FallbackChain("crypto", [
            Tier(
                name=provider.name,
                provenance=provider.provenance,
                fetch=provider.get_prices,
                breaker=build_tier_breaker(
                    f"crypto:{provider.name}", breaker_failure_threshold, breaker_recovery_seconds, clock
                ),
                is_enabled=provider.is_available,
            )
            for provider in tiers
        ])

        logger.info(
            f"CryptoPriceService initialized (base={self.base_currency}, "
            f"ttl={cache_ttl_seconds}s, tiers={[t.name for t in tiers]})"
        )

    # =========================================================================
    # PRICE LOOKUP
    # =========================================================================

    def get_prices(self, ids: list[str]) -> dict[str, PriceQuote]:
        """
        Quotes for every requested id, in the base currency.

        Returns:
            Mapping with one quote per (normalized) id. Never raises.
        """
        ids = normalize_ids(ids)
        if not ids:
            return {}

        entry = self._cache.get(BATCH_KEY)
        if entry is not None and entry.is_fresh(self._clock(), self._cache.ttl_seconds):
            if all(coin_id in entry.value for coin_id in ids):
                logger.debug(f"Crypto cache hit for {len(ids)} ids")
                return {coin_id: entry.value[coin_id] for coin_id in ids}

        generation = self._cache.generation(BATCH_KEY)
        result = self._chain.run(ids)

        if result.succeeded:
            fetched = {
                coin_id: quote.with_provenance(result.provenance)
                for coin_id, quote in result.value.items()
            }
            previous = self._merge(fetched, generation)
            return {
                coin_id: fetched[coin_id] if coin_id in fetched else self._fallback(coin_id, previous)
                for coin_id in ids
            }

        logger.warning(f"All crypto tiers failed for {len(ids)} ids, using fallbacks")
        previous = entry.value if entry is not None else {}
        return {coin_id: self._fallback(coin_id, previous) for coin_id in ids}

    def _merge(self, fetched: CryptoBatch, generation) -> CryptoBatch:
        """
        Merge fetched quotes over the cached batch.

        Returns:
            The batch as it was before the merge
        """
        with self._merge_lock:
            current = self._cache.get(BATCH_KEY)
            previous = dict(current.value) if current is not None else {}
            merged = {**previous, **fetched}
            if self._cache.put_if_generation(BATCH_KEY, merged, generation):
                logger.debug(f"Crypto batch merged: {len(fetched)} fetched, {len(merged)} cached")
        return previous

    def _fallback(self, coin_id: str, previous: CryptoBatch) -> PriceQuote:
        cached = previous.get(coin_id)
        if cached is not None and cached.is_available:
            return cached.as_stale()

        inr_price = CRYPTO_FALLBACK_PRICES.get(coin_id)
        if inr_price is not None:
            return PriceQuote(
                price=self._from_inr(inr_price),
                as_of=utc_now(),
                provenance=Provenance.HARDCODED_FALLBACK,
            )

        logger.warning(f"No price available for crypto id '{coin_id}'")
        return PriceQuote.unavailable()

    def _from_inr(self, amount):
        """Hardcoded table is quoted in INR."""
        if self.base_currency == "INR":
            return amount
        rate = DEFAULT_EXCHANGE_RATES.get(self.base_currency)
        if rate is None:
            return amount
        return (amount * rate).quantize(PRICE_QUANTUM)

    # =========================================================================
    # CACHE MANAGEMENT
    # =========================================================================

    def clear_cache(self) -> None:
        self._cache.clear()

    def reset_circuits(self) -> None:
        self._chain.reset_breakers()

    def cached_ids(self) -> list[str]:
        entry = self._cache.get(BATCH_KEY)
        return sorted(entry.value) if entry is not None else []

    # =========================================================================
    # SEARCH
    # =========================================================================

    def search(self, query: str) -> list[CryptoMatch]:
        """
        Uncached pass-through to CoinGecko search.

        Raises:
            MarketDataError: Search failed
        """
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_QUERY_LENGTH:
            return []
        if self._search_provider is None:
            raise ProviderUnavailableError("coingecko", "no search provider configured")
        return self._search_provider.search(query)

    @staticmethod
    def popular_coins() -> dict[str, str]:
        """Ticker -> CoinGecko id for the coins offered without a search."""
        return dict(POPULAR_CRYPTO_IDS)
