# valuation_engine/services/market_data/crypto.py
"""
Crypto price tiers.

    Tier 1  CoinGecko  /simple/price   quoted directly in the base currency
    Tier 2  CoinCap    /assets         USD prices, converted with UsdRateSource
    Tier 3  Binance    /ticker/24hr    USDT pairs for a static id mapping only

Each tier prices a whole batch of CoinGecko ids in one attempt. A tier that
returns no price at all for the batch raises, which advances the chain.
Vendors report only a 24h percentage; the absolute change is derived from it.
"""

import logging
import threading
import time
from abc import abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

import httpx

from valuation_engine.models import Provenance
from valuation_engine.services.constants import (
    BINANCE_SYMBOLS,
    CRYPTO_SEARCH_LIMIT,
    DEFAULT_EXCHANGE_RATES,
    DEFAULT_USD_TO_INR,
    ZERO,
)
from valuation_engine.services.exceptions import (
    MalformedResponseError,
    MarketDataError,
)
from valuation_engine.services.market_data.base import (
    HttpMarketDataProvider,
    MarketDataProvider,
    PriceQuote,
    utc_now,
)
from valuation_engine.utils.numbers import PERCENT_QUANTUM, PRICE_QUANTUM, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CryptoMatch:
    """One hit from a coin search."""
    id: str
    name: str
    symbol: str
    thumb: str | None = None
    market_cap_rank: int | None = None


def quote_from_percent(price: Decimal, change_percent: Decimal, provenance: Provenance) -> PriceQuote:
    """
    Build a quote from a price and its 24h percentage change.

    previous = price / (1 + pct/100), so change = price - previous.
    """
    divisor = Decimal("1") + change_percent / HUNDRED
    change = (price - price / divisor).quantize(PRICE_QUANTUM) if divisor > 0 else ZERO
    return PriceQuote(
        price=price,
        change_absolute=change,
        change_percent=change_percent.quantize(PERCENT_QUANTUM),
        as_of=utc_now(),
        provenance=provenance,
    )


# =============================================================================
# USD RATE
# =============================================================================

class UsdRateSource(HttpMarketDataProvider):
    """
    USD -> base currency rate for the USD-quoted tiers.

    Refreshed at most once per TTL, independently of ExchangeRateService.
    Never raises: a failed refresh keeps the previous (or default) rate.
    """

    def __init__(
            self,
            client: httpx.Client,
            base_currency: str = "INR",
            base_url: str = "https://api.exchangerate-api.com/v4/latest",
            ttl_seconds: float = 3600,
            clock: Callable[[], float] = time.time,
            max_attempts: int = 1,
    ) -> None:
        super().__init__(client=client, base_url=base_url, max_attempts=max_attempts)
        self.base_currency = base_currency.upper()
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._rate = self.default_rate(self.base_currency)
        self._fetched_at: float | None = None
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "usd-rate"

    @staticmethod
    def default_rate(base_currency: str) -> Decimal:
        if base_currency == "INR":
            return DEFAULT_USD_TO_INR
        if base_currency == "USD":
            return Decimal("1")
        base_per_inr = DEFAULT_EXCHANGE_RATES.get(base_currency)
        if base_per_inr is None:
            return Decimal("1")
        return (DEFAULT_USD_TO_INR * base_per_inr).quantize(PRICE_QUANTUM)

    def get_rate(self) -> Decimal:
        """Units of base currency per 1 USD."""
        with self._lock:
            now = self._clock()
            if self._fetched_at is not None and now - self._fetched_at < self.ttl_seconds:
                return self._rate
            if self.base_currency == "USD":
                return self._rate
            try:
                body = self._execute_with_retry(self._get_json, "USD")
                rates = body.get("rates") if isinstance(body, dict) else None
                rate = to_decimal(rates.get(self.base_currency)) if isinstance(rates, dict) else None
                if rate is None or rate <= 0:
                    raise MalformedResponseError(self.name, f"no {self.base_currency} rate")
                self._rate = rate
                self._fetched_at = now
                logger.info(f"Updated USD/{self.base_currency} rate: {rate}")
            except MarketDataError as e:
                logger.warning(f"USD rate refresh failed, keeping {self._rate}: {e}")
            return self._rate


# =============================================================================
# BATCH PROVIDERS
# =============================================================================

class CryptoBatchProvider(MarketDataProvider):
    """A tier that prices a batch of CoinGecko ids in one attempt."""

    provenance: Provenance = Provenance.PRIMARY_API

    def get_prices(self, ids: list[str]) -> dict[str, PriceQuote]:
        """
        Raises:
            MarketDataError: Vendor failure, or no price for any requested id
        """
        prices = self._execute_with_retry(self._fetch_prices, ids)
        if not prices:
            raise MalformedResponseError(self.name, "no prices for requested ids")
        return prices

    @abstractmethod
    def _fetch_prices(self, ids: list[str]) -> dict[str, PriceQuote]:
        pass


class CoinGeckoProvider(HttpMarketDataProvider, CryptoBatchProvider):
    """Tier 1: prices quoted directly in the base currency."""

    provenance = Provenance.PRIMARY_API

    def __init__(
            self,
            client: httpx.Client,
            base_currency: str = "INR",
            base_url: str = "https://api.coingecko.com/api/v3",
            max_attempts: int = 2,
    ) -> None:
        super().__init__(client=client, base_url=base_url, max_attempts=max_attempts)
        self._vs_currency = base_currency.lower()

    @property
    def name(self) -> str:
        return "coingecko"

    def _fetch_prices(self, ids: list[str]) -> dict[str, PriceQuote]:
        body = self._get_json(
            "simple/price",
            params={
                "ids": ",".join(ids),
                "vs_currencies": self._vs_currency,
                "include_24hr_change": "true",
            },
        )
        if not isinstance(body, dict):
            raise MalformedResponseError(self.name, "price body is not an object")

        prices: dict[str, PriceQuote] = {}
        for coin_id in ids:
            entry = body.get(coin_id)
            if not isinstance(entry, dict):
                continue
            price = to_decimal(entry.get(self._vs_currency))
            if price is None or price <= 0:
                continue
            change = to_decimal(entry.get(f"{self._vs_currency}_24h_change")) or ZERO
            prices[coin_id] = quote_from_percent(price, change, self.provenance)
        return prices

    def search(self, query: str, limit: int = CRYPTO_SEARCH_LIMIT) -> list[CryptoMatch]:
        """
        Raises:
            MarketDataError: Any vendor failure (no fallback for search)
        """
        body = self._get_json("search", params={"query": query})
        if not isinstance(body, dict):
            raise MalformedResponseError(self.name, "search body is not an object")

        coins = body.get("coins") or []
        if not isinstance(coins, list):
            raise MalformedResponseError(self.name, "search coins is not an array")

        matches: list[CryptoMatch] = []
        for coin in coins[:limit]:
            if not isinstance(coin, dict):
                raise MalformedResponseError(self.name, "search entry is not an object")
            matches.append(CryptoMatch(
                id=str(coin.get("id")),
                name=str(coin.get("name") or coin.get("id")),
                symbol=str(coin.get("symbol") or "").upper(),
                thumb=coin.get("thumb"),
                market_cap_rank=coin.get("market_cap_rank"),
            ))
        return matches


class CoinCapProvider(HttpMarketDataProvider, CryptoBatchProvider):
    """Tier 2: USD prices converted to the base currency."""

    provenance = Provenance.SECONDARY_API

    def __init__(
            self,
            client: httpx.Client,
            usd_rate: UsdRateSource,
            base_url: str = "https://api.coincap.io/v2",
            max_attempts: int = 2,
    ) -> None:
        super().__init__(client=client, base_url=base_url, max_attempts=max_attempts)
        self._usd_rate = usd_rate

    @property
    def name(self) -> str:
        return "coincap"

    def _fetch_prices(self, ids: list[str]) -> dict[str, PriceQuote]:
        rate = self._usd_rate.get_rate()
        body = self._get_json("assets", params={"ids": ",".join(ids)})
        if not isinstance(body, dict) or not isinstance(body.get("data"), list):
            raise MalformedResponseError(self.name, "assets body has no data array")

        requested = set(ids)
        prices: dict[str, PriceQuote] = {}
        for asset in body["data"]:
            if not isinstance(asset, dict):
                raise MalformedResponseError(self.name, "asset entry is not an object")
            coin_id = asset.get("id")
            if coin_id not in requested:
                continue
            price_usd = to_decimal(asset.get("priceUsd"))
            if price_usd is None or price_usd <= 0:
                continue
            change = to_decimal(asset.get("changePercent24Hr")) or ZERO
            price = (price_usd * rate).quantize(PRICE_QUANTUM)
            prices[coin_id] = quote_from_percent(price, change, self.provenance)
        return prices


class BinanceProvider(HttpMarketDataProvider, CryptoBatchProvider):
    """
    Tier 3: one ticker call per mapped id.

    Ids without a USDT pair mapping are skipped silently, and so is an id
    whose individual call fails; only an empty result fails the tier.
    """

    provenance = Provenance.TERTIARY_API

    def __init__(
            self,
            client: httpx.Client,
            usd_rate: UsdRateSource,
            base_url: str = "https://api.binance.com/api/v3",
            symbols: dict[str, str] | None = None,
            max_attempts: int = 1,
    ) -> None:
        super().__init__(client=client, base_url=base_url, max_attempts=max_attempts)
        self._usd_rate = usd_rate
        self._symbols = symbols if symbols is not None else BINANCE_SYMBOLS

    @property
    def name(self) -> str:
        return "binance"

    def _fetch_prices(self, ids: list[str]) -> dict[str, PriceQuote]:
        mapped = [(coin_id, self._symbols[coin_id]) for coin_id in ids if coin_id in self._symbols]
        if not mapped:
            return {}

        rate = self._usd_rate.get_rate()
        prices: dict[str, PriceQuote] = {}
        for coin_id, pair in mapped:
            try:
                body = self._get_json("ticker/24hr", params={"symbol": pair}, symbol=pair)
            except MarketDataError as e:
                logger.debug(f"Binance ticker {pair} failed: {e}")
                continue
            if not isinstance(body, dict):
                continue
            price_usd = to_decimal(body.get("lastPrice"))
            if price_usd is None or price_usd <= 0:
                continue
            change = to_decimal(body.get("priceChangePercent")) or ZERO
            price = (price_usd * rate).quantize(PRICE_QUANTUM)
            prices[coin_id] = quote_from_percent(price, change, self.provenance)
        return prices
