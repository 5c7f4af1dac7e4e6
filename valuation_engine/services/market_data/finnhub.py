# valuation_engine/services/market_data/finnhub.py
"""
Finnhub: the secondary equity channel and the stock search backend.

Endpoints:
    GET /quote?symbol=RELIANCE.NS&token=...   c = current, pc = previous close
    GET /search?q=reliance&token=...          result[] of {symbol, description}

Finnhub answers unknown symbols with HTTP 200 and c = 0, so a zero price is
treated as an unknown instrument rather than a real quote.
"""

import logging

import httpx

from valuation_engine.models import Provenance
from valuation_engine.services.constants import EXCHANGE_SUFFIXES, MINOR_UNIT_EXCHANGES, US_EXCHANGES
from valuation_engine.services.exceptions import MalformedResponseError, TickerNotFoundError
from valuation_engine.services.market_data.base import (
    HttpMarketDataProvider,
    InstrumentMatch,
    PriceQuote,
    QuoteProvider,
    utc_now,
)
from valuation_engine.utils.numbers import PERCENT_QUANTUM, safe_percent, to_decimal

logger = logging.getLogger(__name__)

# Finnhub suffix -> our exchange code
SEARCH_SUFFIXES: dict[str, str] = {
    ".NS": "NSE",
    ".BO": "BSE",
}


class FinnhubProvider(HttpMarketDataProvider, QuoteProvider):
    """
    Finnhub REST implementation of QuoteProvider.

    The tier is unavailable when no API key is configured. The call budget
    is enforced by the owning service, not here.
    """

    def __init__(
            self,
            client: httpx.Client,
            api_key: str | None,
            base_url: str = "https://finnhub.io/api/v1",
            max_attempts: int = 2,
    ) -> None:
        super().__init__(client=client, base_url=base_url, max_attempts=max_attempts)
        self._api_key = api_key

    @property
    def name(self) -> str:
        return "finnhub"

    def is_available(self) -> bool:
        return bool(self._api_key)

    @staticmethod
    def build_symbol(symbol: str, exchange: str) -> str:
        """US listings are bare, mapped exchanges get their suffix, anything else .BO."""
        symbol = symbol.strip().upper()
        exchange = exchange.strip().upper()
        if exchange in US_EXCHANGES:
            return symbol
        return f"{symbol}{EXCHANGE_SUFFIXES.get(exchange, '.BO')}"

    def get_quote(self, symbol: str, exchange: str) -> PriceQuote:
        return self._execute_with_retry(self._fetch_quote, symbol, exchange)

    def _fetch_quote(self, symbol: str, exchange: str) -> PriceQuote:
        full_symbol = self.build_symbol(symbol, exchange)
        data = self._get_json(
            "quote",
            params={"symbol": full_symbol, "token": self._api_key},
            symbol=symbol,
            exchange=exchange,
        )
        if not isinstance(data, dict):
            raise MalformedResponseError(self.name, "quote body is not an object")

        price = to_decimal(data.get("c"))
        if price is None or price <= 0:
            raise TickerNotFoundError(ticker=symbol, exchange=exchange, provider=self.name)

        previous = to_decimal(data.get("pc"))
        if previous is None or previous <= 0:
            previous = price

        minor_units = MINOR_UNIT_EXCHANGES.get(exchange.strip().upper())
        if minor_units is not None:
            price, previous = price / minor_units, previous / minor_units
        change = price - previous

        logger.debug(f"Finnhub quote {full_symbol}: c={price} pc={previous}")
        return PriceQuote(
            price=price,
            change_absolute=change,
            change_percent=safe_percent(change, previous).quantize(PERCENT_QUANTUM),
            as_of=utc_now(),
            provenance=Provenance.SECONDARY_API,
        )

    def search(self, query: str) -> list[InstrumentMatch]:
        """
        Search listings by name or symbol.

        Raises:
            MarketDataError: Any vendor failure (no fallback for search)
        """
        data = self._get_json("search", params={"q": query, "token": self._api_key})
        if not isinstance(data, dict):
            raise MalformedResponseError(self.name, "search body is not an object")

        results = data.get("result") or []
        if not isinstance(results, list):
            raise MalformedResponseError(self.name, "search result is not an array")

        matches: list[InstrumentMatch] = []
        for item in results:
            if not isinstance(item, dict):
                raise MalformedResponseError(self.name, "search entry is not an object")
            full_symbol = str(item.get("symbol") or "")
            if not full_symbol:
                continue
            symbol, exchange = full_symbol, "US"
            for suffix, code in SEARCH_SUFFIXES.items():
                if full_symbol.endswith(suffix):
                    symbol, exchange = full_symbol[: -len(suffix)], code
                    break
            matches.append(InstrumentMatch(
                symbol=symbol,
                full_symbol=full_symbol,
                name=str(item.get("description") or symbol),
                exchange=exchange,
            ))
        return matches
