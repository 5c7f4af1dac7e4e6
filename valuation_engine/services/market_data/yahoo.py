# valuation_engine/services/market_data/yahoo.py
"""
Yahoo Finance chart data: the primary equity channel.

Uses the yfinance library. The last two daily closes give the current
price and the day change, which matches what Yahoo's chart endpoint
reports as regularMarketPrice / chartPreviousClose.

Limitations:
- Rate limits exist but are not documented
- Data may be delayed 15-20 minutes for some markets
"""

import logging

import yfinance as yf

from valuation_engine.models import Provenance
from valuation_engine.services.constants import EXCHANGE_SUFFIXES, MINOR_UNIT_EXCHANGES
from valuation_engine.services.exceptions import (
    MalformedResponseError,
    ProviderUnavailableError,
    TickerNotFoundError,
    RateLimitError,
)
from valuation_engine.services.market_data.base import PriceQuote, QuoteProvider, utc_now
from valuation_engine.utils.numbers import PERCENT_QUANTUM, safe_percent, to_decimal

logger = logging.getLogger(__name__)


class YahooChartProvider(QuoteProvider):
    """
    Yahoo Finance implementation of QuoteProvider.

    Retry Behavior (inherited from MarketDataProvider):
        - Retries on ProviderUnavailableError
        - Does NOT retry on TickerNotFoundError or RateLimitError

    Example:
        provider = YahooChartProvider()
        quote = provider.get_quote("RELIANCE", "NSE")   # RELIANCE.NS
        quote = provider.get_quote("AAPL", "NASDAQ")    # AAPL
    """

    # Yahoo uses suffixes for non-US exchanges (e.g., ".NS" for NSE).
    EXCHANGE_SUFFIXES: dict[str, str] = EXCHANGE_SUFFIXES

    HISTORY_PERIOD: str = "5d"

    def __init__(self, enabled: bool = True, max_attempts: int = 2) -> None:
        """
        Args:
            enabled: When False the tier is skipped (no bridge available)
            max_attempts: Attempts per lookup for transient failures
        """
        super().__init__(max_attempts=max_attempts)
        self._enabled = enabled
        logger.info(f"YahooChartProvider initialized (enabled={enabled})")

    @property
    def name(self) -> str:
        return "yahoo"

    def is_available(self) -> bool:
        return self._enabled

    def get_quote(self, symbol: str, exchange: str) -> PriceQuote:
        return self._execute_with_retry(self._fetch_quote, symbol, exchange)

    def _fetch_quote(self, symbol: str, exchange: str) -> PriceQuote:
        """Internal method to fetch one quote (called by retry wrapper)."""
        symbol = symbol.strip().upper()
        exchange = exchange.strip().upper() if exchange else ""

        yahoo_symbol = self._build_yahoo_symbol(symbol, exchange)
        logger.debug(f"Fetching chart data for {yahoo_symbol}")

        try:
            df = yf.Ticker(yahoo_symbol).history(
                period=self.HISTORY_PERIOD,
                interval="1d",
                auto_adjust=False,
            )
        except Exception as e:
            error_str = str(e).lower()
            if "not found" in error_str or "no data" in error_str or "delisted" in error_str:
                raise TickerNotFoundError(ticker=symbol, exchange=exchange, provider=self.name)
            if "rate limit" in error_str or "too many requests" in error_str:
                raise RateLimitError(provider=self.name)

            logger.error(f"Yahoo Finance error for {yahoo_symbol}: {e}")
            raise ProviderUnavailableError(provider=self.name, reason=str(e))

        if df is None or df.empty or "Close" not in df.columns:
            raise TickerNotFoundError(ticker=symbol, exchange=exchange, provider=self.name)

        closes = [c for c in (to_decimal(v) for v in df["Close"].tolist()) if c is not None]
        if not closes or closes[-1] <= 0:
            raise MalformedResponseError(self.name, f"no usable close for {yahoo_symbol}")

        minor_units = MINOR_UNIT_EXCHANGES.get(exchange)
        if minor_units is not None:
            closes = [c / minor_units for c in closes]

        price = closes[-1]
        previous = closes[-2] if len(closes) > 1 else price
        change = price - previous

        return PriceQuote(
            price=price,
            change_absolute=change,
            change_percent=safe_percent(change, previous).quantize(PERCENT_QUANTUM),
            as_of=utc_now(),
            provenance=Provenance.PRIMARY_API,
        )

    # =========================================================================
    # HELPER METHODS
    # =========================================================================

    def _build_yahoo_symbol(self, symbol: str, exchange: str) -> str:
        """
        Build Yahoo Finance symbol from symbol and exchange.

        Unknown exchanges get no suffix (treated like a US listing).
        """
        suffix = self.EXCHANGE_SUFFIXES.get(exchange, "")
        return f"{symbol}{suffix}"


