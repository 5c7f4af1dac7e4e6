# valuation_engine/services/market_data/__init__.py
"""
Market data services package.

This package contains:
- Abstract interface for market data providers (base.py)
- Equity tiers: Yahoo chart data (yahoo.py), Finnhub (finnhub.py)
- Mutual fund NAVs: mfapi.in (mfapi.py)
- Crypto tiers: CoinGecko, CoinCap, Binance (crypto.py)
- Price services composing the tiers into fallback ladders
  (equity_service.py, crypto_service.py)

Usage:
    from valuation_engine.services.market_data import (
        EquityPriceService,
        CryptoPriceService,
        PriceQuote,
    )

Architecture:
    MarketDataProvider (ABC)
    ├── QuoteProvider (ABC)
    │   ├── YahooChartProvider
    │   ├── FinnhubProvider
    │   └── MfapiProvider
    └── CryptoBatchProvider
        ├── CoinGeckoProvider
        ├── CoinCapProvider
        └── BinanceProvider

    EquityPriceService
    └── cache -> Yahoo -> Finnhub (rate limited) -> stale -> demo table

    CryptoPriceService
    └── cache -> CoinGecko -> CoinCap -> Binance -> stale -> fallback table
"""

# Base provider interface and data classes
from valuation_engine.services.market_data.base import (
    MarketDataProvider,
    QuoteProvider,
    HttpMarketDataProvider,
    PriceQuote,
    InstrumentMatch,
    FundMatch,
)
# Concrete implementations
from valuation_engine.services.market_data.yahoo import YahooChartProvider
from valuation_engine.services.market_data.finnhub import FinnhubProvider
from valuation_engine.services.market_data.mfapi import MfapiProvider
from valuation_engine.services.market_data.crypto import (
    CryptoBatchProvider,
    CoinGeckoProvider,
    CoinCapProvider,
    BinanceProvider,
    UsdRateSource,
    CryptoMatch,
)
# Price services
from valuation_engine.services.market_data.equity_service import (
    EquityPriceService,
    EquityCacheStats,
    instrument_key,
)
from valuation_engine.services.market_data.crypto_service import CryptoPriceService

__all__ = [
    # Abstract interface
    "MarketDataProvider",
    "QuoteProvider",
    "HttpMarketDataProvider",
    # Data classes
    "PriceQuote",
    "InstrumentMatch",
    "FundMatch",
    "CryptoMatch",
    # Concrete implementations
    "YahooChartProvider",
    "FinnhubProvider",
    "MfapiProvider",
    "CryptoBatchProvider",
    "CoinGeckoProvider",
    "CoinCapProvider",
    "BinanceProvider",
    "UsdRateSource",
    # Price services
    "EquityPriceService",
    "EquityCacheStats",
    "CryptoPriceService",
    "instrument_key",
]
