# valuation_engine/services/constants.py
"""
Centralized constants for the valuation engine services.

Single source of truth for the static tables the fallback ladders end in
and for exchange classification. Tunable durations (TTLs, budgets) live in
config.Settings instead; the values here are the last-resort data that must
exist without any network access.

Usage:
    from valuation_engine.services.constants import (
        DEMO_EQUITY_PRICES,
        CRYPTO_FALLBACK_PRICES,
        DEFAULT_EXCHANGE_RATES,
    )
"""

from decimal import Decimal


# =============================================================================
# UTILITY CONSTANTS
# =============================================================================

# Type-safe zero for Decimal comparisons
ZERO: Decimal = Decimal("0")

# Currency amounts in the snapshot: 2 decimal places
CURRENCY_PRECISION: Decimal = Decimal("0.01")

# Percentages in the snapshot: 4 decimal places (e.g., 40.6250%)
PERCENTAGE_PRECISION: Decimal = Decimal("0.0001")


# =============================================================================
# EXCHANGE CLASSIFICATION
# =============================================================================

# Exchange assumed when a record carries none
DEFAULT_EXCHANGE: str = "NSE"

# Instruments on these exchanges are priced in USD
US_EXCHANGES: frozenset[str] = frozenset({"US", "NASDAQ", "NYSE", "NYSEARCA", "AMEX"})

# Listing suffix per exchange, shared by Yahoo and Finnhub symbols
EXCHANGE_SUFFIXES: dict[str, str] = {
    # US
    "US": "",
    "NASDAQ": "",
    "NYSE": "",
    "NYSEARCA": "",
    "AMEX": "",

    # India
    "NSE": ".NS",
    "BSE": ".BO",

    # Europe
    "XETRA": ".DE",
    "LSE": ".L",
    "EURONEXT": ".PA",
    "AMS": ".AS",
    "SWX": ".SW",

    # Asia-Pacific
    "TSE": ".T",
    "HKEX": ".HK",
    "SGX": ".SI",
    "ASX": ".AX",

    # Canada
    "TSX": ".TO",
}

# Trading currency per exchange; unlisted exchanges use the base currency
EXCHANGE_CURRENCIES: dict[str, str] = {
    "US": "USD",
    "NASDAQ": "USD",
    "NYSE": "USD",
    "NYSEARCA": "USD",
    "AMEX": "USD",
    "NSE": "INR",
    "BSE": "INR",
    "XETRA": "EUR",
    "LSE": "GBP",
    "EURONEXT": "EUR",
    "AMS": "EUR",
    "SWX": "CHF",
    "TSE": "JPY",
    "HKEX": "HKD",
    "SGX": "SGD",
    "ASX": "AUD",
    "TSX": "CAD",
}

# Exchanges whose chart data is quoted in the currency's minor unit (GBp)
MINOR_UNIT_EXCHANGES: dict[str, Decimal] = {
    "LSE": Decimal("100"),
}


# Pseudo-exchange used for mutual fund NAV lookups (symbol = scheme code)
MUTUAL_FUND_EXCHANGE: str = "MF"


# =============================================================================
# EXCHANGE RATES
# =============================================================================

# Static table quoted against INR, used until the first successful refresh
# Units of the currency per 1 INR
DEFAULT_EXCHANGE_RATES: dict[str, Decimal] = {
    "INR": Decimal("1"),
    "USD": Decimal("0.0119"),
    "EUR": Decimal("0.0110"),
    "GBP": Decimal("0.0095"),
    "JPY": Decimal("1.78"),
    "AUD": Decimal("0.0180"),
    "CAD": Decimal("0.0162"),
    "MYR": Decimal("0.053"),
    "SGD": Decimal("0.016"),
    "THB": Decimal("0.41"),
    "AED": Decimal("0.0437"),
    "CHF": Decimal("0.0105"),
    "HKD": Decimal("0.093"),
}


# INR per 1 USD when the crypto-local USD rate has never been fetched
DEFAULT_USD_TO_INR: Decimal = Decimal("84.5")


# =============================================================================
# EQUITY DEMO TABLE
# =============================================================================

# (price, change_absolute) in the instrument's native currency
# Last rung of the equity ladder; unknown symbols resolve to UNAVAILABLE
DEMO_EQUITY_PRICES: dict[str, tuple[Decimal, Decimal]] = {
    "RELIANCE": (Decimal("2450.50"), Decimal("25.30")),
    "TCS": (Decimal("3650.75"), Decimal("-15.50")),
    "AAPL": (Decimal("189.97"), Decimal("2.34")),
    "GOOGL": (Decimal("141.80"), Decimal("-1.23")),
    "VOO": (Decimal("450.20"), Decimal("1.50")),
    "SPY": (Decimal("510.10"), Decimal("2.10")),
}


# =============================================================================
# CRYPTO
# =============================================================================

# Last-resort prices in INR per coin
CRYPTO_FALLBACK_PRICES: dict[str, Decimal] = {
    "bitcoin": Decimal("8200000"),
    "ethereum": Decimal("320000"),
    "binancecoin": Decimal("55000"),
    "solana": Decimal("12000"),
    "ripple": Decimal("50"),
    "cardano": Decimal("40"),
    "dogecoin": Decimal("12"),
    "polkadot": Decimal("600"),
    "matic-network": Decimal("60"),
    "shiba-inu": Decimal("0.002"),
    "chainlink": Decimal("1200"),
    "uniswap": Decimal("800"),
    "litecoin": Decimal("7000"),
    "avalanche-2": Decimal("3000"),
}

# CoinGecko id -> Binance USDT pair; unmapped ids are skipped by that tier
BINANCE_SYMBOLS: dict[str, str] = {
    "bitcoin": "BTCUSDT",
    "ethereum": "ETHUSDT",
    "binancecoin": "BNBUSDT",
    "solana": "SOLUSDT",
    "ripple": "XRPUSDT",
    "cardano": "ADAUSDT",
    "dogecoin": "DOGEUSDT",
    "polkadot": "DOTUSDT",
    "matic-network": "MATICUSDT",
    "shiba-inu": "SHIBUSDT",
}

# Ticker -> CoinGecko id for the coins offered without a search
POPULAR_CRYPTO_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "ADA": "cardano",
    "SOL": "solana",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "AVAX": "avalanche-2",
    "UNI": "uniswap",
    "LINK": "chainlink",
}

# Maximum coins returned by a crypto search
CRYPTO_SEARCH_LIMIT: int = 10


# =============================================================================
# COMMODITIES
# =============================================================================

# Reference prices in INR per unit (gram, barrel, mmBtu, kg)
COMMODITY_PRICES: dict[str, Decimal] = {
    "gold": Decimal("7500"),
    "silver": Decimal("95"),
    "crude-oil": Decimal("6000"),
    "natural-gas": Decimal("270"),
    "platinum": Decimal("3200"),
    "copper": Decimal("750"),
}


# =============================================================================
# SEARCH
# =============================================================================

# Queries shorter than this return no results without calling a vendor
MIN_SEARCH_QUERY_LENGTH: int = 2

# Maximum schemes returned by a mutual fund search
FUND_SEARCH_LIMIT: int = 50


# =============================================================================
# CIRCUIT BREAKER SETTINGS
# =============================================================================

# Probes allowed while a tier's circuit is half-open
CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS: int = 1

# Time window (seconds) for counting failures (0 = count all failures)
CIRCUIT_BREAKER_FAILURE_WINDOW: float = 300.0
