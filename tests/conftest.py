# tests/conftest.py
"""
Pytest configuration and fixtures.

This module provides shared fixtures for all tests:
- A controllable clock for TTLs, budgets and breakers
- Fake quote / crypto batch providers
- httpx clients backed by MockTransport
- Database session factory (in-memory SQLite)
- Sample raw holdings documents
"""

from decimal import Decimal
from typing import Any, Callable, Iterator

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from valuation_engine.models import Base, Provenance
from valuation_engine.services.exceptions import TickerNotFoundError
from valuation_engine.services.fx_rate_service import RateTable
from valuation_engine.services.market_data.base import (
    FundMatch,
    InstrumentMatch,
    PriceQuote,
    QuoteProvider,
)
from valuation_engine.services.market_data.crypto import CryptoBatchProvider, CryptoMatch


# =============================================================================
# CLOCK
# =============================================================================

class FakeClock:
    """Callable time source; tests move it forward explicitly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# FAKE PROVIDERS
# =============================================================================

def make_quote(
        price: str | Decimal,
        change: str | Decimal = "0",
        provenance: Provenance = Provenance.PRIMARY_API,
        name: str | None = None,
) -> PriceQuote:
    price = Decimal(str(price))
    change = Decimal(str(change))
    previous = price - change
    percent = change / previous * 100 if previous else Decimal("0")
    return PriceQuote(
        price=price,
        change_absolute=change,
        change_percent=percent,
        provenance=provenance,
        name=name,
    )


class FakeQuoteProvider(QuoteProvider):
    """
    In-memory QuoteProvider.

    Unknown symbols raise TickerNotFoundError; `fail_with` makes every
    lookup raise the given error instead.
    """

    def __init__(self, name: str = "fake", available: bool = True):
        super().__init__(max_attempts=1)
        self._name = name
        self.available = available
        self.quotes: dict[str, PriceQuote] = {}
        self.error: Exception | None = None
        self.calls: list[tuple[str, str]] = []
        self.search_results: list[Any] = []
        self.search_calls: list[str] = []
        self.on_call: Callable[[str, str], None] | None = None

    @property
    def name(self) -> str:
        return self._name

    def is_available(self) -> bool:
        return self.available

    def set_quote(self, symbol: str, price: str, change: str = "0", name: str | None = None) -> None:
        self.quotes[symbol.upper()] = make_quote(price, change, name=name)

    def fail_with(self, error: Exception | None) -> None:
        self.error = error

    def get_quote(self, symbol: str, exchange: str) -> PriceQuote:
        self.calls.append((symbol, exchange))
        if self.on_call is not None:
            self.on_call(symbol, exchange)
        if self.error is not None:
            raise self.error
        quote = self.quotes.get(symbol.upper())
        if quote is None:
            raise TickerNotFoundError(ticker=symbol, exchange=exchange, provider=self._name)
        return quote

    def search(self, query: str) -> list[Any]:
        self.search_calls.append(query)
        return list(self.search_results)


class FakeCryptoProvider(CryptoBatchProvider):
    """In-memory crypto tier pricing only the ids it was given."""

    def __init__(self, name: str, provenance: Provenance = Provenance.PRIMARY_API):
        super().__init__(max_attempts=1)
        self._name = name
        self.provenance = provenance
        self.prices: dict[str, PriceQuote] = {}
        self.error: Exception | None = None
        self.calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return self._name

    def set_price(self, coin_id: str, price: str, change: str = "0") -> None:
        self.prices[coin_id] = make_quote(price, change, provenance=self.provenance)

    def fail_with(self, error: Exception | None) -> None:
        self.error = error

    def _fetch_prices(self, ids: list[str]) -> dict[str, PriceQuote]:
        self.calls.append(list(ids))
        if self.error is not None:
            raise self.error
        return {coin_id: self.prices[coin_id] for coin_id in ids if coin_id in self.prices}


@pytest.fixture
def primary() -> FakeQuoteProvider:
    return FakeQuoteProvider("yahoo")


@pytest.fixture
def secondary() -> FakeQuoteProvider:
    provider = FakeQuoteProvider("finnhub")
    provider.search_results = [
        InstrumentMatch(symbol="RELIANCE", full_symbol="RELIANCE.NS", name="Reliance Industries", exchange="NSE"),
    ]
    return provider


@pytest.fixture
def nav_provider() -> FakeQuoteProvider:
    provider = FakeQuoteProvider("mfapi")
    provider.search_results = [FundMatch(code="119551", name="Axis Bluechip Fund - Direct Growth")]
    return provider


def create_crypto_match(coin_id: str = "bitcoin") -> CryptoMatch:
    return CryptoMatch(id=coin_id, name=coin_id.title(), symbol=coin_id[:3].upper())


# =============================================================================
# HTTP
# =============================================================================

def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.Client:
    """httpx.Client whose every request is answered by handler."""
    return httpx.Client(transport=httpx.MockTransport(handler))


def json_response(body: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=body)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="function")
def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> Iterator[sessionmaker[Session]]:
    yield sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


# =============================================================================
# RATES
# =============================================================================

def create_rate_table(fetched_at: float | None = 1_700_000_000.0, **rates: str) -> RateTable:
    """INR-based table; 1 USD = 80 INR unless overridden."""
    values = {"USD": "0.0125", "EUR": "0.011"}
    values.update(rates)
    return RateTable(
        base="INR",
        rates={code: Decimal(value) for code, value in values.items()},
        fetched_at=fetched_at,
    )


# =============================================================================
# SAMPLE DATA
# =============================================================================

@pytest.fixture
def sample_raw_holdings() -> dict[str, Any]:
    """A raw document touching every section and legacy shape."""
    return {
        "investments": [
            {"symbol": "reliance", "exchange": "NSE", "quantity": 10, "buy_price": 2400},
            {"symbol": "AAPL", "exchange": "NASDAQ", "quantity": "5", "pricePerShare": "150.5"},
            {"symbol": "RELIANCE", "exchange": "nse", "quantity": 5, "buy_price": 2500},
            {"symbol": "119551", "exchange": "MF", "quantity": "100.5", "buy_price": 50, "name": "Axis Bluechip"},
        ],
        "crypto": {
            "bitcoin": 0.5,
            "ethereum": {"quantity": 2, "avg_price": 200000},
            "solana": {"quantity": 10, "invested": 100000, "avg_price": 9000},
        },
        "mutual_funds": {"120503": 40, "119551": 10},
        "markets": [
            {"asset_type": "Forex", "asset_id": "usd", "quantity": 100, "price": 82, "invested": 8200},
            {"assetType": "commodity", "assetId": "Gold", "quantity": 10, "price": 7000, "invested": 70000},
        ],
        "fixed_assets": [
            {"name": "Flat", "description": "Pune flat", "purchase_value": 5000000, "current_value": 6500000},
        ],
    }
