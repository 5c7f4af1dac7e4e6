# tests/services/test_http_providers.py
"""
Tests for the HTTP vendor tiers.

This module tests:
- HTTP failure classification shared by every vendor
- Finnhub quotes, symbol mapping and search
- mfapi.in NAV lookups and scheme search
- CoinGecko, CoinCap and Binance batch pricing
- The crypto-local USD rate
"""

from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from valuation_engine.models import Provenance
from valuation_engine.services.exceptions import (
    MalformedResponseError,
    ProviderUnavailableError,
    RateLimitError,
    TickerNotFoundError,
)
from valuation_engine.services.market_data import (
    BinanceProvider,
    CoinCapProvider,
    CoinGeckoProvider,
    FinnhubProvider,
    MfapiProvider,
    UsdRateSource,
)
from tests.conftest import json_response, mock_client


# =============================================================================
# HELPERS
# =============================================================================

class Router:
    """MockTransport handler answering by URL path; records every request."""

    def __init__(self, routes: dict[str, object]):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404)
        if callable(route):
            return route(request)
        if isinstance(route, httpx.Response):
            return route
        return json_response(route)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def finnhub(routes: dict[str, object], api_key: str | None = "key", max_attempts: int = 1):
    router = Router(routes)
    return FinnhubProvider(mock_client(router), api_key=api_key, max_attempts=max_attempts), router


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

class TestHttpErrorClassification:
    """Tests for HttpMarketDataProvider._get_json."""

    def test_rate_limited(self):
        """429 should raise RateLimitError with Retry-After."""
        provider, _ = finnhub({"/api/v1/quote": httpx.Response(429, headers={"Retry-After": "30"})})

        with pytest.raises(RateLimitError) as exc_info:
            provider.get_quote("AAPL", "NASDAQ")

        assert exc_info.value.retry_after == 30.0

    def test_not_found(self):
        """404 should raise TickerNotFoundError."""
        provider, _ = finnhub({})

        with pytest.raises(TickerNotFoundError):
            provider.get_quote("AAPL", "NASDAQ")

    def test_server_error(self):
        """5xx should raise ProviderUnavailableError."""
        provider, _ = finnhub({"/api/v1/quote": httpx.Response(502)})

        with pytest.raises(ProviderUnavailableError, match="HTTP 502"):
            provider.get_quote("AAPL", "NASDAQ")

    def test_client_error(self):
        """Other non-2xx statuses should raise MalformedResponseError."""
        provider, _ = finnhub({"/api/v1/quote": httpx.Response(401)})

        with pytest.raises(MalformedResponseError, match="HTTP 401"):
            provider.get_quote("AAPL", "NASDAQ")

    def test_non_json_body(self):
        """A body that is not JSON should raise MalformedResponseError."""
        provider, _ = finnhub({"/api/v1/quote": httpx.Response(200, text="<html>")})

        with pytest.raises(MalformedResponseError, match="not JSON"):
            provider.get_quote("AAPL", "NASDAQ")

    @pytest.mark.parametrize("error", [httpx.ConnectError, httpx.ReadTimeout])
    def test_transport_errors(self, error):
        """Network failures and timeouts should raise ProviderUnavailableError."""
        def handler(request):
            raise error("boom", request=request)

        provider = FinnhubProvider(mock_client(handler), api_key="key", max_attempts=1)

        with pytest.raises(ProviderUnavailableError):
            provider.get_quote("AAPL", "NASDAQ")

    def test_transient_failure_retried(self):
        """A 5xx followed by a success should be retried within max_attempts."""
        responses = iter([httpx.Response(503), json_response({"c": 190, "pc": 188})])
        provider, router = finnhub({"/api/v1/quote": lambda request: next(responses)}, max_attempts=2)

        quote = provider.get_quote("AAPL", "NASDAQ")

        assert quote.price == Decimal("190")
        assert len(router.requests) == 2

    def test_rate_limit_not_retried(self):
        """429 should not be retried."""
        provider, router = finnhub({"/api/v1/quote": httpx.Response(429)}, max_attempts=3)

        with pytest.raises(RateLimitError):
            provider.get_quote("AAPL", "NASDAQ")

        assert len(router.requests) == 1


# =============================================================================
# FINNHUB
# =============================================================================

class TestFinnhubProvider:
    """Tests for the secondary equity channel."""

    @pytest.mark.parametrize("symbol,exchange,expected", [
        ("reliance", "NSE", "RELIANCE.NS"),
        ("RELIANCE", "BSE", "RELIANCE.BO"),
        ("AAPL", "NASDAQ", "AAPL"),
        ("SPY", "NYSE", "SPY"),
        ("VOO", "US", "VOO"),
        ("SPY", "NYSEARCA", "SPY"),
        ("GLD", "AMEX", "GLD"),
        ("VOD", "LSE", "VOD.L"),
        ("SAP", "XETRA", "SAP.DE"),
        ("7203", "TSE", "7203.T"),
        ("ABC", "UNKNOWN", "ABC.BO"),
    ])
    def test_build_symbol(self, symbol, exchange, expected):
        """Should map exchanges to Finnhub suffixes."""
        assert FinnhubProvider.build_symbol(symbol, exchange) == expected

    def test_quote(self):
        """Should compute change from the previous close."""
        provider, router = finnhub({"/api/v1/quote": {"c": 2500, "pc": 2450, "d": 50}})

        quote = provider.get_quote("RELIANCE", "NSE")

        assert quote.price == Decimal("2500")
        assert quote.change_absolute == Decimal("50")
        assert quote.change_percent == Decimal("2.0408")
        assert quote.provenance == Provenance.SECONDARY_API
        params = router.requests[0].url.params
        assert params["symbol"] == "RELIANCE.NS"
        assert params["token"] == "key"

    def test_pence_quote_scaled(self):
        """LSE quotes in pence should be reported in pounds."""
        provider, _ = finnhub({"/api/v1/quote": {"c": 7250, "pc": 7000}})

        quote = provider.get_quote("VOD", "LSE")

        assert quote.price == Decimal("72.5")
        assert quote.change_absolute == Decimal("2.5")
        assert quote.change_percent == Decimal("3.5714")

    def test_zero_price_is_unknown_symbol(self):
        """Finnhub's c = 0 answer means the symbol is unknown."""
        provider, _ = finnhub({"/api/v1/quote": {"c": 0, "pc": 0}})

        with pytest.raises(TickerNotFoundError):
            provider.get_quote("NOPE", "NSE")

    def test_missing_previous_close(self):
        """Without a previous close the change should be zero."""
        provider, _ = finnhub({"/api/v1/quote": {"c": 100}})

        quote = provider.get_quote("AAPL", "NASDAQ")

        assert quote.change_absolute == Decimal("0")
        assert quote.change_percent == Decimal("0")

    def test_available_only_with_key(self):
        """The tier should be disabled without an API key."""
        provider, _ = finnhub({}, api_key=None)

        assert provider.is_available() is False

    def test_search(self):
        """Should strip exchange suffixes from results."""
        provider, _ = finnhub({"/api/v1/search": {"result": [
            {"symbol": "RELIANCE.NS", "description": "RELIANCE INDUSTRIES"},
            {"symbol": "RELIANCE.BO", "description": "RELIANCE INDUSTRIES"},
            {"symbol": "RELI", "description": "Reliance Global"},
            {"symbol": "", "description": "ignored"},
        ]}})

        matches = provider.search("reliance")

        assert [(m.symbol, m.exchange) for m in matches] == [
            ("RELIANCE", "NSE"),
            ("RELIANCE", "BSE"),
            ("RELI", "US"),
        ]
        assert matches[0].full_symbol == "RELIANCE.NS"

    @pytest.mark.parametrize("body", [{"result": ["RELIANCE.NS"]}, {"result": "RELIANCE.NS"}])
    def test_malformed_search(self, body):
        """Search results that are not objects should raise."""
        provider, _ = finnhub({"/api/v1/search": body})

        with pytest.raises(MalformedResponseError):
            provider.search("reliance")


# =============================================================================
# MFAPI
# =============================================================================

NAV_BODY = {
    "meta": {"scheme_code": 119551, "scheme_name": "Axis Bluechip Fund - Direct Growth"},
    "data": [
        {"date": "15-01-2024", "nav": "52.25000"},
        {"date": "12-01-2024", "nav": "52.00000"},
    ],
}

SCHEME_LIST = [
    {"schemeCode": 119551, "schemeName": "Axis Bluechip Fund - Direct Plan - Growth"},
    {"schemeCode": 120503, "schemeName": "Axis Midcap Fund - Direct Plan - Growth"},
    {"schemeCode": 100027, "schemeName": "HDFC Top 100 Fund - Growth"},
]


class TestMfapiProvider:
    """Tests for the NAV source."""

    def test_nav(self):
        """Should use the newest NAV and the one before it for the change."""
        router = Router({"/mf/119551": NAV_BODY})
        provider = MfapiProvider(mock_client(router), max_attempts=1)

        quote = provider.get_quote("119551")

        assert quote.price == Decimal("52.25")
        assert quote.change_absolute == Decimal("0.25")
        assert quote.name == "Axis Bluechip Fund - Direct Growth"
        assert quote.as_of == datetime(2024, 1, 15, tzinfo=timezone.utc)

    def test_single_nav_row(self):
        """One NAV row should mean zero change."""
        router = Router({"/mf/119551": {"meta": {}, "data": [{"date": "15-01-2024", "nav": "52.25"}]}})
        provider = MfapiProvider(mock_client(router), max_attempts=1)

        assert provider.get_quote("119551").change_absolute == Decimal("0")

    def test_unknown_scheme(self):
        """An empty data array should be an unknown instrument."""
        router = Router({"/mf/999999": {"meta": {}, "data": []}})
        provider = MfapiProvider(mock_client(router), max_attempts=1)

        with pytest.raises(TickerNotFoundError):
            provider.get_quote("999999")

    @pytest.mark.parametrize("body", [
        {"meta": {}, "data": ["unexpected"]},
        {"meta": {}, "data": [{"date": "15-01-2024", "nav": "52.25"}, "unexpected"]},
        {"meta": {}, "data": "unexpected"},
    ])
    def test_malformed_nav_rows(self, body):
        """NAV rows that are not objects should fail the tier as malformed."""
        router = Router({"/mf/119551": body})
        provider = MfapiProvider(mock_client(router), max_attempts=1)

        with pytest.raises(MalformedResponseError):
            provider.get_quote("119551")

    def test_malformed_scheme_list(self):
        """A scheme list entry that is not an object should raise."""
        router = Router({"/mf": ["Axis Bluechip Fund"]})
        provider = MfapiProvider(mock_client(router), max_attempts=1)

        with pytest.raises(MalformedResponseError):
            provider.search("axis")

    def test_search_all_terms_must_match(self):
        """Every term should appear in the scheme name, case-insensitively."""
        router = Router({"/mf": SCHEME_LIST})
        provider = MfapiProvider(mock_client(router), max_attempts=1)

        matches = provider.search("AXIS growth midcap")

        assert [m.code for m in matches] == ["120503"]
        assert matches[0].exchange == "MF"

    def test_scheme_list_fetched_once(self):
        """The scheme list should be downloaded once per provider."""
        router = Router({"/mf": SCHEME_LIST})
        provider = MfapiProvider(mock_client(router), max_attempts=1)

        provider.search("axis")
        provider.search("hdfc")

        assert router.paths() == ["/mf"]

    def test_search_limit(self):
        """Should stop at the limit."""
        router = Router({"/mf": SCHEME_LIST})
        provider = MfapiProvider(mock_client(router), max_attempts=1)

        assert len(provider.search("fund", limit=2)) == 2


# =============================================================================
# CRYPTO TIERS
# =============================================================================

USD_RATE_PATH = "/v4/latest/USD"


class TestCoinGeckoProvider:
    """Tests for the primary crypto tier."""

    def test_prices(self):
        """Should read base-currency prices and derive the absolute change."""
        router = Router({"/api/v3/simple/price": {
            "bitcoin": {"inr": 8000000, "inr_24h_change": 25},
            "ethereum": {"inr": 0},
        }})
        provider = CoinGeckoProvider(mock_client(router), base_currency="INR", max_attempts=1)

        prices = provider.get_prices(["bitcoin", "ethereum", "dogecoin"])

        assert list(prices) == ["bitcoin"]
        assert prices["bitcoin"].price == Decimal("8000000")
        assert prices["bitcoin"].change_absolute == Decimal("1600000")
        assert prices["bitcoin"].change_percent == Decimal("25")
        params = router.requests[0].url.params
        assert params["ids"] == "bitcoin,ethereum,dogecoin"
        assert params["vs_currencies"] == "inr"

    def test_no_prices_fails_tier(self):
        """A batch with no usable price should raise."""
        router = Router({"/api/v3/simple/price": {}})
        provider = CoinGeckoProvider(mock_client(router), max_attempts=1)

        with pytest.raises(MalformedResponseError):
            provider.get_prices(["bitcoin"])

    def test_search(self):
        """Should map coins to matches."""
        router = Router({"/api/v3/search": {"coins": [
            {"id": "bitcoin", "name": "Bitcoin", "symbol": "btc", "market_cap_rank": 1},
        ]}})
        provider = CoinGeckoProvider(mock_client(router), max_attempts=1)

        matches = provider.search("bitcoin")

        assert matches[0].id == "bitcoin"
        assert matches[0].symbol == "BTC"
        assert matches[0].market_cap_rank == 1

    def test_malformed_search(self):
        """Coin entries that are not objects should raise."""
        router = Router({"/api/v3/search": {"coins": ["bitcoin"]}})
        provider = CoinGeckoProvider(mock_client(router), max_attempts=1)

        with pytest.raises(MalformedResponseError):
            provider.search("bitcoin")


class TestCoinCapProvider:
    """Tests for the secondary crypto tier."""

    def test_prices_converted_from_usd(self, clock):
        """USD prices should be multiplied by the USD rate."""
        router = Router({
            USD_RATE_PATH: {"rates": {"INR": 80}},
            "/v2/assets": {"data": [
                {"id": "bitcoin", "priceUsd": "100000.5", "changePercent24Hr": "-20"},
                {"id": "tether", "priceUsd": "1"},
            ]},
        })
        client = mock_client(router)
        provider = CoinCapProvider(client, UsdRateSource(client, clock=clock), max_attempts=1)

        prices = provider.get_prices(["bitcoin"])

        assert list(prices) == ["bitcoin"]
        assert prices["bitcoin"].price == Decimal("8000040")
        assert prices["bitcoin"].change_absolute == Decimal("-2000010")
        assert prices["bitcoin"].provenance == Provenance.SECONDARY_API

    def test_malformed_assets(self, clock):
        """Asset entries that are not objects should fail the tier as malformed."""
        router = Router({
            USD_RATE_PATH: {"rates": {"INR": 80}},
            "/v2/assets": {"data": ["oops"]},
        })
        client = mock_client(router)
        provider = CoinCapProvider(client, UsdRateSource(client, clock=clock), max_attempts=1)

        with pytest.raises(MalformedResponseError):
            provider.get_prices(["bitcoin"])


class TestBinanceProvider:
    """Tests for the tertiary crypto tier."""

    def test_mapped_ids_only(self, clock):
        """Unmapped ids and failed pairs should be skipped."""
        def ticker(request):
            if request.url.params["symbol"] == "BTCUSDT":
                return json_response({"lastPrice": "100000", "priceChangePercent": "0"})
            return httpx.Response(500)

        router = Router({USD_RATE_PATH: {"rates": {"INR": 80}}, "/api/v3/ticker/24hr": ticker})
        client = mock_client(router)
        provider = BinanceProvider(client, UsdRateSource(client, clock=clock))

        prices = provider.get_prices(["bitcoin", "ethereum", "unmapped-coin"])

        assert list(prices) == ["bitcoin"]
        assert prices["bitcoin"].price == Decimal("8000000")
        assert prices["bitcoin"].provenance == Provenance.TERTIARY_API

    def test_nothing_mapped_fails_tier(self, clock):
        """A batch with no mapped id should fail without any request."""
        router = Router({})
        client = mock_client(router)
        provider = BinanceProvider(client, UsdRateSource(client, clock=clock))

        with pytest.raises(MalformedResponseError):
            provider.get_prices(["unmapped-coin"])

        assert router.requests == []


class TestUsdRateSource:
    """Tests for the crypto-local USD rate."""

    def test_fetched_once_per_ttl(self, clock):
        """Should cache the rate for the TTL."""
        router = Router({USD_RATE_PATH: {"rates": {"INR": 83.2}}})
        source = UsdRateSource(mock_client(router), base_currency="INR", ttl_seconds=3600, clock=clock)

        assert source.get_rate() == Decimal("83.2")
        clock.advance(3599)
        source.get_rate()

        assert len(router.requests) == 1

    def test_failure_keeps_default(self, clock):
        """A failed fetch should fall back to the default rate."""
        router = Router({USD_RATE_PATH: httpx.Response(500)})
        source = UsdRateSource(mock_client(router), base_currency="INR", clock=clock)

        assert source.get_rate() == Decimal("84.5")

    def test_usd_base_needs_no_fetch(self, clock):
        """With a USD base the rate is 1."""
        router = Router({})
        source = UsdRateSource(mock_client(router), base_currency="USD", clock=clock)

        assert source.get_rate() == Decimal("1")
        assert router.requests == []
