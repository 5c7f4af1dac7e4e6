# tests/services/test_crypto_service.py
"""
Tests for the CryptoPriceService.

This module tests:
- Batch cache hits (only when every requested id is cached)
- Merge-on-write of successful batches
- Tier order and provenance
- Per-id fallback: stale cache, hardcoded table, UNAVAILABLE
"""

from decimal import Decimal
from unittest.mock import MagicMock

import httpx
import pytest

from valuation_engine.models import Provenance
from valuation_engine.services.exceptions import ProviderUnavailableError
from valuation_engine.services.market_data.crypto import (
    CoinCapProvider,
    CoinGeckoProvider,
    UsdRateSource,
)
from valuation_engine.services.market_data.crypto_service import (
    CryptoPriceService,
    normalize_ids,
)
from tests.conftest import FakeCryptoProvider, create_crypto_match, json_response, mock_client


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def coingecko() -> FakeCryptoProvider:
    return FakeCryptoProvider("coingecko", Provenance.PRIMARY_API)


@pytest.fixture
def coincap() -> FakeCryptoProvider:
    return FakeCryptoProvider("coincap", Provenance.SECONDARY_API)


@pytest.fixture
def binance() -> FakeCryptoProvider:
    return FakeCryptoProvider("binance", Provenance.TERTIARY_API)


@pytest.fixture
def search_provider() -> MagicMock:
    provider = MagicMock()
    provider.search.return_value = [create_crypto_match("bitcoin")]
    return provider


@pytest.fixture
def service(coingecko, coincap, binance, search_provider, clock) -> CryptoPriceService:
    return CryptoPriceService(
        tiers=[coingecko, coincap, binance],
        base_currency="INR",
        search_provider=search_provider,
        cache_ttl_seconds=60,
        clock=clock,
    )


def fail_all(*providers: FakeCryptoProvider) -> None:
    for provider in providers:
        provider.fail_with(ProviderUnavailableError(provider.name, "down"))


# =============================================================================
# IDS
# =============================================================================

class TestNormalizeIds:
    """Tests for id normalization."""

    def test_normalize(self):
        """Should lowercase, trim, drop blanks and de-duplicate in order."""
        assert normalize_ids([" Bitcoin", "ethereum", "BITCOIN", "", "  "]) == ["bitcoin", "ethereum"]


# =============================================================================
# LOOKUPS
# =============================================================================

class TestCryptoLookup:
    """Tests for get_prices."""

    def test_empty_request(self, service, coingecko):
        """No ids should mean no vendor call."""
        assert service.get_prices([]) == {}
        assert coingecko.calls == []

    def test_primary_tier(self, service, coingecko):
        """Should price the batch from the first tier."""
        coingecko.set_price("bitcoin", "8500000", "100000")
        coingecko.set_price("ethereum", "330000")

        prices = service.get_prices(["Bitcoin", "ethereum"])

        assert set(prices) == {"bitcoin", "ethereum"}
        assert prices["bitcoin"].price == Decimal("8500000")
        assert prices["bitcoin"].provenance == Provenance.PRIMARY_API
        assert coingecko.calls == [["bitcoin", "ethereum"]]

    def test_next_tier_on_failure(self, service, coingecko, coincap):
        """Should fall through to the secondary tier."""
        coingecko.fail_with(ProviderUnavailableError("coingecko", "429"))
        coincap.set_price("bitcoin", "8400000")

        prices = service.get_prices(["bitcoin"])

        assert prices["bitcoin"].provenance == Provenance.SECONDARY_API

    def test_empty_batch_advances_tier(self, service, coingecko, coincap, binance):
        """A tier that prices none of the ids should count as failed."""
        binance.set_price("bitcoin", "8300000")

        prices = service.get_prices(["bitcoin"])

        assert prices["bitcoin"].provenance == Provenance.TERTIARY_API
        assert coingecko.calls == [["bitcoin"]]
        assert coincap.calls == [["bitcoin"]]


# =============================================================================
# CACHE
# =============================================================================

class TestCryptoCache:
    """Tests for the merged batch cache."""

    def test_hit_when_all_ids_cached(self, service, coingecko, clock):
        """A fresh batch holding every id should be served without a call."""
        coingecko.set_price("bitcoin", "8500000")
        coingecko.set_price("ethereum", "330000")
        service.get_prices(["bitcoin", "ethereum"])
        clock.advance(59)

        prices = service.get_prices(["ethereum"])

        assert prices["ethereum"].price == Decimal("330000")
        assert len(coingecko.calls) == 1

    def test_partial_hit_refetches(self, service, coingecko):
        """A missing id should send the whole request to the tiers."""
        coingecko.set_price("bitcoin", "8500000")
        coingecko.set_price("solana", "12500")
        service.get_prices(["bitcoin"])

        service.get_prices(["bitcoin", "solana"])

        assert coingecko.calls[-1] == ["bitcoin", "solana"]

    def test_batches_are_merged(self, service, coingecko):
        """A later batch should add to the cache, not replace it."""
        coingecko.set_price("bitcoin", "8500000")
        coingecko.set_price("ethereum", "330000")
        service.get_prices(["bitcoin"])

        service.get_prices(["ethereum"])

        assert service.cached_ids() == ["bitcoin", "ethereum"]

    def test_expired_batch_refetched(self, service, coingecko, clock):
        """After the TTL the batch should be fetched again."""
        coingecko.set_price("bitcoin", "8500000")
        service.get_prices(["bitcoin"])
        clock.advance(60)

        service.get_prices(["bitcoin"])

        assert len(coingecko.calls) == 2

    def test_clear_cache(self, service, coingecko):
        """clear_cache should drop every cached id."""
        coingecko.set_price("bitcoin", "8500000")
        service.get_prices(["bitcoin"])

        service.clear_cache()

        assert service.cached_ids() == []


# =============================================================================
# FALLBACKS
# =============================================================================

class TestCryptoFallback:
    """Tests for per-id fallback when tiers fail."""

    def test_stale_when_all_tiers_fail(self, service, coingecko, coincap, binance, clock):
        """The last cached price should be served stale."""
        coingecko.set_price("bitcoin", "8500000")
        service.get_prices(["bitcoin"])
        clock.advance(600)
        fail_all(coingecko, coincap, binance)

        prices = service.get_prices(["bitcoin"])

        assert prices["bitcoin"].price == Decimal("8500000")
        assert prices["bitcoin"].provenance == Provenance.CACHED_STALE
        assert prices["bitcoin"].is_stale

    def test_hardcoded_table(self, service, coingecko, coincap, binance):
        """With nothing cached, known ids should use the reference table."""
        fail_all(coingecko, coincap, binance)

        prices = service.get_prices(["bitcoin", "unknown-coin"])

        assert prices["bitcoin"].price == Decimal("8200000")
        assert prices["bitcoin"].provenance == Provenance.HARDCODED_FALLBACK
        assert prices["unknown-coin"].provenance == Provenance.UNAVAILABLE
        assert prices["unknown-coin"].price == Decimal("0")

    def test_id_missing_from_successful_batch(self, service, coingecko):
        """An id the serving tier did not price should fall back on its own."""
        coingecko.set_price("bitcoin", "8500000")

        prices = service.get_prices(["bitcoin", "ethereum", "unknown-coin"])

        assert prices["bitcoin"].provenance == Provenance.PRIMARY_API
        assert prices["ethereum"].provenance == Provenance.HARDCODED_FALLBACK
        assert prices["ethereum"].price == Decimal("320000")
        assert prices["unknown-coin"].provenance == Provenance.UNAVAILABLE

    def test_hardcoded_table_in_usd(self, coingecko, clock):
        """The INR reference table should be converted for a non-INR base."""
        fail_all(coingecko)
        service = CryptoPriceService(tiers=[coingecko], base_currency="USD", clock=clock)

        prices = service.get_prices(["bitcoin"])

        assert prices["bitcoin"].price == Decimal("97580")

    def test_malformed_tier_body_uses_table(self, clock):
        """A tier answering with unexpected rows should not stop the fallback."""
        def handler(request):
            if request.url.path == "/v4/latest/USD":
                return json_response({"rates": {"INR": 80}})
            if request.url.path == "/v2/assets":
                return json_response({"data": ["oops"]})
            return httpx.Response(503)

        client = mock_client(handler)
        service = CryptoPriceService(
            tiers=[
                CoinGeckoProvider(client, max_attempts=1),
                CoinCapProvider(client, UsdRateSource(client, clock=clock), max_attempts=1),
            ],
            base_currency="INR",
            clock=clock,
        )

        prices = service.get_prices(["bitcoin"])

        assert prices["bitcoin"].provenance == Provenance.HARDCODED_FALLBACK
        assert prices["bitcoin"].price == Decimal("8200000")

    def test_reset_circuits_reopens_tripped_tier(self, coingecko, clock):
        """A tripped tier should be skipped until its circuit is reset."""
        service = CryptoPriceService(tiers=[coingecko], breaker_failure_threshold=1, clock=clock)
        fail_all(coingecko)
        service.get_prices(["bitcoin"])
        service.get_prices(["bitcoin"])
        assert len(coingecko.calls) == 1

        coingecko.fail_with(None)
        coingecko.set_price("bitcoin", "8500000")
        service.reset_circuits()
        prices = service.get_prices(["bitcoin"])

        assert prices["bitcoin"].provenance == Provenance.PRIMARY_API
        assert len(coingecko.calls) == 2


# =============================================================================
# SEARCH
# =============================================================================

class TestCryptoSearch:
    """Tests for coin search."""

    def test_short_query(self, service, search_provider):
        """Queries under two characters should not call the vendor."""
        assert service.search("b") == []
        search_provider.search.assert_not_called()

    def test_search(self, service, search_provider):
        """Should delegate to the search provider."""
        results = service.search(" bitcoin ")

        assert results[0].id == "bitcoin"
        search_provider.search.assert_called_once_with("bitcoin")

    def test_search_without_provider(self, coingecko, clock):
        """Should raise when no CoinGecko tier is configured."""
        service = CryptoPriceService(tiers=[coingecko], clock=clock)

        with pytest.raises(ProviderUnavailableError):
            service.search("bitcoin")

    def test_popular_coins(self, service):
        """Popular tickers should map to CoinGecko ids without a vendor call."""
        popular = service.popular_coins()

        assert popular["BTC"] == "bitcoin"
        assert popular["ETH"] == "ethereum"
