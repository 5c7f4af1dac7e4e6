# tests/services/test_fallback.py
"""
Tests for declarative fallback chains.
"""

import pytest

from valuation_engine.models import Provenance
from valuation_engine.services.exceptions import (
    AllTiersFailedError,
    ProviderUnavailableError,
    TickerNotFoundError,
)
from valuation_engine.services.fallback import FallbackChain, Tier, build_tier_breaker


def ok(value):
    def fetch(*args):
        return value
    return fetch


def failing(error):
    def fetch(*args):
        raise error
    return fetch


class TestFallbackChain:
    """Tests for FallbackChain.run."""

    def test_first_success_wins(self):
        """Should stop at the first tier that answers."""
        calls = []

        def second(*args):
            calls.append(args)
            return "b"

        chain = FallbackChain("test", [
            Tier("a", Provenance.PRIMARY_API, ok("a")),
            Tier("b", Provenance.SECONDARY_API, second),
        ])

        result = chain.run("X")

        assert result.succeeded
        assert result.value == "a"
        assert result.provenance == Provenance.PRIMARY_API
        assert calls == []

    def test_advances_on_market_data_error(self):
        """Should record the failure and try the next tier."""
        chain = FallbackChain("test", [
            Tier("a", Provenance.PRIMARY_API, failing(ProviderUnavailableError("a", "down"))),
            Tier("b", Provenance.SECONDARY_API, ok("b")),
        ])

        result = chain.run("X")

        assert result.value == "b"
        assert result.provenance == Provenance.SECONDARY_API
        assert [name for name, _ in result.errors] == ["a"]

    def test_skips_disabled_tier(self):
        """Disabled tiers should not be attempted or recorded."""
        chain = FallbackChain("test", [
            Tier("a", Provenance.PRIMARY_API, failing(AssertionError("called")), is_enabled=lambda: False),
            Tier("b", Provenance.SECONDARY_API, ok("b")),
        ])

        result = chain.run()

        assert result.value == "b"
        assert result.errors == []

    def test_all_failed(self):
        """Should return an unsuccessful result without raising."""
        chain = FallbackChain("test", [
            Tier("a", Provenance.PRIMARY_API, failing(ProviderUnavailableError("a", "down"))),
            Tier("b", Provenance.SECONDARY_API, failing(TickerNotFoundError("X", "NSE", "b"))),
        ])

        result = chain.run("X")

        assert not result.succeeded
        assert result.value is None
        assert result.provenance is None
        assert len(result.errors) == 2

    def test_unexpected_errors_advance(self):
        """An unexpected exception should fail only its own tier."""
        chain = FallbackChain("test", [
            Tier("a", Provenance.PRIMARY_API, failing(AttributeError("'str' object has no attribute 'get'"))),
            Tier("b", Provenance.SECONDARY_API, ok("b")),
        ])

        result = chain.run("X")

        assert result.value == "b"
        assert result.provenance == Provenance.SECONDARY_API
        assert result.errors[0][0] == "a"
        assert isinstance(result.errors[0][1], AttributeError)

    def test_unexpected_errors_count_against_breaker(self, clock):
        """An unexpected exception should be booked as a tier failure."""
        breaker = build_tier_breaker("a", failure_threshold=1, recovery_timeout=60, clock=clock)
        chain = FallbackChain("test", [
            Tier("a", Provenance.PRIMARY_API, failing(TypeError("bad row")), breaker=breaker),
        ])

        result = chain.run()

        assert not result.succeeded
        assert breaker.is_open

    def test_run_or_raise(self):
        """Should raise AllTiersFailedError listing every tier."""
        chain = FallbackChain("equity", [
            Tier("a", Provenance.PRIMARY_API, failing(ProviderUnavailableError("a", "down"))),
        ])

        with pytest.raises(AllTiersFailedError, match="All tiers of 'equity' failed") as exc_info:
            chain.run_or_raise()

        assert exc_info.value.errors[0][0] == "a"


class TestFallbackChainBreakers:
    """Tests for tier circuit breakers inside a chain."""

    def test_open_breaker_skips_tier(self, clock):
        """A tripped tier should be skipped without calling it."""
        calls = []

        def flaky(*args):
            calls.append(args)
            raise ProviderUnavailableError("a", "down")

        breaker = build_tier_breaker("test:a", failure_threshold=2, recovery_timeout=60, clock=clock)
        chain = FallbackChain("test", [
            Tier("a", Provenance.PRIMARY_API, flaky, breaker=breaker),
            Tier("b", Provenance.SECONDARY_API, ok("b")),
        ])

        for _ in range(3):
            assert chain.run().value == "b"

        assert len(calls) == 2
        assert breaker.is_open

    def test_reset_breakers(self, clock):
        """reset_breakers should close every tier circuit."""
        breaker = build_tier_breaker("test:a", failure_threshold=1, recovery_timeout=60, clock=clock)
        chain = FallbackChain("test", [
            Tier("a", Provenance.PRIMARY_API, failing(ProviderUnavailableError("a", "down")), breaker=breaker),
        ])
        chain.run()
        assert breaker.is_open

        chain.reset_breakers()

        assert breaker.is_closed
