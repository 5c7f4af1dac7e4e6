# valuation_engine/services/protocols.py
"""
Protocol interfaces for the engine's collaborators and injected services.

Using typing.Protocol enables structural subtyping:
- Application storage classes satisfy these without inheriting anything
- Test fakes work without explicit inheritance
- Clear documentation of required interfaces
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable, Mapping, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from valuation_engine.services.fx_rate_service import RateTable
    from valuation_engine.services.market_data.base import PriceQuote
    from valuation_engine.services.valuation.types import Holding


# =============================================================================
# INBOUND COLLABORATORS
# =============================================================================

class HoldingsSource(Protocol):
    """
    Persistence collaborator that stores the user's holdings.

    Returns either canonical Holding objects or the raw stored records
    (a mapping with investments / crypto / mutual_funds / markets /
    fixed_assets sections); raw records are normalized at ingestion.
    """

    def get_holdings(self) -> Iterable[Holding] | Mapping[str, Any]:
        ...


class UserSettingsSource(Protocol):
    """Returns at least {"display_currency": "INR"}."""

    def get_user_settings(self) -> Mapping[str, Any]:
        ...


class QuoteStore(Protocol):
    """Durable quote cache that survives process restarts."""

    def get_stored_quote(self, symbol: str, exchange: str) -> PriceQuote | None:
        ...

    def save_stored_quote(self, symbol: str, exchange: str, quote: PriceQuote) -> None:
        ...

    def delete_stored_quote(self, symbol: str, exchange: str) -> None:
        ...


# =============================================================================
# SERVICES INJECTED INTO THE AGGREGATOR
# =============================================================================

class ExchangeRateServiceProtocol(Protocol):
    """Interface required by ValuationAggregator."""

    base_currency: str

    def refresh(self, force: bool = False) -> bool:
        ...

    def snapshot(self) -> RateTable:
        ...

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        ...


class EquityPriceServiceProtocol(Protocol):
    """Interface required by ValuationAggregator."""

    def get_price(self, symbol: str, exchange: str, force: bool = False) -> PriceQuote:
        ...

    def clear_cache(self) -> None:
        ...

    def reset_circuits(self) -> None:
        ...


class CryptoPriceServiceProtocol(Protocol):
    """Interface required by ValuationAggregator."""

    def get_prices(self, ids: list[str]) -> dict[str, PriceQuote]:
        ...

    def clear_cache(self) -> None:
        ...

    def reset_circuits(self) -> None:
        ...
