# valuation_engine/services/valuation/types.py
"""
Internal data types for the Valuation Aggregator.

These dataclasses are used by ingestion, the calculators and the
aggregator. The raw record shapes accepted from the holdings collaborator
are pydantic models in ingestion.py.

Design Principles:
- Immutable where possible (frozen=True for value objects)
- Use Decimal for ALL financial values (never float)
- Native-currency figures live on ValuedHolding; display figures are
  derived on demand with to_display()
- Warnings accumulate for data quality tracking

Type Hierarchy:
    PurchaseLot         - One purchase (quantity, unit price, currency)
    Holding             - One canonical position, lots summed
    ValuedHolding       - Holding + PriceQuote + native-currency figures
    DisplayHolding      - ValuedHolding converted to the display currency
    PortfolioTotals     - Sums over the displayed holdings
    PortfolioSnapshot   - Result of one aggregation pass
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from valuation_engine.models import AssetClass, PortfolioCategory, Provenance
from valuation_engine.services.constants import (
    CURRENCY_PRECISION,
    PERCENTAGE_PRECISION,
    US_EXCHANGES,
    ZERO,
)
from valuation_engine.services.market_data.base import PriceQuote

if TYPE_CHECKING:
    from valuation_engine.services.fx_rate_service import RateTable


# =============================================================================
# LEGACY QUANTITY SHAPES
# =============================================================================

@dataclass(frozen=True)
class NumericQuantity:
    """Legacy crypto record: a bare number of coins, cost unknown."""
    quantity: Decimal


@dataclass(frozen=True)
class StructuredQuantity:
    """
    Current crypto record.

    Attributes:
        quantity: Coins held
        avg_price: Average buy price per coin (base currency)
        invested: Total amount paid; wins over avg_price when both are set
    """
    quantity: Decimal
    avg_price: Decimal | None = None
    invested: Decimal | None = None


LegacyQuantity = NumericQuantity | StructuredQuantity


# =============================================================================
# CANONICAL HOLDING
# =============================================================================

@dataclass(frozen=True)
class PurchaseLot:
    """
    One purchase.

    Attributes:
        quantity: Units bought
        unit_price: Price per unit in `currency`
        currency: Currency the lot was paid in
        date: Trade date, if the record had one
        cost: Total paid when recorded directly (market entries); otherwise
              quantity * unit_price
    """
    quantity: Decimal
    unit_price: Decimal
    currency: str
    date: date | None = None
    cost: Decimal | None = None

    @property
    def total_cost(self) -> Decimal:
        if self.cost is not None:
            return self.cost
        return self.quantity * self.unit_price


@dataclass(frozen=True)
class Holding:
    """
    One position, as priced by the aggregator.

    Attributes:
        symbol: Ticker, scheme code, coin id, currency code, commodity id
                or asset name depending on asset_class
        exchange: Exchange code; "MF", "CRYPTO", "FOREX", "COMMODITY" or
                  "FIXED" for the non-listed classes
        asset_class: Which price source resolves this holding
        currency: Native currency of the quote and of every figure
        lots: Purchases; quantity is their sum
        name: Display name
        manual_value: User-entered unit value, used when no source prices
                      the instrument (fixed assets always)
    """
    symbol: str
    exchange: str
    asset_class: AssetClass
    currency: str
    lots: tuple[PurchaseLot, ...] = ()
    name: str | None = None
    manual_value: Decimal | None = None

    @property
    def instrument_key(self) -> tuple[str, str]:
        return self.symbol, self.exchange

    @property
    def quantity(self) -> Decimal:
        return sum((lot.quantity for lot in self.lots), ZERO)

    @property
    def display_name(self) -> str:
        return self.name or self.symbol

    @property
    def category(self) -> PortfolioCategory:
        if self.asset_class == AssetClass.EQUITY:
            if self.exchange in US_EXCHANGES:
                return PortfolioCategory.US
            return PortfolioCategory.INDIAN
        return PortfolioCategory(self.asset_class.value)


# =============================================================================
# VALUED HOLDING
# =============================================================================

@dataclass(frozen=True)
class ValuedHolding:
    """
    Holding priced in its native currency. Created fresh every pass.

    Formulas:
        current_value = quantity * price
        profit_loss = current_value - total_invested
        profit_loss_percent = profit_loss / total_invested * 100 (0 if invested is 0)
        daily_gain = change_absolute * quantity
    """
    holding: Holding
    quote: PriceQuote
    current_value: Decimal
    total_invested: Decimal
    profit_loss: Decimal
    profit_loss_percent: Decimal
    daily_gain: Decimal

    @property
    def currency(self) -> str:
        return self.holding.currency

    @property
    def day_change_percent(self) -> Decimal:
        return self.quote.change_percent

    @property
    def is_unavailable(self) -> bool:
        return self.quote.provenance == Provenance.UNAVAILABLE

    def to_display(self, rates: RateTable, currency: str) -> DisplayHolding:
        """Convert every money figure from the native currency to `currency`."""

        def conv(amount: Decimal) -> Decimal:
            return rates.convert(amount, self.currency, currency).quantize(CURRENCY_PRECISION)

        return DisplayHolding(
            valued=self,
            currency=currency.upper(),
            current_price=rates.convert(self.quote.price, self.currency, currency),
            current_value=conv(self.current_value),
            total_invested=conv(self.total_invested),
            profit_loss=conv(self.profit_loss),
            profit_loss_percent=self.profit_loss_percent.quantize(PERCENTAGE_PRECISION),
            daily_gain=conv(self.daily_gain),
            day_change_percent=self.day_change_percent.quantize(PERCENTAGE_PRECISION),
        )


@dataclass(frozen=True)
class DisplayHolding:
    """
    One row of the snapshot, in the display currency.

    allocation_percent is this holding's share of the snapshot's total
    value; it is filled in by the aggregator once totals are known.
    """
    valued: ValuedHolding
    currency: str
    current_price: Decimal
    current_value: Decimal
    total_invested: Decimal
    profit_loss: Decimal
    profit_loss_percent: Decimal
    daily_gain: Decimal
    day_change_percent: Decimal
    allocation_percent: Decimal = ZERO

    @property
    def holding(self) -> Holding:
        return self.valued.holding

    @property
    def symbol(self) -> str:
        return self.valued.holding.symbol

    @property
    def quote(self) -> PriceQuote:
        return self.valued.quote

    @property
    def provenance(self) -> Provenance:
        return self.valued.quote.provenance

    @property
    def is_stale(self) -> bool:
        return self.valued.quote.is_stale


# =============================================================================
# PORTFOLIO
# =============================================================================

@dataclass(frozen=True)
class PortfolioTotals:
    """
    Sums over the snapshot's holdings, in the display currency.

    daily_gain_percent is measured against yesterday's value
    (current_value - daily_gain).
    """
    current_value: Decimal = ZERO
    total_invested: Decimal = ZERO
    profit_loss: Decimal = ZERO
    profit_loss_percent: Decimal = ZERO
    daily_gain: Decimal = ZERO
    daily_gain_percent: Decimal = ZERO
    holdings_count: int = 0


@dataclass
class PortfolioSnapshot:
    """
    Complete result of one aggregation pass.

    Attributes:
        display_currency: Currency of every money figure
        holdings: Rows in first-seen order, UNAVAILABLE ones included
        totals: Portfolio totals over `holdings`
        best_performer / worst_performer: By profit_loss_percent
        best_day_mover / worst_day_mover: By day_change_percent
        allocation: Share of total value per category (percent)
        warnings: Non-blocking data quality notes
        category: Filter applied, None for the whole portfolio
        rates_as_of: Fetch time of the rate table used, None if default
        generated_at: When the pass finished
        pass_id: Identifier stamped on the pass's log lines
    """
    display_currency: str
    holdings: list[DisplayHolding] = field(default_factory=list)
    totals: PortfolioTotals = field(default_factory=PortfolioTotals)
    best_performer: DisplayHolding | None = None
    worst_performer: DisplayHolding | None = None
    best_day_mover: DisplayHolding | None = None
    worst_day_mover: DisplayHolding | None = None
    allocation: dict[PortfolioCategory, Decimal] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    category: PortfolioCategory | None = None
    rates_as_of: datetime | None = None
    generated_at: datetime | None = None
    pass_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.holdings

    @property
    def has_complete_data(self) -> bool:
        """True if every holding is priced by a live source or the user."""
        return all(
            h.provenance.is_live or h.provenance == Provenance.MANUAL
            for h in self.holdings
        )

    def find(self, symbol: str, exchange: str | None = None) -> DisplayHolding | None:
        """First row for symbol (and exchange, when given)."""
        for row in self.holdings:
            if row.symbol == symbol and (exchange is None or row.holding.exchange == exchange):
                return row
        return None
