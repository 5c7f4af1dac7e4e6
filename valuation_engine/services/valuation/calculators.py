# valuation_engine/services/valuation/calculators.py
"""
Valuation calculators.

Each calculator follows the Single Responsibility Principle:
- HoldingGrouper: Merges equity / fund records sharing (symbol, exchange)
- ValueCalculator: Prices one holding in its native currency
- TotalsCalculator: Sums displayed holdings into portfolio totals
- PerformanceCalculator: Best / worst performers and day movers
- AllocationCalculator: Share of total value per holding and category

Design Principles:
- Stateless (no instance state, pure functions)
- Receives all dependencies explicitly
- Returns structured result objects
- Uses Decimal for ALL financial calculations

Usage:
    holdings = HoldingGrouper().group(ingested.holdings)
    valued = ValueCalculator().calculate(holding, quote, rates)
    row = valued.to_display(rates, "USD")
"""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Iterable

from valuation_engine.models import AssetClass, PortfolioCategory
from valuation_engine.services.constants import (
    CURRENCY_PRECISION,
    PERCENTAGE_PRECISION,
    ZERO,
)
from valuation_engine.services.market_data.base import PriceQuote
from valuation_engine.services.valuation.types import (
    DisplayHolding,
    Holding,
    PortfolioTotals,
    ValuedHolding,
)
from valuation_engine.utils.numbers import safe_percent

if TYPE_CHECKING:
    from valuation_engine.services.fx_rate_service import RateTable

logger = logging.getLogger(__name__)

GROUPED_CLASSES = frozenset({AssetClass.EQUITY, AssetClass.MUTUAL_FUND})


# =============================================================================
# HOLDING GROUPER
# =============================================================================

class HoldingGrouper:
    """
    Merges purchase records into positions.

    Equities and mutual funds are grouped by (symbol, exchange), keeping
    the first record's currency and name and concatenating lots. Every
    other asset class is 1:1. Order is first-seen.
    """

    def group(self, holdings: Iterable[Holding]) -> list[Holding]:
        grouped: dict[tuple, Holding] = {}

        for index, holding in enumerate(holdings):
            if holding.asset_class in GROUPED_CLASSES:
                key: tuple = (holding.asset_class, *holding.instrument_key)
            else:
                key = ("single", index)

            existing = grouped.get(key)
            if existing is None:
                grouped[key] = holding
                continue

            grouped[key] = replace(
                existing,
                lots=existing.lots + holding.lots,
                name=existing.name or holding.name,
            )

        return list(grouped.values())


# =============================================================================
# VALUE CALCULATOR
# =============================================================================

class ValueCalculator:
    """
    Prices one holding in its native currency.

    Lots paid in another currency are converted into the holding's
    currency with the pass's rate table before summing.
    """

    def calculate(self, holding: Holding, quote: PriceQuote, rates: RateTable) -> ValuedHolding:
        quantity = holding.quantity

        total_invested = sum(
            (rates.convert(lot.total_cost, lot.currency, holding.currency) for lot in holding.lots),
            ZERO,
        )
        current_value = quantity * quote.price
        profit_loss = current_value - total_invested

        return ValuedHolding(
            holding=holding,
            quote=quote,
            current_value=current_value,
            total_invested=total_invested,
            profit_loss=profit_loss,
            profit_loss_percent=safe_percent(profit_loss, total_invested),
            daily_gain=quote.change_absolute * quantity,
        )


# =============================================================================
# TOTALS CALCULATOR
# =============================================================================

class TotalsCalculator:
    """Portfolio totals over displayed rows; all zero for an empty list."""

    def calculate(self, rows: list[DisplayHolding]) -> PortfolioTotals:
        if not rows:
            return PortfolioTotals()

        current_value = sum((r.current_value for r in rows), ZERO)
        total_invested = sum((r.total_invested for r in rows), ZERO)
        daily_gain = sum((r.daily_gain for r in rows), ZERO)
        profit_loss = current_value - total_invested

        return PortfolioTotals(
            current_value=current_value.quantize(CURRENCY_PRECISION),
            total_invested=total_invested.quantize(CURRENCY_PRECISION),
            profit_loss=profit_loss.quantize(CURRENCY_PRECISION),
            profit_loss_percent=safe_percent(profit_loss, total_invested).quantize(PERCENTAGE_PRECISION),
            daily_gain=daily_gain.quantize(CURRENCY_PRECISION),
            daily_gain_percent=safe_percent(daily_gain, current_value - daily_gain).quantize(PERCENTAGE_PRECISION),
            holdings_count=len(rows),
        )


# =============================================================================
# PERFORMANCE CALCULATOR
# =============================================================================

class PerformanceCalculator:
    """
    Best / worst selection.

    Eligible for performer ranking: priced (not UNAVAILABLE, price > 0)
    with a non-zero amount invested. Ties keep the first-seen row.
    Day movers: best needs a positive change, worst a negative one.
    """

    @staticmethod
    def _is_rankable(row: DisplayHolding) -> bool:
        return (
                not row.valued.is_unavailable
                and row.quote.price > 0
                and row.valued.total_invested != 0
        )

    def performers(self, rows: list[DisplayHolding]) -> tuple[DisplayHolding | None, DisplayHolding | None]:
        eligible = [r for r in rows if self._is_rankable(r)]
        return (
            _first_extreme(eligible, lambda r: r.valued.profit_loss_percent, highest=True),
            _first_extreme(eligible, lambda r: r.valued.profit_loss_percent, highest=False),
        )

    def day_movers(self, rows: list[DisplayHolding]) -> tuple[DisplayHolding | None, DisplayHolding | None]:
        priced = [r for r in rows if not r.valued.is_unavailable and r.quote.price > 0]
        gainers = [r for r in priced if r.valued.day_change_percent > 0]
        losers = [r for r in priced if r.valued.day_change_percent < 0]
        return (
            _first_extreme(gainers, lambda r: r.valued.day_change_percent, highest=True),
            _first_extreme(losers, lambda r: r.valued.day_change_percent, highest=False),
        )


def _first_extreme(
        rows: list[DisplayHolding],
        key: Callable[[DisplayHolding], Decimal],
        highest: bool,
) -> DisplayHolding | None:
    """max()/min() already return the first of equal items."""
    if not rows:
        return None
    return max(rows, key=key) if highest else min(rows, key=key)


# =============================================================================
# ALLOCATION CALCULATOR
# =============================================================================

class AllocationCalculator:
    """Percent of total display value per row and per category."""

    def apply(self, rows: list[DisplayHolding], total_value: Decimal) -> list[DisplayHolding]:
        return [
            replace(row, allocation_percent=safe_percent(row.current_value, total_value).quantize(PERCENTAGE_PRECISION))
            for row in rows
        ]

    def by_category(self, rows: list[DisplayHolding], total_value: Decimal) -> dict[PortfolioCategory, Decimal]:
        values: dict[PortfolioCategory, Decimal] = {}
        for row in rows:
            category = row.holding.category
            values[category] = values.get(category, ZERO) + row.current_value
        return {
            category: safe_percent(value, total_value).quantize(PERCENTAGE_PRECISION)
            for category, value in values.items()
        }
