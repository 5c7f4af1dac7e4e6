# valuation_engine/services/valuation/service.py
"""
Valuation Aggregator - Main orchestrator for one valuation pass.

aggregate() turns the raw holdings document into a PortfolioSnapshot:

    1. Ingest: resolve legacy shapes into canonical holdings
    2. Group equities / funds by (symbol, exchange); other classes are 1:1
    3. Resolve quotes concurrently:
         - one EquityPriceService.get_price per equity / fund group
         - one batched CryptoPriceService.get_prices for all coin ids
         - forex and commodities from the pass's rate table / commodity table
         - fixed assets from the user-entered value
    4. Value each holding in its native currency
    5. Convert to the display currency with ONE rate table for the pass
    6. Totals, allocation, best / worst, warnings

Design Principles:
- Dependency Injection: rate, equity and crypto services via constructor
- No persistent state: every snapshot is built fresh
- Never raises: failures are encoded in quote provenance and warnings

Usage:
    aggregator = ValuationAggregator(fx_service, equity_service, crypto_service)
    snapshot = aggregator.aggregate(raw_holdings, display_currency="USD")
"""

from __future__ import annotations

import contextvars
import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from valuation_engine.models import AssetClass, PortfolioCategory, Provenance
from valuation_engine.services.constants import COMMODITY_PRICES
from valuation_engine.services.market_data.base import PriceQuote, utc_now
from valuation_engine.services.valuation.calculators import (
    AllocationCalculator,
    HoldingGrouper,
    PerformanceCalculator,
    TotalsCalculator,
    ValueCalculator,
)
from valuation_engine.services.valuation.ingestion import normalize
from valuation_engine.services.valuation.types import (
    Holding,
    PortfolioSnapshot,
    ValuedHolding,
)
from valuation_engine.utils.context import get_pass_id, new_pass_id, reset_pass_id

if TYPE_CHECKING:
    from valuation_engine.services.fx_rate_service import RateTable
    from valuation_engine.services.protocols import (
        CryptoPriceServiceProtocol,
        EquityPriceServiceProtocol,
        ExchangeRateServiceProtocol,
    )

logger = logging.getLogger(__name__)

ONE = Decimal("1")

CACHE_CLEARED_WARNING = "Cache cleared, fetching fresh prices"


class ValuationAggregator:
    """
    Builds portfolio snapshots from raw holdings.

    Attributes:
        _fx_service: Rate table owner; refreshed at the start of each pass
        _equity_service: Per-instrument quotes (equities, fund NAVs)
        _crypto_service: Batched coin quotes
        _max_workers: Upper bound on concurrent lookups in one pass
    """

    def __init__(
            self,
            fx_service: ExchangeRateServiceProtocol,
            equity_service: EquityPriceServiceProtocol,
            crypto_service: CryptoPriceServiceProtocol,
            max_workers: int = 8,
    ) -> None:
        self._fx_service = fx_service
        self._equity_service = equity_service
        self._crypto_service = crypto_service
        self._max_workers = max_workers

        self._grouper = HoldingGrouper()
        self._value_calc = ValueCalculator()
        self._totals_calc = TotalsCalculator()
        self._performance_calc = PerformanceCalculator()
        self._allocation_calc = AllocationCalculator()

        logger.info(f"ValuationAggregator initialized (max_workers={max_workers})")

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def aggregate(
            self,
            raw_holdings: Mapping[str, Any] | Iterable[Holding] | None,
            display_currency: str | None = None,
            category: PortfolioCategory | None = None,
            force: bool = False,
    ) -> PortfolioSnapshot:
        """
        Run one valuation pass.

        Args:
            raw_holdings: Raw holdings document or canonical holdings
            display_currency: Currency of every figure (default: rate base)
            category: Only include holdings of this category
            force: Clear provider caches, close tier circuits and bypass
                manual overrides

        Returns:
            PortfolioSnapshot. Never raises.
        """
        token = new_pass_id() if get_pass_id() is None else None
        display = (display_currency or self._fx_service.base_currency).strip().upper()
        try:
            return self._aggregate(raw_holdings, display, category, force)
        except Exception as e:
            logger.exception(f"Valuation pass failed: {e}")
            return PortfolioSnapshot(
                display_currency=display,
                category=category,
                warnings=[f"Valuation failed: {e}"],
                generated_at=utc_now(),
                pass_id=get_pass_id(),
            )
        finally:
            if token is not None:
                reset_pass_id(token)

    # =========================================================================
    # PASS
    # =========================================================================

    def _aggregate(
            self,
            raw_holdings: Mapping[str, Any] | Iterable[Holding] | None,
            display_currency: str,
            category: PortfolioCategory | None,
            force: bool,
    ) -> PortfolioSnapshot:
        warnings: list[str] = []

        if force:
            self._equity_service.clear_cache()
            self._crypto_service.clear_cache()
            self._equity_service.reset_circuits()
            self._crypto_service.reset_circuits()
            warnings.append(CACHE_CLEARED_WARNING)
        self._fx_service.refresh(force=force)
        rates = self._fx_service.snapshot()

        ingested = normalize(raw_holdings, base_currency=rates.base)
        warnings.extend(ingested.warnings)
        holdings = self._grouper.group(ingested.holdings)

        if category is not None:
            holdings = [h for h in holdings if h.category == category]

        quotes = self._resolve_quotes(holdings, rates, force)
        valued = [
            self._value_calc.calculate(holding, quotes[index], rates)
            for index, holding in enumerate(holdings)
        ]

        rows = [v.to_display(rates, display_currency) for v in valued]
        totals = self._totals_calc.calculate(rows)
        rows = self._allocation_calc.apply(rows, totals.current_value)
        best, worst = self._performance_calc.performers(rows)
        best_day, worst_day = self._performance_calc.day_movers(rows)

        if not rates.has_rate(display_currency):
            warnings.append(f"No exchange rate for {display_currency}, figures are not converted")
        elif rates.is_default and any(h.currency != display_currency for h in holdings):
            warnings.append("Live exchange rates unavailable, using default rates")
        warnings.extend(self._quote_warnings(valued))

        snapshot = PortfolioSnapshot(
            display_currency=display_currency,
            holdings=rows,
            totals=totals,
            best_performer=best,
            worst_performer=worst,
            best_day_mover=best_day,
            worst_day_mover=worst_day,
            allocation=self._allocation_calc.by_category(rows, totals.current_value),
            warnings=warnings,
            category=category,
            rates_as_of=(
                datetime.fromtimestamp(rates.fetched_at, tz=timezone.utc)
                if rates.fetched_at is not None else None
            ),
            generated_at=utc_now(),
            pass_id=get_pass_id(),
        )

        logger.info(
            f"Valuation pass complete: {totals.holdings_count} holdings, "
            f"value={totals.current_value} {display_currency}, "
            f"{len(warnings)} warning(s)"
        )
        return snapshot

    # =========================================================================
    # QUOTE RESOLUTION
    # =========================================================================

    def _resolve_quotes(
            self,
            holdings: list[Holding],
            rates: RateTable,
            force: bool,
    ) -> dict[int, PriceQuote]:
        """Quote per holding index; UNAVAILABLE for anything that failed."""
        quotes: dict[int, PriceQuote] = {}
        equity_indexes: list[int] = []
        crypto_indexes: list[int] = []

        for index, holding in enumerate(holdings):
            if holding.asset_class in (AssetClass.EQUITY, AssetClass.MUTUAL_FUND):
                equity_indexes.append(index)
            elif holding.asset_class == AssetClass.CRYPTO:
                crypto_indexes.append(index)
            else:
                quotes[index] = self._resolve_local(holding, rates)

        if not equity_indexes and not crypto_indexes:
            return quotes

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="valuation") as pool:
            futures: dict[Future, list[int]] = {}

            for index in equity_indexes:
                holding = holdings[index]
                ctx = contextvars.copy_context()
                future = pool.submit(
                    ctx.run, self._equity_service.get_price, holding.symbol, holding.exchange, force
                )
                futures[future] = [index]

            if crypto_indexes:
                ids = list(dict.fromkeys(holdings[i].symbol for i in crypto_indexes))
                ctx = contextvars.copy_context()
                futures[pool.submit(ctx.run, self._crypto_service.get_prices, ids)] = crypto_indexes

            for future in as_completed(futures):
                indexes = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.error(f"Price lookup failed for {[holdings[i].symbol for i in indexes]}: {e}")
                    for i in indexes:
                        quotes[i] = PriceQuote.unavailable()
                    continue

                if isinstance(result, PriceQuote):
                    quotes[indexes[0]] = result
                else:
                    for i in indexes:
                        quotes[i] = result.get(holdings[i].symbol) or PriceQuote.unavailable()

        return quotes

    def _resolve_local(self, holding: Holding, rates: RateTable) -> PriceQuote:
        """Forex, commodities and fixed assets: no provider call."""
        if holding.asset_class == AssetClass.FOREX:
            if rates.has_rate(holding.symbol):
                return PriceQuote(
                    price=ONE / rates.get_rate(holding.symbol),
                    as_of=utc_now(),
                    provenance=Provenance.HARDCODED_FALLBACK if rates.is_default else Provenance.PRIMARY_API,
                )
            return self._manual_quote(holding)

        if holding.asset_class == AssetClass.COMMODITY:
            inr_price = COMMODITY_PRICES.get(holding.symbol)
            if inr_price is not None:
                return PriceQuote(
                    price=rates.convert(inr_price, "INR", holding.currency),
                    as_of=utc_now(),
                    provenance=Provenance.HARDCODED_FALLBACK,
                )
            return self._manual_quote(holding)

        return self._manual_quote(holding)

    @staticmethod
    def _manual_quote(holding: Holding) -> PriceQuote:
        value = holding.manual_value
        if value is None or (value <= 0 and holding.asset_class != AssetClass.FIXED_ASSET):
            return PriceQuote.unavailable()
        return PriceQuote(price=value, as_of=utc_now(), provenance=Provenance.MANUAL)

    # =========================================================================
    # WARNINGS
    # =========================================================================

    @staticmethod
    def _quote_warnings(valued: list[ValuedHolding]) -> list[str]:
        warnings: list[str] = []
        for v in valued:
            name = v.holding.display_name
            provenance = v.quote.provenance
            if provenance == Provenance.UNAVAILABLE:
                warnings.append(f"No price available for {name}")
            elif provenance == Provenance.CACHED_STALE:
                warnings.append(f"Using last known price for {name}")
            elif provenance == Provenance.HARDCODED_FALLBACK and v.holding.asset_class in (
                    AssetClass.EQUITY, AssetClass.MUTUAL_FUND, AssetClass.CRYPTO,
            ):
                warnings.append(f"Using reference price for {name}")
        return warnings

