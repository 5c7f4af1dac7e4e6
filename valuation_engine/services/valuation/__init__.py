# valuation_engine/services/valuation/__init__.py
"""
Valuation Aggregator Package.

Turns the user's raw holdings into a priced, currency-converted snapshot.

Usage:
    from valuation_engine.services.valuation import ValuationAggregator

    aggregator = ValuationAggregator(fx_service, equity_service, crypto_service)
    snapshot = aggregator.aggregate(raw_holdings, display_currency="INR")

Architecture:
    valuation/
    ├── __init__.py              # This file - package exports
    ├── types.py                 # Internal data classes
    ├── ingestion.py             # Raw record schemas, legacy shape resolution
    ├── calculators.py           # Grouping, value, totals, best/worst, allocation
    └── service.py               # ValuationAggregator (orchestrator)

Data Flow:
    Raw document → normalize() → Holding (one per record)
    Holdings → HoldingGrouper → Holding (one per instrument)
    Holding + PriceQuote → ValueCalculator → ValuedHolding (native currency)
    ValuedHolding + RateTable → DisplayHolding (display currency)
    DisplayHoldings → Totals / Allocation / Performance → PortfolioSnapshot
"""

# Calculators (for testing / direct usage)
from valuation_engine.services.valuation.calculators import (
    HoldingGrouper,
    ValueCalculator,
    TotalsCalculator,
    PerformanceCalculator,
    AllocationCalculator,
)
# Ingestion
from valuation_engine.services.valuation.ingestion import (
    IngestionResult,
    normalize,
    resolve_native_currency,
)
# Main service
from valuation_engine.services.valuation.service import ValuationAggregator
# Internal types
from valuation_engine.services.valuation.types import (
    PurchaseLot,
    Holding,
    NumericQuantity,
    StructuredQuantity,
    LegacyQuantity,
    ValuedHolding,
    DisplayHolding,
    PortfolioTotals,
    PortfolioSnapshot,
)

__all__ = [
    # Main service
    "ValuationAggregator",

    # Data types
    "PurchaseLot",
    "Holding",
    "NumericQuantity",
    "StructuredQuantity",
    "LegacyQuantity",
    "ValuedHolding",
    "DisplayHolding",
    "PortfolioTotals",
    "PortfolioSnapshot",

    # Ingestion
    "IngestionResult",
    "normalize",
    "resolve_native_currency",

    # Calculators (for testing)
    "HoldingGrouper",
    "ValueCalculator",
    "TotalsCalculator",
    "PerformanceCalculator",
    "AllocationCalculator",
]
