# valuation_engine/__init__.py
"""
Price resolution and portfolio valuation engine.

Turns user holdings (equities, mutual funds, crypto, forex, commodities,
fixed assets) into priced, currency-converted valuations using unreliable
third-party data providers, with a usable quote for every holding.

Usage:
    from valuation_engine import initialize

    with initialize(holdings_source=source) as engine:
        snapshot = engine.run_pass()
        snapshot.totals.current_value
"""

from valuation_engine.engine import EngineHandle, initialize

__all__ = [
    "EngineHandle",
    "initialize",
]
