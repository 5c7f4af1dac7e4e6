# valuation_engine/services/__init__.py
"""
Service layer of the valuation engine.

Services:
- Have NO knowledge of any UI or transport to the caller
- Raise domain-specific exceptions (search only; lookups never raise)
- Receive collaborators and clients as constructor parameters
- Are easily testable via dependency injection

Usage:
    from valuation_engine.services import ExchangeRateService
    from valuation_engine.services import EquityPriceService
    from valuation_engine.services import CryptoPriceService
    from valuation_engine.services import ValuationAggregator
    from valuation_engine.services import (
        MarketDataError,
        ProviderUnavailableError,
        RateLimitError,
    )

Architecture:
    services/
    ├── __init__.py                  # This file - main exports
    ├── exceptions.py                # Domain exceptions
    ├── constants.py                 # Static fallback tables
    ├── protocols.py                 # Collaborator interfaces (Protocol classes)
    ├── circuit_breaker.py           # Circuit breaker for vendor tiers
    ├── rate_limiter.py              # Sliding-window call budget
    ├── cache.py                     # TTL cache with superseded-write guard
    ├── fallback.py                  # Declarative tier chains
    ├── fx_rate_service.py           # Live rate table
    ├── stores.py                    # Quote store / holdings source implementations
    ├── market_data/                 # Vendor tiers and price services
    └── valuation/                   # Aggregation pass
"""

from valuation_engine.services.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
)
from valuation_engine.services.exceptions import (
    ServiceError,
    ValidationError,
    MarketDataError,
    ProviderUnavailableError,
    RateLimitError,
    MalformedResponseError,
    TickerNotFoundError,
    AllTiersFailedError,
    FXRateError,
    FXProviderError,
    CircuitBreakerOpen,
)
from valuation_engine.services.fx_rate_service import ExchangeRateService, RateTable
from valuation_engine.services.market_data import (
    EquityPriceService,
    CryptoPriceService,
    PriceQuote,
)
from valuation_engine.services.stores import (
    InMemoryQuoteStore,
    InMemoryHoldingsSource,
    SqlQuoteStore,
)
from valuation_engine.services.valuation import (
    ValuationAggregator,
    PortfolioSnapshot,
)

__all__ = [
    # Services
    "ExchangeRateService",
    "EquityPriceService",
    "CryptoPriceService",
    "ValuationAggregator",
    # Data
    "RateTable",
    "PriceQuote",
    "PortfolioSnapshot",
    # Collaborators
    "InMemoryQuoteStore",
    "InMemoryHoldingsSource",
    "SqlQuoteStore",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitState",
    "CircuitBreakerOpen",
    # Exceptions
    "ServiceError",
    "ValidationError",
    "MarketDataError",
    "ProviderUnavailableError",
    "RateLimitError",
    "MalformedResponseError",
    "TickerNotFoundError",
    "AllTiersFailedError",
    "FXRateError",
    "FXProviderError",
]
