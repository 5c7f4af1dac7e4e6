# valuation_engine/services/exceptions.py
"""
Service layer exceptions.

These exceptions describe why a single tier or lookup failed. Price
providers catch them and advance to the next fallback tier; the only
callers that ever see them are the search helpers, which have no fallback.

Exception Hierarchy:
    ServiceError (base)
    ├── ValidationError
    ├── MarketDataError
    │   ├── ProviderUnavailableError   network failure, timeout, 5xx
    │   ├── RateLimitError             local budget exhausted or HTTP 429
    │   ├── MalformedResponseError     body did not have the expected shape
    │   ├── TickerNotFoundError        unknown instrument
    │   └── AllTiersFailedError        every tier of a chain failed
    └── FXRateError
        └── FXProviderError

    CircuitBreakerOpen (from circuit_breaker module)
        - Raised when a tier's breaker is open and the call is skipped
"""


class ServiceError(Exception):
    """
    Base exception for all service layer errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(ServiceError):
    """
    Raised when a raw holding record cannot be ingested.

    Attributes:
        field: The field that failed validation (optional)
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


# =============================================================================
# MARKET DATA PROVIDER ERRORS
# =============================================================================


class MarketDataError(ServiceError):
    """
    Base exception for market data provider failures.

    Attributes:
        provider: Name of the provider that failed
    """

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.provider = provider
        super().__init__(message)


class ProviderUnavailableError(MarketDataError):
    """
    Raised when a provider cannot be reached or answers with a server error.

    Examples:
    - Network timeout, DNS failure, connection reset
    - Server errors (500, 502, 503)
    - Primary bridge not available in this process

    This is a retryable error.
    """

    def __init__(self, provider: str, reason: str) -> None:
        message = f"Provider '{provider}' is unavailable: {reason}"
        super().__init__(message, provider=provider)
        self.reason = reason


class RateLimitError(MarketDataError):
    """
    Raised when a call budget is exhausted.

    The budget may be tracked locally (sliding window) or reported by the
    server (HTTP 429). Never retried: the next tier is tried instead.

    Attributes:
        retry_after: Seconds until budget frees up (if known)
    """

    def __init__(self, provider: str, retry_after: float | None = None) -> None:
        message = f"Rate limit exceeded for provider '{provider}'"
        if retry_after:
            message += f" (retry after {retry_after:.0f}s)"
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class MalformedResponseError(MarketDataError):
    """
    Raised when a response body does not have the expected shape.

    Examples:
    - Body is not JSON
    - Price field missing, zero, or not numeric
    """

    def __init__(self, provider: str, reason: str) -> None:
        message = f"Malformed response from '{provider}': {reason}"
        super().__init__(message, provider=provider)
        self.reason = reason


class TickerNotFoundError(MarketDataError):
    """
    Raised when an instrument is not known to a provider or mapping.

    This is NOT a retryable error.
    """

    def __init__(self, ticker: str, exchange: str, provider: str) -> None:
        message = f"Ticker '{ticker}' on exchange '{exchange}' not found by {provider}"
        super().__init__(message, provider=provider)
        self.ticker = ticker
        self.exchange = exchange


class AllTiersFailedError(MarketDataError):
    """
    Raised by a fallback chain when every tier failed and no final resort
    was configured.

    Attributes:
        errors: (tier name, exception) pairs in attempt order
    """

    def __init__(self, chain: str, errors: list[tuple[str, Exception]]) -> None:
        self.errors = errors
        summary = "; ".join(f"{name}: {err}" for name, err in errors) or "no tiers"
        super().__init__(f"All tiers of '{chain}' failed ({summary})", provider=chain)


# =============================================================================
# FX RATE ERRORS
# =============================================================================


class FXRateError(ServiceError):
    """
    Base exception for FX rate errors.

    Attributes:
        base_currency: The base currency code
    """

    def __init__(self, message: str, base_currency: str | None = None) -> None:
        self.base_currency = base_currency
        super().__init__(message)


class FXProviderError(FXRateError):
    """
    Raised when the rate vendor fails or returns an unusable table.

    Never escapes ExchangeRateService.refresh(); the current table is kept.

    Attributes:
        provider: Name of the FX data provider
        reason: Specific reason for failure
    """

    def __init__(self, provider: str, reason: str, base_currency: str | None = None) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"FX provider '{provider}' error: {reason}", base_currency=base_currency)


# =============================================================================
# CIRCUIT BREAKER (re-exported for convenience)
# =============================================================================

from valuation_engine.services.circuit_breaker import CircuitBreakerOpen  # noqa: E402

__all__ = [
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
    "CircuitBreakerOpen",
]
