# valuation_engine/services/fx_rate_service.py
"""
Exchange Rate Service: live currency table with a fixed base currency.

=============================================================================
RATE CONVENTION (IMPORTANT!)
=============================================================================

    rates[X] = "units of X per 1 base"

Example (base INR):
    rates["USD"] = 0.0119    meaning 1 INR = 0.0119 USD
    rates["INR"] = 1         always

Conversion formula:
    convert(amount, A, B) = (amount / rates[A]) * rates[B]

    i.e. first into base (divide), then into the target (multiply).
    Unknown codes resolve to 1, so converting from or to an unknown
    currency treats it as the base.

=============================================================================

Refresh model:
- refresh() is a no-op while the table is younger than the TTL (10 min)
  unless forced
- an in-flight flag allows at most one outstanding request; concurrent
  callers return immediately and keep reading the current table
- the table is immutable and swapped as a whole, so readers see either the
  old or the new table, never a mix
- a failed refresh keeps the current table and never raises
- before the first successful refresh the static default table is used

Usage:
    service = ExchangeRateService(client, base_currency="INR")
    service.refresh()

    table = service.snapshot()          # one table for a whole pass
    usd = table.convert(amount, "INR", "USD")
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Callable, Mapping

import httpx

from valuation_engine.services.constants import DEFAULT_EXCHANGE_RATES
from valuation_engine.services.exceptions import FXProviderError
from valuation_engine.utils.numbers import to_decimal

logger = logging.getLogger(__name__)

ONE = Decimal("1")


# =============================================================================
# RATE TABLE
# =============================================================================

@dataclass(frozen=True)
class RateTable:
    """
    Immutable rate table.

    Attributes:
        base: Base currency code; rates[base] == 1
        rates: Units of each currency per 1 base (read-only mapping)
        fetched_at: Clock seconds of the fetch, None for the default table
    """

    base: str
    rates: Mapping[str, Decimal] = field(default_factory=dict)
    fetched_at: float | None = None

    def __post_init__(self) -> None:
        normalized = {code.upper(): rate for code, rate in self.rates.items() if rate > 0}
        normalized[self.base] = ONE
        object.__setattr__(self, "rates", MappingProxyType(normalized))

    @classmethod
    def default(cls, base: str) -> "RateTable":
        """
        Static fallback table re-based onto `base`.

        The built-in table is quoted against INR; for another base each rate
        is divided by the base's INR rate. A base missing from the table
        gets a table holding only itself.
        """
        base = base.upper()
        base_per_inr = DEFAULT_EXCHANGE_RATES.get(base)
        if base_per_inr is None:
            return cls(base=base, rates={})
        return cls(
            base=base,
            rates={code: rate / base_per_inr for code, rate in DEFAULT_EXCHANGE_RATES.items()},
        )

    @property
    def is_default(self) -> bool:
        return self.fetched_at is None

    def get_rate(self, currency: str) -> Decimal:
        """Units of currency per 1 base; unknown codes resolve to 1."""
        return self.rates.get(currency.upper(), ONE)

    def has_rate(self, currency: str) -> bool:
        return currency.upper() in self.rates

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        """(amount / rate[from]) * rate[to]; identity when from == to."""
        if from_currency.upper() == to_currency.upper():
            return amount
        return (amount / self.get_rate(from_currency)) * self.get_rate(to_currency)


# =============================================================================
# EXCHANGE RATE SERVICE
# =============================================================================

class ExchangeRateService:
    """
    Owns the current RateTable and its refresh lifecycle.

    Attributes:
        base_currency: Fixed base of every table this service holds
        ttl_seconds: Age below which refresh() is a no-op
    """

    PROVIDER_NAME = "exchangerate-api"

    def __init__(
            self,
            client: httpx.Client,
            base_currency: str = "INR",
            rates_url: str = "https://api.exchangerate-api.com/v4/latest",
            ttl_seconds: float = 600,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self.base_currency = base_currency.upper()
        self._rates_url = rates_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._table = RateTable.default(self.base_currency)
        self._refreshing = False
        self._lock = threading.Lock()

        logger.info(
            f"ExchangeRateService initialized (base={self.base_currency}, "
            f"ttl={ttl_seconds}s)"
        )

    # =========================================================================
    # PUBLIC METHODS
    # =========================================================================

    def snapshot(self) -> RateTable:
        """Current table. Immutable, so safe to hold for a whole pass."""
        return self._table

    def get_rate(self, currency: str) -> Decimal:
        return self._table.get_rate(currency)

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Decimal:
        return self._table.convert(amount, from_currency, to_currency)

    @property
    def last_updated(self) -> datetime | None:
        """Wall-clock time of the last successful fetch, None if never."""
        fetched_at = self._table.fetched_at
        if fetched_at is None:
            return None
        return datetime.fromtimestamp(fetched_at, tz=timezone.utc)

    @property
    def is_live(self) -> bool:
        return not self._table.is_default

    def refresh(self, force: bool = False) -> bool:
        """
        Fetch a new table unless the current one is still fresh.

        Args:
            force: Ignore the TTL

        Returns:
            True if a new table was installed, False otherwise (fresh,
            another refresh in flight, or the fetch failed)
        """
        with self._lock:
            if self._refreshing:
                logger.debug("Rate refresh already in flight, skipping")
                return False
            if not force and self._is_fresh():
                return False
            self._refreshing = True

        try:
            table = self._fetch_table()
        except FXProviderError as e:
            logger.warning(f"Rate refresh failed, keeping current table: {e}")
            return False
        finally:
            with self._lock:
                self._refreshing = False

        self._table = table
        logger.info(f"Rate table refreshed: {len(table.rates)} currencies (base={table.base})")
        return True

    # =========================================================================
    # PRIVATE METHODS
    # =========================================================================

    def _is_fresh(self) -> bool:
        fetched_at = self._table.fetched_at
        return fetched_at is not None and self._clock() - fetched_at < self.ttl_seconds

    def _fetch_table(self) -> RateTable:
        """
        Raises:
            FXProviderError: Transport failure, non-2xx or unusable body
        """
        url = f"{self._rates_url}/{self.base_currency}"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            raise FXProviderError(self.PROVIDER_NAME, str(e) or type(e).__name__, self.base_currency) from e

        if not response.is_success:
            raise FXProviderError(self.PROVIDER_NAME, f"HTTP {response.status_code}", self.base_currency)

        try:
            body = response.json()
        except ValueError as e:
            raise FXProviderError(self.PROVIDER_NAME, "body is not JSON", self.base_currency) from e

        raw_rates = body.get("rates") if isinstance(body, dict) else None
        if not isinstance(raw_rates, dict) or not raw_rates:
            raise FXProviderError(self.PROVIDER_NAME, "missing rates object", self.base_currency)

        rates: dict[str, Decimal] = {}
        for code, value in raw_rates.items():
            rate = to_decimal(value, quantum=None)
            if rate is not None and rate > 0:
                rates[str(code).upper()] = rate

        return RateTable(base=self.base_currency, rates=rates, fetched_at=self._clock())
