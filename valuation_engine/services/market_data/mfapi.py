# valuation_engine/services/market_data/mfapi.py
"""
mfapi.in: NAV source for Indian mutual funds.

Endpoints:
    GET /mf/{scheme_code}   {"meta": {"scheme_name": ...},
                             "data": [{"date": "dd-mm-yyyy", "nav": "12.34"}, ...]}
                            newest first
    GET /mf                 [{"schemeCode": 100027, "schemeName": ...}, ...]

The scheme list is several megabytes and changes rarely, so it is fetched
once per provider instance and searched locally.
"""

import logging
import threading
from datetime import datetime, timezone

import httpx

from valuation_engine.models import Provenance
from valuation_engine.services.constants import FUND_SEARCH_LIMIT
from valuation_engine.services.exceptions import MalformedResponseError, TickerNotFoundError
from valuation_engine.services.market_data.base import (
    FundMatch,
    HttpMarketDataProvider,
    PriceQuote,
    QuoteProvider,
    utc_now,
)
from valuation_engine.utils.numbers import PERCENT_QUANTUM, safe_percent, to_decimal

logger = logging.getLogger(__name__)

NAV_DATE_FORMAT = "%d-%m-%Y"


class MfapiProvider(HttpMarketDataProvider, QuoteProvider):
    """NAV lookups by scheme code; the exchange argument is ignored."""

    def __init__(
            self,
            client: httpx.Client,
            base_url: str = "https://api.mfapi.in/mf",
            max_attempts: int = 2,
    ) -> None:
        super().__init__(client=client, base_url=base_url, max_attempts=max_attempts)
        self._scheme_list: list[dict] | None = None
        self._scheme_list_lock = threading.Lock()

    @property
    def name(self) -> str:
        return "mfapi"

    def get_quote(self, symbol: str, exchange: str = "MF") -> PriceQuote:
        return self._execute_with_retry(self._fetch_nav, symbol.strip())

    def _fetch_nav(self, scheme_code: str) -> PriceQuote:
        body = self._get_json(scheme_code, symbol=scheme_code, exchange="MF")
        if not isinstance(body, dict):
            raise MalformedResponseError(self.name, "NAV body is not an object")

        rows = body.get("data") or []
        if not isinstance(rows, list):
            raise MalformedResponseError(self.name, "NAV data is not an array")
        if not rows:
            raise TickerNotFoundError(ticker=scheme_code, exchange="MF", provider=self.name)
        if not all(isinstance(row, dict) for row in rows[:2]):
            raise MalformedResponseError(self.name, f"unexpected NAV row for scheme {scheme_code}")

        nav = to_decimal(rows[0].get("nav"))
        if nav is None or nav <= 0:
            raise MalformedResponseError(self.name, f"no usable NAV for scheme {scheme_code}")

        previous = to_decimal(rows[1].get("nav")) if len(rows) > 1 else None
        if previous is None or previous <= 0:
            previous = nav
        change = nav - previous

        meta = body.get("meta")
        if not isinstance(meta, dict):
            meta = {}
        return PriceQuote(
            price=nav,
            change_absolute=change,
            change_percent=safe_percent(change, previous).quantize(PERCENT_QUANTUM),
            as_of=self._parse_nav_date(rows[0].get("date")),
            provenance=Provenance.PRIMARY_API,
            name=meta.get("scheme_name"),
        )

    @staticmethod
    def _parse_nav_date(value: str | None) -> datetime:
        if value:
            try:
                return datetime.strptime(value, NAV_DATE_FORMAT).replace(tzinfo=timezone.utc)
            except ValueError:
                logger.debug(f"Unparseable NAV date '{value}'")
        return utc_now()

    # =========================================================================
    # SEARCH
    # =========================================================================

    def _get_scheme_list(self) -> list[dict]:
        with self._scheme_list_lock:
            if self._scheme_list is None:
                body = self._get_json("")
                if not isinstance(body, list):
                    raise MalformedResponseError(self.name, "scheme list is not an array")
                self._scheme_list = body
                logger.info(f"Loaded {len(body)} mutual fund schemes")
            return self._scheme_list

    def search(self, query: str, limit: int = FUND_SEARCH_LIMIT) -> list[FundMatch]:
        """
        Case-insensitive search where every whitespace-separated term must
        appear in the scheme name.

        Raises:
            MarketDataError: Scheme list could not be fetched
        """
        terms = [t for t in query.lower().split() if t]
        if not terms:
            return []

        matches: list[FundMatch] = []
        for scheme in self._get_scheme_list():
            if not isinstance(scheme, dict):
                raise MalformedResponseError(self.name, "scheme list entry is not an object")
            name = str(scheme.get("schemeName") or "")
            lowered = name.lower()
            if all(term in lowered for term in terms):
                matches.append(FundMatch(code=str(scheme.get("schemeCode")), name=name))
                if len(matches) >= limit:
                    break
        return matches
