# valuation_engine/services/stores.py
"""
Concrete collaborators.

- InMemoryQuoteStore: dict-backed QuoteStore (tests, ephemeral sessions)
- SqlQuoteStore: SQLAlchemy-backed QuoteStore on the stored_quotes table
- InMemoryHoldingsSource: fixed holdings + display currency

The SQL store is dialect-agnostic (SQLite by default), so saving is a
select-then-update rather than a PostgreSQL ON CONFLICT upsert. Concurrent
saves for the same instrument resolve last-write-wins.
"""

import logging
import threading
from datetime import timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from valuation_engine.models import Provenance, StoredQuote
from valuation_engine.services.market_data.base import PriceQuote

logger = logging.getLogger(__name__)


def _key(symbol: str, exchange: str) -> tuple[str, str]:
    return symbol.strip().upper(), exchange.strip().upper()


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryQuoteStore:
    """Thread-safe QuoteStore kept in a dict."""

    def __init__(self) -> None:
        self._quotes: dict[tuple[str, str], PriceQuote] = {}
        self._lock = threading.Lock()

    def get_stored_quote(self, symbol: str, exchange: str) -> PriceQuote | None:
        with self._lock:
            return self._quotes.get(_key(symbol, exchange))

    def save_stored_quote(self, symbol: str, exchange: str, quote: PriceQuote) -> None:
        with self._lock:
            self._quotes[_key(symbol, exchange)] = quote

    def delete_stored_quote(self, symbol: str, exchange: str) -> None:
        with self._lock:
            self._quotes.pop(_key(symbol, exchange), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._quotes)


class InMemoryHoldingsSource:
    """
    HoldingsSource and UserSettingsSource over fixed data.

    Example:
        source = InMemoryHoldingsSource(
            {"investments": [{"symbol": "TCS", "exchange": "NSE", "quantity": 2, "buy_price": 3500}]},
            display_currency="INR",
        )
    """

    def __init__(
            self,
            holdings: Iterable[Any] | Mapping[str, Any] | None = None,
            display_currency: str = "INR",
    ) -> None:
        self._holdings = holdings if holdings is not None else {}
        self._display_currency = display_currency.upper()

    def get_holdings(self) -> Iterable[Any] | Mapping[str, Any]:
        return self._holdings

    def set_holdings(self, holdings: Iterable[Any] | Mapping[str, Any]) -> None:
        self._holdings = holdings

    def get_user_settings(self) -> Mapping[str, Any]:
        return {"display_currency": self._display_currency}


# =============================================================================
# SQL
# =============================================================================

class SqlQuoteStore:
    """
    QuoteStore on the stored_quotes table.

    Storage errors are logged and swallowed on save (the in-memory cache
    still holds the quote) and reported as a miss on read.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get_stored_quote(self, symbol: str, exchange: str) -> PriceQuote | None:
        sym, exch = _key(symbol, exchange)
        try:
            with self._session_factory() as db:
                row = db.scalar(
                    select(StoredQuote).where(
                        StoredQuote.symbol == sym,
                        StoredQuote.exchange == exch,
                    )
                )
                if row is None:
                    return None
                return self._to_quote(row)
        except SQLAlchemyError as e:
            logger.warning(f"Stored quote read failed for {sym}/{exch}: {e}")
            return None

    def save_stored_quote(self, symbol: str, exchange: str, quote: PriceQuote) -> None:
        sym, exch = _key(symbol, exchange)
        try:
            with self._session_factory() as db:
                row = db.scalar(
                    select(StoredQuote).where(
                        StoredQuote.symbol == sym,
                        StoredQuote.exchange == exch,
                    )
                )
                if row is None:
                    row = StoredQuote(symbol=sym, exchange=exch)
                    db.add(row)
                row.price = quote.price
                row.change_absolute = quote.change_absolute
                row.change_percent = quote.change_percent
                row.as_of = quote.as_of
                row.provenance = quote.provenance.value
                row.is_stale = quote.is_stale
                db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Stored quote save failed for {sym}/{exch}: {e}")

    def delete_stored_quote(self, symbol: str, exchange: str) -> None:
        sym, exch = _key(symbol, exchange)
        try:
            with self._session_factory() as db:
                db.execute(
                    delete(StoredQuote).where(
                        StoredQuote.symbol == sym,
                        StoredQuote.exchange == exch,
                    )
                )
                db.commit()
        except SQLAlchemyError as e:
            logger.warning(f"Stored quote delete failed for {sym}/{exch}: {e}")

    @staticmethod
    def _to_quote(row: StoredQuote) -> PriceQuote:
        as_of = row.as_of
        if as_of.tzinfo is None:
            # SQLite drops tzinfo
            as_of = as_of.replace(tzinfo=timezone.utc)
        return PriceQuote(
            price=Decimal(row.price),
            change_absolute=Decimal(row.change_absolute),
            change_percent=Decimal(row.change_percent),
            as_of=as_of,
            provenance=Provenance(row.provenance),
            is_stale=row.is_stale,
        )
