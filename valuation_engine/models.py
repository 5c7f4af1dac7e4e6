# valuation_engine/models.py
import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import String, DateTime, Numeric, Boolean, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class AssetClass(str, enum.Enum):
    EQUITY = "EQUITY"
    MUTUAL_FUND = "MUTUAL_FUND"
    CRYPTO = "CRYPTO"
    FOREX = "FOREX"
    COMMODITY = "COMMODITY"
    FIXED_ASSET = "FIXED_ASSET"


class Provenance(str, enum.Enum):
    """
    Which tier or source produced a price quote.

    PRIMARY_API / SECONDARY_API / TERTIARY_API are live vendor answers, in
    chain order. The rest describe how far down the fallback ladder the
    lookup had to go.
    """
    PRIMARY_API = "PRIMARY_API"
    SECONDARY_API = "SECONDARY_API"
    TERTIARY_API = "TERTIARY_API"
    CACHED_STALE = "CACHED_STALE"
    MANUAL = "MANUAL"
    HARDCODED_FALLBACK = "HARDCODED_FALLBACK"
    UNAVAILABLE = "UNAVAILABLE"

    @property
    def is_live(self) -> bool:
        return self in (
            Provenance.PRIMARY_API,
            Provenance.SECONDARY_API,
            Provenance.TERTIARY_API,
        )


class PortfolioCategory(str, enum.Enum):
    """Filter buckets offered to the portfolio view."""
    INDIAN = "INDIAN"
    US = "US"
    MUTUAL_FUND = "MUTUAL_FUND"
    CRYPTO = "CRYPTO"
    FOREX = "FOREX"
    COMMODITY = "COMMODITY"
    FIXED_ASSET = "FIXED_ASSET"


class StoredQuote(Base):
    """
    Durable copy of the last known quote per instrument.

    Survives process restarts, unlike the in-memory TTL caches. One row per
    (symbol, exchange); saving again overwrites the row (last write wins).
    """
    __tablename__ = "stored_quotes"
    __table_args__ = (
        UniqueConstraint('symbol', 'exchange', name='uq_stored_quote_symbol_exchange'),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    symbol: Mapped[str] = mapped_column(String(64), index=True)
    exchange: Mapped[str] = mapped_column(String(32), index=True)

    # All prices use Decimal for financial precision (18 digits, 8 decimals)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 8))
    change_absolute: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    change_percent: Mapped[Decimal] = mapped_column(Numeric(18, 8), default=Decimal("0"))
    as_of: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    provenance: Mapped[str] = mapped_column(String(32))
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
