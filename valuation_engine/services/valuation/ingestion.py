# valuation_engine/services/valuation/ingestion.py
"""
Ingestion: raw stored holdings -> canonical Holding objects.

The holdings collaborator stores records in several historical shapes.
They are resolved here, once, so the rest of the engine only ever sees
Holding / PurchaseLot.

Accepted raw document:

    {
        "investments":  [{"symbol", "exchange", "quantity", "buy_price" | "price_per_share",
                          "name", "asset_class", "currency", "date"}, ...],
        "crypto":       {"bitcoin": 0.5,                                   # legacy number
                         "ethereum": {"quantity", "avg_price", "invested"}},
        "mutual_funds": {"<scheme code>": <units>},                        # legacy NAV map
        "markets":      [{"asset_type": "Forex" | "Commodity" | "Crypto",
                          "asset_id", "quantity", "price", "invested"}, ...],
        "fixed_assets": [{"name", "description", "purchase_value", "current_value"}, ...],
    }

camelCase spellings (buyPrice, pricePerShare, assetClass, avgPrice,
assetType, assetId, purchaseValue, currentValue) are accepted as aliases.

Validation layers:
- Field constraints: non-negative quantities and prices
- Field validators: normalization (uppercase, trim), Decimal coercion
- normalize(): a record that fails validation is skipped with a warning,
  never fails the pass

Native currency: an explicit `currency` wins; otherwise the exchange's
trading currency (USD for US listings, INR for NSE/BSE, GBP for LSE, ...)
and the base currency for unmapped exchanges.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Literal, Mapping

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    ValidationInfo,
    field_validator,
)

from valuation_engine.models import AssetClass
from valuation_engine.services.constants import (
    DEFAULT_EXCHANGE,
    EXCHANGE_CURRENCIES,
    MUTUAL_FUND_EXCHANGE,
    ZERO,
)
from valuation_engine.services.market_data.equity_service import MUTUAL_FUND_ALIASES
from valuation_engine.services.valuation.types import (
    Holding,
    LegacyQuantity,
    NumericQuantity,
    PurchaseLot,
    StructuredQuantity,
)
from valuation_engine.utils.numbers import to_decimal

logger = logging.getLogger(__name__)

CRYPTO_EXCHANGE = "CRYPTO"
FOREX_EXCHANGE = "FOREX"
COMMODITY_EXCHANGE = "COMMODITY"
FIXED_ASSET_EXCHANGE = "FIXED"

MUTUAL_FUND_CLASS_NAMES = frozenset({"MUTUAL FUND", "MUTUAL_FUND", "MUTUALFUND", "MF"})


def _coerce_decimal(value: Any) -> Any:
    """Floats via str(); anything unparseable is left for pydantic to reject."""
    if value is None or value == "":
        return None
    converted = to_decimal(value, quantum=None)
    return converted if converted is not None else value


# =============================================================================
# RAW RECORD SCHEMAS
# =============================================================================

class RawRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class RawInvestment(RawRecord):
    """One stock / ETF / mutual fund purchase."""

    symbol: str = Field(..., min_length=1, max_length=64)
    exchange: str | None = Field(default=DEFAULT_EXCHANGE)
    quantity: Decimal = Field(..., ge=0)
    buy_price: Decimal = Field(
        default=ZERO,
        ge=0,
        validation_alias=AliasChoices("buy_price", "buyPrice", "price_per_share", "pricePerShare"),
    )
    name: str | None = None
    asset_class: str | None = Field(default=None, validation_alias=AliasChoices("asset_class", "assetClass"))
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    trade_date: datetime | None = Field(default=None, validation_alias=AliasChoices("date", "trade_date"))

    @field_validator("symbol", "exchange", "currency", mode="before")
    @classmethod
    def normalize_code(cls, v: Any) -> Any:
        """Normalize codes: uppercase and strip."""
        if isinstance(v, str):
            v = v.strip().upper()
            return v or None
        return v

    @field_validator("exchange", mode="after")
    @classmethod
    def default_exchange(cls, v: str | None) -> str:
        return v or DEFAULT_EXCHANGE

    @field_validator("quantity", "buy_price", mode="before")
    @classmethod
    def coerce_decimal(cls, v: Any, info: ValidationInfo) -> Any:
        v = _coerce_decimal(v)
        if v is None and info.field_name == "buy_price":
            return ZERO
        return v

    @field_validator("trade_date", mode="before")
    @classmethod
    def parse_trade_date(cls, v: Any) -> Any:
        """Dates are informational; an unreadable one is dropped, not rejected."""
        if isinstance(v, date) and not isinstance(v, datetime):
            return datetime(v.year, v.month, v.day)
        if isinstance(v, str):
            try:
                return datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
            except ValueError:
                return None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            # epoch milliseconds
            return datetime.fromtimestamp(v / 1000 if v > 1e11 else v, tz=timezone.utc)
        return v if isinstance(v, datetime) else None

    @property
    def is_mutual_fund(self) -> bool:
        if self.exchange in MUTUAL_FUND_ALIASES:
            return True
        return (self.asset_class or "").strip().upper() in MUTUAL_FUND_CLASS_NAMES


class RawCryptoPosition(RawRecord):
    """Object form of a crypto entry; the number form is handled separately."""

    quantity: Decimal = Field(default=ZERO, ge=0)
    avg_price: Decimal | None = Field(default=None, ge=0, validation_alias=AliasChoices("avg_price", "avgPrice"))
    invested: Decimal | None = Field(default=None, ge=0)

    @field_validator("quantity", "avg_price", "invested", mode="before")
    @classmethod
    def coerce_decimal(cls, v: Any) -> Any:
        return _coerce_decimal(v)


class RawMarketEntry(RawRecord):
    """Forex, commodity (or crypto) position from the markets page."""

    asset_type: Literal["Forex", "Commodity", "Crypto"] = Field(
        ..., validation_alias=AliasChoices("asset_type", "assetType")
    )
    asset_id: str = Field(..., min_length=1, validation_alias=AliasChoices("asset_id", "assetId"))
    quantity: Decimal = Field(..., ge=0)
    price: Decimal = Field(default=ZERO, ge=0)
    invested: Decimal = Field(default=ZERO, ge=0)

    @field_validator("asset_type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().capitalize()
        return v

    @field_validator("quantity", "price", "invested", mode="before")
    @classmethod
    def coerce_decimal(cls, v: Any, info: ValidationInfo) -> Any:
        v = _coerce_decimal(v)
        if v is None and info.field_name != "quantity":
            return ZERO
        return v


class RawFixedAsset(RawRecord):
    """User-valued asset (property, vehicle, ...)."""

    name: str = Field(..., min_length=1)
    description: str | None = None
    purchase_value: Decimal = Field(
        default=ZERO, ge=0, validation_alias=AliasChoices("purchase_value", "purchaseValue")
    )
    current_value: Decimal = Field(
        default=ZERO, ge=0, validation_alias=AliasChoices("current_value", "currentValue")
    )

    @field_validator("purchase_value", "current_value", mode="before")
    @classmethod
    def coerce_decimal(cls, v: Any) -> Any:
        v = _coerce_decimal(v)
        return ZERO if v is None else v


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class IngestionResult:
    """Canonical holdings (one per record, not yet grouped) plus skip notes."""
    holdings: list[Holding] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# NORMALIZATION
# =============================================================================

def resolve_native_currency(exchange: str, explicit: str | None, base_currency: str) -> str:
    """Explicit currency wins, then the exchange's trading currency, then base."""
    if explicit:
        return explicit.upper()
    return EXCHANGE_CURRENCIES.get(exchange.strip().upper(), base_currency.upper())


def parse_legacy_quantity(value: Any) -> LegacyQuantity:
    """
    Resolve one crypto map value.

    Raises:
        ValueError: If the value is neither a number nor a valid object
    """
    if isinstance(value, Mapping):
        try:
            position = RawCryptoPosition.model_validate(value)
        except PydanticValidationError as e:
            raise ValueError(str(e)) from e
        return StructuredQuantity(
            quantity=position.quantity,
            avg_price=position.avg_price,
            invested=position.invested,
        )
    quantity = to_decimal(value, quantum=None)
    if quantity is None or quantity < 0:
        raise ValueError(f"invalid crypto quantity {value!r}")
    return NumericQuantity(quantity=quantity)


def crypto_holding(coin_id: str, position: LegacyQuantity, base_currency: str) -> Holding:
    """Holding for a crypto entry; price and cost are in the base currency."""
    if isinstance(position, StructuredQuantity):
        if position.invested is not None:
            cost = position.invested
        elif position.avg_price is not None:
            cost = position.avg_price * position.quantity
        else:
            cost = ZERO
        unit_price = position.avg_price if position.avg_price is not None else (
            cost / position.quantity if position.quantity > 0 else ZERO
        )
    else:
        cost = ZERO
        unit_price = ZERO

    return Holding(
        symbol=coin_id.strip().lower(),
        exchange=CRYPTO_EXCHANGE,
        asset_class=AssetClass.CRYPTO,
        currency=base_currency,
        lots=(PurchaseLot(
            quantity=position.quantity,
            unit_price=unit_price,
            currency=base_currency,
            cost=cost,
        ),),
        name=coin_id,
    )


def normalize(
        raw: Mapping[str, Any] | Iterable[Holding] | None,
        base_currency: str = "INR",
) -> IngestionResult:
    """
    Resolve a raw holdings document into canonical holdings.

    Args:
        raw: Raw document (see module docstring), or already-canonical
             Holding objects which are passed through
        base_currency: Native currency for non-US and non-listed holdings

    Returns:
        IngestionResult; invalid records are skipped and reported in warnings
    """
    result = IngestionResult()
    base_currency = base_currency.upper()

    if raw is None:
        return result

    if not isinstance(raw, Mapping):
        for item in raw:
            if isinstance(item, Holding):
                result.holdings.append(item)
            else:
                result.warnings.append(f"Skipped unsupported holding object {type(item).__name__}")
        return result

    _normalize_investments(raw.get("investments") or [], base_currency, result)
    _normalize_crypto(raw.get("crypto") or {}, base_currency, result)
    _normalize_mutual_funds(raw.get("mutual_funds") or raw.get("mutualFunds") or {}, base_currency, result)
    _normalize_markets(raw.get("markets") or [], base_currency, result)
    _normalize_fixed_assets(raw.get("fixed_assets") or raw.get("fixedAssets") or [], base_currency, result)

    if result.warnings:
        logger.warning(f"Ingestion skipped {len(result.warnings)} record(s)")
    logger.debug(f"Ingested {len(result.holdings)} holding record(s)")
    return result


def _skip(result: IngestionResult, section: str, ident: Any, reason: str) -> None:
    message = f"Skipped {section} record {ident!r}: {reason}"
    logger.warning(message)
    result.warnings.append(message)


def _normalize_investments(records: Iterable[Any], base_currency: str, result: IngestionResult) -> None:
    for index, record in enumerate(records):
        try:
            inv = RawInvestment.model_validate(record)
        except PydanticValidationError as e:
            _skip(result, "investment", index, f"{e.error_count()} validation error(s)")
            continue

        if inv.is_mutual_fund:
            exchange = MUTUAL_FUND_EXCHANGE
            asset_class = AssetClass.MUTUAL_FUND
        else:
            exchange = inv.exchange
            asset_class = AssetClass.EQUITY

        currency = resolve_native_currency(exchange, inv.currency, base_currency)
        result.holdings.append(Holding(
            symbol=inv.symbol,
            exchange=exchange,
            asset_class=asset_class,
            currency=currency,
            lots=(PurchaseLot(
                quantity=inv.quantity,
                unit_price=inv.buy_price,
                currency=currency,
                date=inv.trade_date.date() if inv.trade_date is not None else None,
            ),),
            name=inv.name,
        ))


def _normalize_crypto(records: Mapping[str, Any], base_currency: str, result: IngestionResult) -> None:
    for coin_id, value in records.items():
        if not str(coin_id).strip():
            continue
        try:
            position = parse_legacy_quantity(value)
        except ValueError as e:
            _skip(result, "crypto", coin_id, str(e).splitlines()[0])
            continue
        result.holdings.append(crypto_holding(str(coin_id), position, base_currency))


def _normalize_mutual_funds(records: Mapping[str, Any], base_currency: str, result: IngestionResult) -> None:
    """Legacy {scheme code: units}; codes already held as investments are skipped."""
    existing = {h.symbol for h in result.holdings}
    for code, value in records.items():
        code = str(code).strip().upper()
        if not code or code in existing:
            continue
        quantity = to_decimal(value, quantum=None)
        if quantity is None or quantity < 0:
            _skip(result, "mutual fund", code, f"invalid units {value!r}")
            continue
        result.holdings.append(Holding(
            symbol=code,
            exchange=MUTUAL_FUND_EXCHANGE,
            asset_class=AssetClass.MUTUAL_FUND,
            currency=base_currency,
            lots=(PurchaseLot(quantity=quantity, unit_price=ZERO, currency=base_currency),),
            name=code,
        ))


def _normalize_markets(records: Iterable[Any], base_currency: str, result: IngestionResult) -> None:
    for index, record in enumerate(records):
        try:
            entry = RawMarketEntry.model_validate(record)
        except PydanticValidationError as e:
            _skip(result, "markets", index, f"{e.error_count()} validation error(s)")
            continue

        if entry.asset_type == "Crypto":
            position = StructuredQuantity(entry.quantity, avg_price=entry.price, invested=entry.invested)
            result.holdings.append(crypto_holding(entry.asset_id, position, base_currency))
            continue

        if entry.asset_type == "Forex":
            symbol, exchange, asset_class = entry.asset_id.upper(), FOREX_EXCHANGE, AssetClass.FOREX
        else:
            symbol, exchange, asset_class = entry.asset_id.lower(), COMMODITY_EXCHANGE, AssetClass.COMMODITY

        result.holdings.append(Holding(
            symbol=symbol,
            exchange=exchange,
            asset_class=asset_class,
            currency=base_currency,
            lots=(PurchaseLot(
                quantity=entry.quantity,
                unit_price=entry.price,
                currency=base_currency,
                cost=entry.invested,
            ),),
            name=entry.asset_id,
            manual_value=entry.price,
        ))


def _normalize_fixed_assets(records: Iterable[Any], base_currency: str, result: IngestionResult) -> None:
    for index, record in enumerate(records):
        try:
            asset = RawFixedAsset.model_validate(record)
        except PydanticValidationError as e:
            _skip(result, "fixed asset", index, f"{e.error_count()} validation error(s)")
            continue
        result.holdings.append(Holding(
            symbol=asset.name,
            exchange=FIXED_ASSET_EXCHANGE,
            asset_class=AssetClass.FIXED_ASSET,
            currency=base_currency,
            lots=(PurchaseLot(quantity=Decimal("1"), unit_price=asset.purchase_value, currency=base_currency),),
            name=asset.description or asset.name,
            manual_value=asset.current_value,
        ))
