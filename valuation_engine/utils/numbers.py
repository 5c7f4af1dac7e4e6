# valuation_engine/utils/numbers.py
"""Decimal helpers shared by the providers and the valuation calculators."""

import math
from decimal import Decimal, InvalidOperation
from typing import Any

PRICE_QUANTUM = Decimal("0.00000001")
PERCENT_QUANTUM = Decimal("0.0001")


def to_decimal(value: Any, quantum: Decimal | None = PRICE_QUANTUM) -> Decimal | None:
    """
    Convert a vendor value (str, int, float, Decimal) to Decimal.

    Returns None for None, NaN, infinities and unparseable input. Floats go
    through str() so 0.1 becomes Decimal("0.1") rather than its binary
    expansion.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not result.is_finite():
        return None
    if quantum is not None:
        return result.quantize(quantum)
    return result


def safe_percent(numerator: Decimal, denominator: Decimal) -> Decimal:
    """numerator / denominator * 100, or 0 when the denominator is 0."""
    if denominator == 0:
        return Decimal("0")
    return numerator / denominator * Decimal("100")
