# valuation_engine/utils/__init__.py
"""
Cross-cutting utilities for the valuation engine.

- logging: Logging configuration with pass id support
- context: Pass id management for log tracing
- numbers: Decimal coercion for vendor payloads

Usage:
    from valuation_engine.utils import setup_logging
    from valuation_engine.utils import get_pass_id, new_pass_id
    from valuation_engine.utils import to_decimal
"""

from valuation_engine.utils.context import (
    get_pass_id,
    set_pass_id,
    new_pass_id,
    reset_pass_id,
)
from valuation_engine.utils.logging import setup_logging
from valuation_engine.utils.numbers import to_decimal, safe_percent

__all__ = [
    # Logging
    "setup_logging",
    # Context
    "get_pass_id",
    "set_pass_id",
    "new_pass_id",
    "reset_pass_id",
    # Numbers
    "to_decimal",
    "safe_percent",
]
