# valuation_engine/utils/logging.py
"""
Logging configuration for the valuation engine.

Provides centralized logging setup with:
- Settings-based log level and format
- Pass id stamped on every record (see utils/context.py)
- JSON format option for log aggregation
- Suppression of noisy third-party library logs

Usage:
    from valuation_engine.utils import setup_logging

    # Once, in the composition root
    setup_logging()

Log Levels:
    DEBUG   - Cache hits/misses, raw vendor payload shapes
    INFO    - Tier successes, rate table refreshes, pass summaries
    WARNING - Tier failures, stale or hardcoded fallbacks, budget exhaustion
    ERROR   - Unexpected failures inside a pass
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from valuation_engine.config import settings
from valuation_engine.utils.context import get_pass_id

# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(pass_id)s | %(name)s | %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NO_PASS_ID = "-"

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

NOISY_LOGGERS = [
    "yfinance",
    "peewee",
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
]

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "pass_id", "message", "taskName",
}


# =============================================================================
# PASS ID FILTER
# =============================================================================

class PassIdFilter(logging.Filter):
    """Adds the current aggregation pass id to each record as 'pass_id'."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.pass_id = get_pass_id() or NO_PASS_ID
        return True


# =============================================================================
# JSON FORMATTER
# =============================================================================

class JsonFormatter(logging.Formatter):
    """
    One JSON object per record, for log aggregation.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.123000+00:00",
        "level": "WARNING",
        "logger": "valuation_engine.services.market_data.equity_service",
        "thread": "valuation_0",
        "pass_id": "p-3f9c21",
        "message": "Secondary budget exhausted for RELIANCE/NSE",
        "extra": { ... }
    }

    The timestamp is the record's creation time, so lines written by the
    lookup workers of one pass sort correctly.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "pass_id": getattr(record, "pass_id", NO_PASS_ID),
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra = {
            key: _json_safe(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
        }
        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry)


def _json_safe(value: Any) -> Any:
    """Values json can't encode (Decimal, datetime, quotes) are logged as str."""
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value

# =============================================================================
# SETUP FUNCTION
# =============================================================================

def setup_logging(
        level: str | None = None,
        log_format: str | None = None,
        suppress_noisy_loggers: bool = True,
) -> None:
    """
    Install one stdout handler on the root logger, stamped with the pass id.

    Called once by the embedding application; the engine itself only ever
    calls logging.getLogger(__name__).

    Args:
        level: Log level name. Defaults to settings.log_level.
        log_format: 'text' or 'json'. Defaults to settings.log_format.
        suppress_noisy_loggers: Set vendor client loggers to WARNING.
    """
    level_name = level or settings.log_level
    log_level = _get_log_level(level_name)
    format_type = (log_format or settings.log_format).lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(PassIdFilter())
    handler.setFormatter(
        JsonFormatter() if format_type == "json"
        else logging.Formatter(fmt=DEFAULT_TEXT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    if suppress_noisy_loggers:
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={level_name}, format={format_type}",
        extra={"config": {"level": level_name, "format": format_type}},
    )


def _get_log_level(level_str: str) -> int:
    """
    Raises:
        ValueError: If level_str is not a valid log level
    """
    name = level_str.strip().upper()
    if name not in LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: '{name}'. "
            f"Valid levels are: {', '.join(LOG_LEVELS)}"
        )
    return LOG_LEVELS[name]
