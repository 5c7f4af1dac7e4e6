# valuation_engine/config.py
"""
Engine configuration using Pydantic Settings.

Loads configuration from environment variables (or a `.env` file in the
working directory) with validation:
- ENVIRONMENT: Runtime mode (development, test, production)
- BASE_CURRENCY: Account base currency, the fixed base of the rate table
- *_TTL_SECONDS: Cache lifetimes for rates, equity quotes and crypto batches
- SECONDARY_*: Sliding-window budget for the secondary equity channel
- *_BASE_URL / *_API_KEY: Third-party vendor endpoints

Invalid configuration raises a ValueError with a descriptive message when
the settings object is created.

Usage:
    from valuation_engine.config import settings

    ttl = settings.equity_cache_ttl_seconds
"""
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = Path.cwd() / ".env"


class Settings(BaseSettings):
    """
    Engine settings loaded from environment variables.

    Environment variables:
        - ENVIRONMENT: Runtime environment (development, test, production)
        - LOG_LEVEL: Logging level (default: "INFO")
        - LOG_FORMAT: "text" or "json" (default: "text")
        - BASE_CURRENCY: Base of the rate table (default: "INR")
        - HTTP_TIMEOUT_SECONDS: Timeout applied to every vendor request
        - FINNHUB_API_KEY: Token for the secondary equity channel
        - DATABASE_URL: Optional, enables the SQL-backed quote store
    """

    environment: Literal["development", "test", "production"] = Field(
        default="development",
        description="Runtime environment (development, test, production)"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: Literal["text", "json"] = Field(
        default="text",
        description="Log output format"
    )

    # =========================================================================
    # CURRENCY
    # =========================================================================
    base_currency: str = Field(
        default="INR",
        description="Fixed base currency of the rate table (ISO 4217)"
    )
    fx_rates_url: str = Field(
        default="https://api.exchangerate-api.com/v4/latest",
        description="Latest-rates endpoint, called as {url}/{base}"
    )
    fx_ttl_seconds: int = Field(
        default=600,
        ge=1,
        description="Age below which a rate refresh is a no-op"
    )

    # =========================================================================
    # HTTP
    # =========================================================================
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for every third-party request"
    )
    provider_max_attempts: int = Field(
        default=2,
        ge=1,
        le=5,
        description="Attempts per tier for transient failures"
    )
    breaker_failure_threshold: int = Field(
        default=5,
        ge=1,
        description="Consecutive tier failures before its circuit opens"
    )
    breaker_recovery_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Seconds an open tier circuit waits before probing again"
    )

    # =========================================================================
    # EQUITIES & MUTUAL FUNDS
    # =========================================================================
    primary_channel_enabled: bool = Field(
        default=True,
        description="Attempt Yahoo chart data before the secondary channel"
    )
    equity_cache_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="Per-symbol quote cache lifetime"
    )
    secondary_calls_per_window: int = Field(
        default=55,
        ge=1,
        description="Secondary channel call budget per window"
    )
    secondary_window_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Length of the sliding budget window"
    )
    finnhub_api_key: str | None = Field(
        default=None,
        description="Finnhub token (secondary channel disabled when unset)"
    )
    finnhub_base_url: str = "https://finnhub.io/api/v1"
    mfapi_base_url: str = "https://api.mfapi.in/mf"

    # =========================================================================
    # CRYPTO
    # =========================================================================
    crypto_cache_ttl_seconds: int = Field(
        default=60,
        ge=1,
        description="Lifetime of the merged crypto batch"
    )
    usd_rate_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="Refresh interval of the crypto-local USD rate"
    )
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coincap_base_url: str = "https://api.coincap.io/v2"
    binance_base_url: str = "https://api.binance.com/api/v3"

    # =========================================================================
    # AGGREGATION
    # =========================================================================
    auto_refresh_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Period of the auto-refresh loop"
    )
    max_concurrent_lookups: int = Field(
        default=8,
        ge=1,
        le=64,
        description="Worker threads for one aggregation pass"
    )

    # =========================================================================
    # PERSISTENCE
    # =========================================================================
    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy URL for the durable quote store"
    )

    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE) if _ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("base_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Normalize currency: uppercase and strip."""
        v = v.strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"BASE_CURRENCY must be an ISO 4217 code, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_environment(self) -> "Settings":
        """
        Validate environment-specific rules.

        Rules:
        - test: in-memory SQLite quote store when no DATABASE_URL is set
        - production: the secondary channel needs an API key
        """
        if self.environment == "test" and self.database_url is None:
            object.__setattr__(self, "database_url", "sqlite:///:memory:")

        if self.environment == "production" and not self.finnhub_api_key:
            raise ValueError(
                "FINNHUB_API_KEY is required in production environment. "
                "Without it the secondary equity channel is never attempted."
            )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        """Check if running in test environment."""
        return self.environment == "test"

    @property
    def is_sqlite(self) -> bool:
        """Check if the quote store points at SQLite."""
        return self.database_url is not None and self.database_url.lower().startswith("sqlite://")


# Create single instance
settings = Settings()
