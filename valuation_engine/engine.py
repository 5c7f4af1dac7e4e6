# valuation_engine/engine.py
"""
Composition root.

initialize() wires settings, the HTTP client, the quote store, every vendor
tier, the three price services and the aggregator, performs the initial
rate refresh, and returns an EngineHandle that owns all of it.

    handle = initialize(holdings_source=my_store)
    snapshot = handle.run_pass()

    handle.start_auto_refresh()        # pass every 30 s on a background thread
    handle.subscribe(render)           # receives each published snapshot
    ...
    handle.close()                     # stops the loop, closes the client

Pass serialization:
- run_pass() holds a lock, so at most one pass is in flight per handle
- every pass takes a generation number; invalidate() (holdings changed)
  and every newer pass advance it, and a pass whose generation is no
  longer current is not published
"""

import logging
import threading
import time
from typing import Any, Callable

import httpx

from valuation_engine.config import Settings, settings as default_settings
from valuation_engine.database import build_engine, build_session_factory
from valuation_engine.models import PortfolioCategory
from valuation_engine.services.fx_rate_service import ExchangeRateService
from valuation_engine.services.market_data import (
    BinanceProvider,
    CoinCapProvider,
    CoinGeckoProvider,
    CryptoPriceService,
    EquityPriceService,
    FinnhubProvider,
    MfapiProvider,
    UsdRateSource,
    YahooChartProvider,
)
from valuation_engine.services.protocols import (
    HoldingsSource,
    QuoteStore,
    UserSettingsSource,
)
from valuation_engine.services.stores import (
    InMemoryHoldingsSource,
    InMemoryQuoteStore,
    SqlQuoteStore,
)
from valuation_engine.services.valuation import PortfolioSnapshot, ValuationAggregator

logger = logging.getLogger(__name__)

USER_AGENT = "portfolio-valuation-engine/0.1"

SnapshotListener = Callable[[PortfolioSnapshot], None]


# =============================================================================
# ENGINE HANDLE
# =============================================================================

class EngineHandle:
    """
    Owns the services, the HTTP client and the auto-refresh lifecycle.

    Attributes:
        fx_service: Rate table owner
        equity_service: Equity / fund quotes, manual overrides, search
        crypto_service: Crypto batch quotes, search
        aggregator: Builds snapshots
        quote_store: Durable quote cache
    """

    def __init__(
            self,
            fx_service: ExchangeRateService,
            equity_service: EquityPriceService,
            crypto_service: CryptoPriceService,
            aggregator: ValuationAggregator,
            holdings_source: HoldingsSource,
            settings_source: UserSettingsSource | None = None,
            quote_store: QuoteStore | None = None,
            http_client: httpx.Client | None = None,
            auto_refresh_seconds: float = 30.0,
            on_close: Callable[[], None] | None = None,
    ) -> None:
        self.fx_service = fx_service
        self.equity_service = equity_service
        self.crypto_service = crypto_service
        self.aggregator = aggregator
        self.quote_store = quote_store
        self._holdings_source = holdings_source
        self._settings_source = settings_source
        self._http_client = http_client
        self._on_close = on_close
        self.auto_refresh_seconds = auto_refresh_seconds

        self._pass_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._generation = 0
        self._latest: PortfolioSnapshot | None = None
        self._listeners: list[SnapshotListener] = []

        self._wake = threading.Event()
        self._stopping = False
        self._thread: threading.Thread | None = None
        self._closed = False

    # =========================================================================
    # PASSES
    # =========================================================================

    def run_pass(
            self,
            force: bool = False,
            category: PortfolioCategory | None = None,
    ) -> PortfolioSnapshot:
        """
        Run one aggregation pass over the current holdings.

        The snapshot is always returned; it is published (latest_snapshot,
        listeners) only if no invalidate() or newer pass superseded it.

        Raises:
            Whatever the holdings / settings collaborators raise
        """
        with self._pass_lock:
            with self._state_lock:
                self._generation += 1
                generation = self._generation

            raw = self._holdings_source.get_holdings()
            snapshot = self.aggregator.aggregate(
                raw,
                display_currency=self.display_currency(),
                category=category,
                force=force,
            )

            with self._state_lock:
                superseded = generation != self._generation
                if not superseded:
                    self._latest = snapshot
                listeners = list(self._listeners)

        if superseded:
            logger.info(f"Pass {snapshot.pass_id} superseded, result dropped")
            return snapshot

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}")
        return snapshot

    def refresh(self) -> PortfolioSnapshot:
        """Force refresh: clear caches, bypass manual prices, refetch rates."""
        return self.run_pass(force=True)

    def invalidate(self) -> None:
        """Holdings changed: drop any in-flight result and wake the loop."""
        with self._state_lock:
            self._generation += 1
        self._wake.set()

    @property
    def latest_snapshot(self) -> PortfolioSnapshot | None:
        with self._state_lock:
            return self._latest

    def display_currency(self) -> str:
        if self._settings_source is None:
            return self.fx_service.base_currency
        user_settings = self._settings_source.get_user_settings() or {}
        currency = user_settings.get("display_currency") or self.fx_service.base_currency
        return str(currency).upper()

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """
        Register a listener for published snapshots.

        Returns:
            Callable that removes the listener
        """
        with self._state_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._state_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # =========================================================================
    # AUTO-REFRESH
    # =========================================================================

    @property
    def is_auto_refreshing(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_auto_refresh(self) -> None:
        """Start the background loop (one pass per auto_refresh_seconds)."""
        if self._closed:
            raise RuntimeError("EngineHandle is closed")
        if self.is_auto_refreshing:
            return
        self._stopping = False
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._auto_refresh_loop,
            name="valuation-auto-refresh",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Auto-refresh started (every {self.auto_refresh_seconds}s)")

    def stop(self, timeout: float | None = 5.0) -> None:
        """Cancel the auto-refresh loop; a pass already running completes."""
        thread = self._thread
        if thread is None:
            return
        self._stopping = True
        self._wake.set()
        thread.join(timeout)
        self._thread = None
        logger.info("Auto-refresh stopped")

    def _auto_refresh_loop(self) -> None:
        while True:
            self._wake.wait(self.auto_refresh_seconds)
            self._wake.clear()
            if self._stopping:
                return
            try:
                self.run_pass()
            except Exception as e:
                logger.error(f"Auto-refresh pass failed: {e}")

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def close(self) -> None:
        """Stop the loop and release the HTTP client and database engine."""
        if self._closed:
            return
        self.stop()
        self._closed = True
        if self._http_client is not None:
            self._http_client.close()
        if self._on_close is not None:
            self._on_close()
        logger.info("Engine closed")

    def __enter__(self) -> "EngineHandle":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


# =============================================================================
# COMPOSITION ROOT
# =============================================================================

def initialize(
        config: Settings | None = None,
        holdings_source: HoldingsSource | None = None,
        settings_source: UserSettingsSource | None = None,
        quote_store: QuoteStore | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
        start_auto_refresh: bool = False,
) -> EngineHandle:
    """
    Build every service and return the handle owning them.

    Args:
        config: Settings (default: the module-level settings)
        holdings_source: Holdings collaborator (default: empty in-memory source)
        settings_source: Display currency collaborator (default: holdings_source
                         when it also provides get_user_settings)
        quote_store: Durable quote cache (default: SQL store when DATABASE_URL
                     is set, else in-memory)
        http_client: Shared client; one is created (and closed by the handle)
                     when omitted
        clock: Time source for every cache, limiter and breaker
        start_auto_refresh: Start the background loop immediately
    """
    cfg = config or default_settings
    base = cfg.base_currency

    owns_client = http_client is None
    client = http_client or httpx.Client(
        timeout=cfg.http_timeout_seconds,
        headers={"User-Agent": USER_AGENT},
        follow_redirects=True,
    )

    on_close: Callable[[], None] | None = None
    if quote_store is None:
        if cfg.database_url:
            db_engine = build_engine(cfg.database_url)
            quote_store = SqlQuoteStore(build_session_factory(db_engine))
            on_close = db_engine.dispose
        else:
            quote_store = InMemoryQuoteStore()

    if holdings_source is None:
        holdings_source = InMemoryHoldingsSource(display_currency=base)
    if settings_source is None and hasattr(holdings_source, "get_user_settings"):
        settings_source = holdings_source

    fx_service = ExchangeRateService(
        client,
        base_currency=base,
        rates_url=cfg.fx_rates_url,
        ttl_seconds=cfg.fx_ttl_seconds,
        clock=clock,
    )

    equity_service = EquityPriceService(
        primary=YahooChartProvider(
            enabled=cfg.primary_channel_enabled,
            max_attempts=cfg.provider_max_attempts,
        ),
        secondary=FinnhubProvider(
            client,
            api_key=cfg.finnhub_api_key,
            base_url=cfg.finnhub_base_url,
            max_attempts=cfg.provider_max_attempts,
        ),
        nav_provider=MfapiProvider(
            client,
            base_url=cfg.mfapi_base_url,
            max_attempts=cfg.provider_max_attempts,
        ),
        quote_store=quote_store,
        cache_ttl_seconds=cfg.equity_cache_ttl_seconds,
        secondary_calls_per_window=cfg.secondary_calls_per_window,
        secondary_window_seconds=cfg.secondary_window_seconds,
        breaker_failure_threshold=cfg.breaker_failure_threshold,
        breaker_recovery_seconds=cfg.breaker_recovery_seconds,
        clock=clock,
    )

    usd_rate = UsdRateSource(
        client,
        base_currency=base,
        base_url=cfg.fx_rates_url,
        ttl_seconds=cfg.usd_rate_ttl_seconds,
        clock=clock,
    )
    coingecko = CoinGeckoProvider(
        client,
        base_currency=base,
        base_url=cfg.coingecko_base_url,
        max_attempts=cfg.provider_max_attempts,
    )
    crypto_service = CryptoPriceService(
        tiers=[
            coingecko,
            CoinCapProvider(
                client, usd_rate, base_url=cfg.coincap_base_url, max_attempts=cfg.provider_max_attempts
            ),
            BinanceProvider(client, usd_rate, base_url=cfg.binance_base_url),
        ],
        base_currency=base,
        search_provider=coingecko,
        cache_ttl_seconds=cfg.crypto_cache_ttl_seconds,
        breaker_failure_threshold=cfg.breaker_failure_threshold,
        breaker_recovery_seconds=cfg.breaker_recovery_seconds,
        clock=clock,
    )

    aggregator = ValuationAggregator(
        fx_service=fx_service,
        equity_service=equity_service,
        crypto_service=crypto_service,
        max_workers=cfg.max_concurrent_lookups,
    )

    fx_service.refresh()

    handle = EngineHandle(
        fx_service=fx_service,
        equity_service=equity_service,
        crypto_service=crypto_service,
        aggregator=aggregator,
        holdings_source=holdings_source,
        settings_source=settings_source,
        quote_store=quote_store,
        http_client=client if owns_client else None,
        auto_refresh_seconds=cfg.auto_refresh_seconds,
        on_close=on_close,
    )
    logger.info(f"Engine initialized (base={base}, environment={cfg.environment})")

    if start_auto_refresh:
        handle.start_auto_refresh()
    return handle
