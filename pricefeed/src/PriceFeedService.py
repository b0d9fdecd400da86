"""PriceFeedService: The object graph behind the price feed, and its timers.

The service builds one registry, cache, retry controller, volatility monitor
and orchestrator from a :class:`PriceFeedConfig` and hands them to nobody
else; there is no module-level state. While started it runs these periodic
tasks on a :class:`Scheduler`:

    - health check: probe every source with the health-check symbol
    - cache cleanup: drop expired cache entries
    - volatility refresh: recompute every tracked symbol's snapshot
    - batch update: re-price ``tracked_symbols`` (only when configured)

plus one task per price subscription. ``stop()`` cancels all of them
synchronously; ``close()`` additionally closes the shared HTTP client.

.. code-block:: python

    async with PriceFeedService(PriceFeedConfig(tracked_symbols=["ETH"])) as feed:
        quote = await feed.get_price("ETH")
        sub = feed.subscribe("BTC", print, interval_ms=30_000)
        ...
        feed.unsubscribe(sub)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TypedDict

from .FailoverOrchestrator import BatchPriceResult, FailoverOrchestrator
from .PriceCache import CacheStats, PriceCache
from .PriceFeedConfig import PriceFeedConfig
from .Quote import Quote
from .RetryController import RateLimitState, RetryController, RetryMetrics
from .Scheduler import Scheduler
from .SourceDescriptor import SourceDescriptor, SourceKind
from .SourceRegistry import SourceHealth, SourceRegistry
from .VolatilityMonitor import (
    AlertListener,
    VolatilityMonitor,
    VolatilitySnapshot,
    VolatilitySummary,
)
from .clock import Clock, SystemClock
from .errors import PriceFeedError, SubscriptionNotFound
from .sources import SOURCE_REGISTRY, BaseSource, CacheSource, ChainlinkSource

logger = logging.getLogger(__name__)

CACHE_SOURCE_NAME = "stale_cache"


@dataclass(frozen=True)
class PriceUpdate:
    """What a subscriber receives on every tick."""

    quote: Quote
    volatility: VolatilitySnapshot | None = None


# Callbacks may be plain functions or coroutine functions
SubscriptionCallback = Callable[[PriceUpdate], object]


@dataclass
class Subscription:
    id: str
    symbol: str
    interval_ms: int
    callback: SubscriptionCallback
    include_volatility: bool = False


class ServiceStatus(TypedDict):
    """Observability snapshot returned by :meth:`PriceFeedService.get_status`."""

    running: bool
    sources: list[SourceHealth]
    breakers: dict[str, str]
    rate_limits: dict[str, RateLimitState]
    retry_metrics: dict[str, RetryMetrics]
    cache_stats: CacheStats
    volatility_summary: VolatilitySummary
    subscriptions: int


def build_sources(config: PriceFeedConfig, cache: PriceCache) -> list[BaseSource]:
    """Instantiate the configured sources, plus the cache fallback if enabled.

    :raises ValueError: If a configured source name is unknown.
    """
    sources: list[BaseSource] = []
    for name in config.sources:
        if name not in SOURCE_REGISTRY:
            available = ", ".join(sorted(SOURCE_REGISTRY))
            raise ValueError(f"Unknown source '{name}'. Available: {available}")
        cls = SOURCE_REGISTRY[name]
        descriptor = SourceDescriptor(
            name=name,
            kind=cls.kind,
            priority=config.priorities.get(name, cls.DEFAULT_PRIORITY),
        )
        api_key = config.api_keys.get(name)
        if issubclass(cls, ChainlinkSource):
            sources.append(cls(descriptor=descriptor, api_key=api_key, rpc_url=config.rpc_url))
        else:
            sources.append(cls(descriptor=descriptor, api_key=api_key))

    if config.enable_cache_fallback:
        descriptor = SourceDescriptor(
            name=CACHE_SOURCE_NAME,
            kind=SourceKind.CACHE,
            priority=config.priorities.get(CACHE_SOURCE_NAME, CacheSource.DEFAULT_PRIORITY),
        )
        sources.append(
            CacheSource(
                cache,
                descriptor=descriptor,
                max_staleness_s=config.cache_fallback_max_staleness_s,
            )
        )
    return sources


class PriceFeedService:
    """Caller-facing price feed.

    :ivar config: Service configuration.
    :ivar cache: Quote cache.
    :ivar registry: Source health and breakers.
    :ivar retry: Retry controller.
    :ivar monitor: Volatility monitor.
    :ivar orchestrator: Failover orchestrator.
    :ivar scheduler: Owner of every periodic task.
    """

    def __init__(
        self,
        config: PriceFeedConfig | None = None,
        *,
        sources: Iterable[BaseSource] | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        """Build the object graph.

        :param config: Configuration (defaults if None).
        :param sources: Source instances to use instead of building them from
            the config.
        :param clock: Time source shared by every component.
        :param sleep: Coroutine used for backoff waits and timers.
        """
        self.config = config or PriceFeedConfig()
        self.clock = clock or SystemClock()
        cfg = self.config

        self.cache = PriceCache(
            self.clock,
            default_ttl_ms=cfg.cache_default_ttl_ms,
            max_entries=cfg.cache_max_entries,
            warning_threshold_s=cfg.stale_warning_s,
            error_threshold_s=cfg.stale_error_s,
        )
        source_list = list(sources) if sources is not None else build_sources(cfg, self.cache)
        self.cache.ttl_by_source.update(
            {s.source_name: s.descriptor.cache_ttl_ms for s in source_list}
        )

        self.registry = SourceRegistry(
            [s.descriptor for s in source_list],
            self.clock,
            failure_threshold=cfg.failure_threshold,
            min_calls=cfg.breaker_min_calls,
            health_min_calls=cfg.health_min_calls,
            cooldown_ms=cfg.breaker_cooldown_ms,
        )
        self.retry = RetryController(self.clock, cfg.retry_config(), sleep=sleep)
        self.monitor = VolatilityMonitor(
            self.clock,
            max_points=cfg.history_max_points,
            thresholds=cfg.alert_thresholds,
        )
        self.orchestrator = FailoverOrchestrator(
            source_list, self.registry, self.cache, self.retry, self.monitor, self.clock
        )
        self.scheduler = Scheduler(sleep)

        self._subscriptions: dict[str, Subscription] = {}
        self._subscription_ids = itertools.count(1)
        self.running = False

    async def __aenter__(self) -> PriceFeedService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def get_price(self, symbol: str, required_freshness_s: float | None = None) -> Quote:
        """See :meth:`FailoverOrchestrator.get_price`."""
        return await self.orchestrator.get_price(symbol, required_freshness_s)

    async def get_batch_prices(
        self,
        symbols: Iterable[str],
        required_freshness_s: float | None = None,
        include_volatility: bool = False,
    ) -> BatchPriceResult:
        """See :meth:`FailoverOrchestrator.get_batch_prices`."""
        return await self.orchestrator.get_batch_prices(
            symbols, required_freshness_s, include_volatility
        )

    def get_volatility(self, symbol: str) -> VolatilitySnapshot | None:
        return self.monitor.snapshot(symbol)

    def add_alert_listener(self, listener: AlertListener) -> None:
        self.monitor.add_alert_listener(listener)

    def remove_alert_listener(self, listener: AlertListener) -> None:
        self.monitor.remove_alert_listener(listener)

    def set_source_enabled(self, name: str, enabled: bool) -> None:
        """:raises KeyError: If the source is unknown."""
        self.registry.set_enabled(name, enabled)

    def reset_source(self, name: str) -> None:
        """Clear a source's statistics, breaker and rate-limit state.

        :raises KeyError: If the source is unknown.
        """
        self.registry.reset_source(name)
        self.retry.reset(name)

    async def start(self) -> None:
        """Start the periodic tasks. Idempotent."""
        if self.running:
            return
        cfg = self.config
        self.scheduler.every(
            "health_check",
            cfg.health_check_interval_ms,
            functools.partial(self.orchestrator.health_check, cfg.health_check_symbol),
        )
        self.scheduler.every("cache_cleanup", cfg.cache_cleanup_interval_ms, self.cache.cleanup)
        self.scheduler.every(
            "volatility_refresh", cfg.volatility_refresh_interval_ms, self.monitor.refresh
        )
        if cfg.tracked_symbols:
            self.scheduler.every(
                "batch_update", cfg.batch_update_interval_ms, self.refresh_tracked
            )
        self.running = True
        logger.info(
            f"Price feed started with sources {self.registry.names}"
            + (f", tracking {cfg.tracked_symbols}" if cfg.tracked_symbols else "")
        )

    async def refresh_tracked(self) -> dict[str, Quote | None]:
        """Re-price every tracked symbol from live sources.

        Failures are logged and reported as None.
        """
        symbols = self.config.tracked_symbols
        results = await asyncio.gather(*(self._refresh_one(s) for s in symbols))
        updated = dict(zip(symbols, results, strict=True))
        logger.info(
            f"Batch update: {sum(q is not None for q in updated.values())}/{len(symbols)} refreshed"
        )
        return updated

    async def _refresh_one(self, symbol: str) -> Quote | None:
        try:
            return await self.orchestrator.get_price(symbol)
        except PriceFeedError as e:
            logger.warning(f"Batch update failed for {symbol}: {e}")
            return None

    def subscribe(
        self,
        symbol: str,
        callback: SubscriptionCallback,
        interval_ms: int = 60_000,
        include_volatility: bool = False,
    ) -> str:
        """Deliver a :class:`PriceUpdate` for ``symbol`` every ``interval_ms``.

        The first update is fetched immediately. Must be called with an event
        loop running.

        :returns: Subscription id for :meth:`unsubscribe`.
        """
        sub_id = f"sub_{next(self._subscription_ids)}"
        subscription = Subscription(
            id=sub_id,
            symbol=symbol.upper(),
            interval_ms=interval_ms,
            callback=callback,
            include_volatility=include_volatility,
        )
        self.scheduler.every(
            self._task_name(sub_id),
            interval_ms,
            functools.partial(self._deliver, sub_id),
            run_immediately=True,
        )
        self._subscriptions[sub_id] = subscription
        logger.info(f"Subscription {sub_id}: {subscription.symbol} every {interval_ms}ms")
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        """Cancel a subscription. No callback fires for it afterwards.

        :raises SubscriptionNotFound: If the id is unknown.
        """
        if self._subscriptions.pop(sub_id, None) is None:
            raise SubscriptionNotFound(sub_id)
        self.scheduler.cancel(self._task_name(sub_id))
        logger.info(f"Subscription {sub_id} cancelled")

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    @staticmethod
    def _task_name(sub_id: str) -> str:
        return f"subscription:{sub_id}"

    async def _deliver(self, sub_id: str) -> None:
        subscription = self._subscriptions.get(sub_id)
        if subscription is None:
            return
        try:
            quote = await self.orchestrator.get_price(subscription.symbol)
        except PriceFeedError as e:
            logger.warning(f"Subscription {sub_id}: {e}")
            return

        # The subscription may have been cancelled while the price was in flight
        if sub_id not in self._subscriptions:
            return
        volatility = (
            self.monitor.snapshot(subscription.symbol)
            if subscription.include_volatility
            else None
        )
        result = subscription.callback(PriceUpdate(quote, volatility))
        if inspect.isawaitable(result):
            await result

    def get_status(self) -> ServiceStatus:
        return ServiceStatus(
            running=self.running,
            sources=self.registry.get_all_health(),
            breakers={
                name: self.registry.breaker_state(name).value for name in self.registry.names
            },
            rate_limits=self.retry.get_all_rate_limits(),
            retry_metrics=self.retry.get_all_metrics(),
            cache_stats=self.cache.stats(),
            volatility_summary=self.monitor.summary(),
            subscriptions=len(self._subscriptions),
        )

    def stop(self) -> None:
        """Cancel every periodic task and subscription, synchronously."""
        self._subscriptions.clear()
        self.scheduler.stop()
        if self.running:
            logger.info("Price feed stopped")
        self.running = False

    async def close(self) -> None:
        """Stop and release the shared HTTP client."""
        self.stop()
        await self.scheduler.aclose()
        await BaseSource.close_shared_client()

    async def run(self) -> None:
        """Start and keep running until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.close()
