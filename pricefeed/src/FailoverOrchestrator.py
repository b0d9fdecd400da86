"""FailoverOrchestrator: First healthy, fresh-enough answer wins.

For one symbol the orchestrator walks the registry's ordered source list and
invokes each source through the retry controller with that source's timeout.
The first quote that satisfies the freshness requirement is cached, fed to
the volatility monitor and returned. Every invocation, successful or not,
ends in exactly one outcome recorded in the registry.

Only :class:`NoHealthySources` and :class:`AllSourcesFailed` leave
:meth:`FailoverOrchestrator.get_price`; every other failure moves on to the
next source. Batch lookups report per-symbol errors instead of raising.

.. code-block:: python

    >>> orchestrator = FailoverOrchestrator(sources, registry, cache, retry, monitor)
    >>> quote = await orchestrator.get_price("ETH", required_freshness_s=600)
    >>> quote.source
    'chainlink'
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from .PriceCache import PriceCache
from .Quote import Quote
from .RetryController import RetryConfig, RetryController
from .SourceRegistry import BreakerStatus, SourceRegistry
from .VolatilityMonitor import VolatilityMonitor, VolatilitySnapshot
from .clock import Clock, SystemClock
from .errors import (
    AllSourcesFailed,
    ClassifiedError,
    ErrorKind,
    NoHealthySources,
    PriceFeedError,
    StaleDataError,
)
from .sources.base import BaseSource

logger = logging.getLogger(__name__)


@dataclass
class BatchPriceResult:
    """Outcome of :meth:`FailoverOrchestrator.get_batch_prices`.

    :ivar quotes: Quotes for the symbols that succeeded.
    :ivar errors: Failure reason for each symbol that did not.
    :ivar from_cache: Whether each successful quote was served from the cache.
    :ivar total_latency_ms: Wall time of the whole batch.
    :ivar volatility: Snapshots per symbol, only when requested.
    """

    quotes: dict[str, Quote] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    from_cache: dict[str, bool] = field(default_factory=dict)
    total_latency_ms: float = 0.0
    volatility: dict[str, VolatilitySnapshot] | None = None


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


class FailoverOrchestrator:
    """Ordered failover across sources with caching and health reporting.

    :ivar sources: Source instances by name; every registry entry needs one.
    :ivar registry: Health and breaker state.
    :ivar cache: Quote cache.
    :ivar retry: Retry controller shared by every source call.
    :ivar monitor: Volatility monitor fed with every live quote (optional).
    """

    def __init__(
        self,
        sources: Iterable[BaseSource],
        registry: SourceRegistry,
        cache: PriceCache,
        retry: RetryController,
        monitor: VolatilityMonitor | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the orchestrator.

        :raises ValueError: If a registered source has no instance.
        """
        self.sources: dict[str, BaseSource] = {s.source_name: s for s in sources}
        missing = [name for name in registry.names if name not in self.sources]
        if missing:
            raise ValueError(f"No source instance for registered sources: {missing}")
        self.registry = registry
        self.cache = cache
        self.retry = retry
        self.monitor = monitor
        self.clock = clock or SystemClock()

    async def get_price(
        self,
        symbol: str,
        required_freshness_s: float | None = None,
        deadline_ms: int | None = None,
    ) -> Quote:
        """Return the first acceptable quote for ``symbol``.

        :param symbol: Asset symbol (case-insensitive).
        :param required_freshness_s: Reject quotes older than this.
        :param deadline_ms: Absolute time bounding every retry loop.
        :raises NoHealthySources: When the registry offers no source at all.
        :raises AllSourcesFailed: When every candidate failed.
        """
        quote, _ = await self._fetch(symbol.upper(), required_freshness_s, deadline_ms)
        return quote

    async def _fetch(
        self,
        symbol: str,
        required_freshness_s: float | None,
        deadline_ms: int | None,
    ) -> tuple[Quote, bool]:
        candidates = self.registry.ordered_healthy_sources()
        if not candidates:
            logger.error(f"No healthy sources available for {symbol}")
            raise NoHealthySources(symbol)

        attempted: list[tuple[str, str]] = []
        for descriptor in candidates:
            name = descriptor.name
            source = self.sources[name]

            if not source.supports_symbol(symbol):
                attempted.append((name, f"does not support {symbol}"))
                continue
            if self.registry.is_open(name):
                attempted.append((name, "circuit breaker open"))
                continue

            started = time.perf_counter()
            try:
                response = await self.retry.call_with_retry(
                    name,
                    descriptor.timeout_ms,
                    functools.partial(source.request, symbol),
                    deadline_ms=deadline_ms,
                )
                quote = source.parse_quote(symbol, response, self.clock.now_ms())
                if (
                    required_freshness_s is not None
                    and quote.staleness_seconds > required_freshness_s
                ):
                    raise StaleDataError(name, quote.staleness_seconds, required_freshness_s)
            except PriceFeedError as e:
                self.registry.record_outcome(name, False, _elapsed_ms(started), str(e))
                attempted.append((name, str(e)))
                logger.warning(f"[{name}] Failed to price {symbol}, failing over: {e}")
                continue

            latency = _elapsed_ms(started)
            self.registry.record_outcome(name, True, latency)
            if not descriptor.is_cache_backed:
                self.cache.put(symbol, quote)
                if self.monitor is not None:
                    self.monitor.add_quote(quote)
            logger.info(
                f"[{name}] {symbol} = {quote.price_usd} "
                f"(confidence {quote.confidence}, {latency:.0f}ms)"
            )
            return quote, descriptor.is_cache_backed

        tried = {name for name, _ in attempted}
        for descriptor in self.registry.get_descriptors():
            if (
                descriptor.enabled
                and descriptor.name not in tried
                and self.registry.breaker_state(descriptor.name) is not BreakerStatus.CLOSED
            ):
                attempted.append((descriptor.name, "circuit breaker open"))

        logger.error(f"All sources failed for {symbol}: {attempted}")
        raise AllSourcesFailed(symbol, attempted)

    async def get_batch_prices(
        self,
        symbols: Iterable[str],
        required_freshness_s: float | None = None,
        include_volatility: bool = False,
    ) -> BatchPriceResult:
        """Price several symbols, cache first, then live in parallel.

        Cached quotes that satisfy ``required_freshness_s`` are used as they
        are; every other symbol goes through :meth:`get_price` concurrently.
        Failures end up in ``errors`` and never raise.
        """
        started = time.perf_counter()
        keys = list(dict.fromkeys(s.upper() for s in symbols))
        result = BatchPriceResult()

        remaining: list[str] = []
        for key, quote in self.cache.get_batch(keys).items():
            if quote is not None and (
                required_freshness_s is None
                or quote.staleness_seconds <= required_freshness_s
            ):
                result.quotes[key] = quote
                result.from_cache[key] = True
            else:
                remaining.append(key)

        outcomes = await asyncio.gather(
            *(self._fetch_for_batch(key, required_freshness_s) for key in remaining)
        )
        for key, quote, via_cache, error in outcomes:
            if quote is not None:
                result.quotes[key] = quote
                result.from_cache[key] = via_cache
            else:
                result.errors[key] = error

        if include_volatility and self.monitor is not None:
            result.volatility = {}
            for key in result.quotes:
                snapshot = self.monitor.snapshot(key)
                if snapshot is not None:
                    result.volatility[key] = snapshot

        result.total_latency_ms = _elapsed_ms(started)
        logger.info(
            f"Batch: {len(result.quotes)}/{len(keys)} priced "
            f"({sum(result.from_cache.values())} from cache, {len(result.errors)} failed) "
            f"in {result.total_latency_ms:.0f}ms"
        )
        return result

    async def _fetch_for_batch(
        self, symbol: str, required_freshness_s: float | None
    ) -> tuple[str, Quote | None, bool, str]:
        try:
            quote, via_cache = await self._fetch(symbol, required_freshness_s, None)
        except PriceFeedError as e:
            return symbol, None, False, str(e)
        return symbol, quote, via_cache, ""

    async def health_check(self, symbol: str = "ETH") -> dict[str, bool]:
        """Probe every live source once with ``symbol`` and update its health.

        A source is healthy when it answers with a quote no older than its own
        heartbeat. Rate-limited sources keep their current health. Probes use a
        single attempt and do not touch the cache or the volatility monitor.

        :returns: Probe result per source name.
        """
        key = symbol.upper()
        probes = [
            d
            for d in self.registry.get_descriptors()
            if d.enabled and not d.is_cache_backed and self.sources[d.name].supports_symbol(key)
        ]
        results = await asyncio.gather(*(self._probe(d.name, d.timeout_ms, key) for d in probes))
        outcome = {}
        for descriptor, (healthy, reason) in zip(probes, results, strict=True):
            if healthy is None:
                continue
            self.registry.mark_health(descriptor.name, healthy, reason)
            outcome[descriptor.name] = healthy
        logger.info(
            f"Health check: {sum(outcome.values())}/{len(outcome)} sources healthy"
        )
        return outcome

    async def _probe(self, name: str, timeout_ms: int, symbol: str) -> tuple[bool | None, str | None]:
        source = self.sources[name]
        try:
            response = await self.retry.call_with_retry(
                name,
                timeout_ms,
                functools.partial(source.request, symbol),
                config=RetryConfig(max_retries=0),
            )
            quote = source.parse_quote(symbol, response, self.clock.now_ms())
        except ClassifiedError as e:
            if e.kind is ErrorKind.RATE_LIMITED:
                logger.debug(f"[{name}] Health probe rate limited, keeping current health")
                return None, None
            return False, str(e)
        except PriceFeedError as e:
            return False, str(e)

        if quote.staleness_seconds > quote.heartbeat_seconds:
            return False, f"quote {quote.staleness_seconds}s old"
        return True, None
