"""PriceCache: Last known quote per symbol with TTL and staleness grading.

Two clocks run on every entry and they are deliberately separate:

    - TTL is measured from ``cached_at_ms``. Once it runs out the entry is
      treated as absent and dropped on the next read or cleanup sweep.
    - Staleness is measured from the quote's own ``timestamp_ms``. It is
      recomputed on every read and graded fresh/warning/error against the
      producing source's heartbeat. The grade is informational; it never
      hides a value from ``get``.

The TTL of an entry never exceeds the error threshold of its source, so a
quote cannot outlive the point at which it would be graded critical.

.. code-block:: python

    >>> cache = PriceCache(clock, ttl_by_source={"chainlink": 300_000})
    >>> cache.put("ETH", quote)
    >>> cache.get("eth").staleness_seconds
    12
    >>> cache.stats().hits
    1
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum

from .Quote import Quote, staleness_seconds
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class StalenessLevel(str, Enum):
    """Staleness grade of a cached quote."""

    FRESH = "fresh"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class CacheEntry:
    """A cached quote and its bookkeeping.

    :ivar quote: Quote as it was stored.
    :ivar cached_at_ms: When the entry was written.
    :ivar ttl_ms: Lifetime measured from ``cached_at_ms``.
    :ivar access_count: Successful reads since the entry was written.
    :ivar last_accessed_ms: Last read (or the write time if never read).
    """

    quote: Quote
    cached_at_ms: int
    ttl_ms: int
    access_count: int = 0
    last_accessed_ms: int = 0

    def expires_at_ms(self) -> int:
        return self.cached_at_ms + self.ttl_ms

    def is_expired(self, now_ms: int) -> bool:
        return self.cached_at_ms + self.ttl_ms < now_ms


@dataclass(frozen=True)
class StaleEntry:
    """One row of :meth:`PriceCache.list_stale`."""

    symbol: str
    source: str
    staleness_seconds: int
    level: StalenessLevel


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time cache counters.

    :ivar total_keys: Entries currently held (expired ones not yet swept included).
    :ivar hits: Reads that returned a quote.
    :ivar misses: Reads that returned nothing, expired entries included.
    :ivar hit_rate: ``hits / (hits + misses)`` as a percentage.
    :ivar miss_rate: ``100 - hit_rate`` once any read happened.
    :ivar stale_prices: Entries currently graded warning or error.
    :ivar evictions: Entries dropped to make room at capacity.
    :ivar expired: Entries dropped because their TTL ran out.
    """

    total_keys: int
    hits: int
    misses: int
    hit_rate: float
    miss_rate: float
    stale_prices: int
    evictions: int
    expired: int


class PriceCache:
    """In-process quote cache keyed by upper-case symbol.

    :ivar max_entries: Capacity bound; the least recently read entry is evicted
        when a new symbol is inserted at capacity.
    :ivar warning_threshold_s: Warning grade for quotes with no known heartbeat.
    :ivar error_threshold_s: Error grade for quotes with no known heartbeat.
    """

    DEFAULT_TTL_MS = 5 * 60 * 1000
    DEFAULT_MAX_ENTRIES = 10_000
    DEFAULT_WARNING_THRESHOLD_S = 1800
    DEFAULT_ERROR_THRESHOLD_S = 7200

    def __init__(
        self,
        clock: Clock | None = None,
        *,
        ttl_by_source: Mapping[str, int] | None = None,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        warning_threshold_s: float = DEFAULT_WARNING_THRESHOLD_S,
        error_threshold_s: float = DEFAULT_ERROR_THRESHOLD_S,
    ) -> None:
        """Initialize the cache.

        :param clock: Time source (system clock if None).
        :param ttl_by_source: Default TTL per source name, usually taken from
            the source descriptors.
        :param default_ttl_ms: TTL for sources missing from ``ttl_by_source``.
        :param max_entries: Capacity bound.
        :param warning_threshold_s: Global warning threshold.
        :param error_threshold_s: Global error threshold.
        """
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if warning_threshold_s >= error_threshold_s:
            raise ValueError("warning_threshold_s must be below error_threshold_s")

        self.clock = clock or SystemClock()
        self.ttl_by_source = dict(ttl_by_source or {})
        self.default_ttl_ms = default_ttl_ms
        self.max_entries = max_entries
        self.warning_threshold_s = warning_threshold_s
        self.error_threshold_s = error_threshold_s

        # Least recently used first
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, symbol: object) -> bool:
        return isinstance(symbol, str) and symbol.upper() in self._entries

    def thresholds_for(self, quote: Quote) -> tuple[float, float]:
        """Warning and error thresholds (seconds) that apply to ``quote``.

        Quotes from a source with a known heartbeat are graded against one
        and two heartbeats; anything else falls back to the global thresholds.
        """
        heartbeat = quote.heartbeat_seconds
        if heartbeat and heartbeat > 0:
            return heartbeat, heartbeat * 2
        return self.warning_threshold_s, self.error_threshold_s

    def classify(self, quote: Quote, now_ms: int | None = None) -> StalenessLevel:
        """Grade a quote's staleness at ``now_ms`` (default: now)."""
        if now_ms is None:
            now_ms = self.clock.now_ms()
        warn_s, error_s = self.thresholds_for(quote)
        return self._grade(staleness_seconds(quote.timestamp_ms, now_ms), warn_s, error_s)

    @staticmethod
    def _grade(age_s: float, warn_s: float, error_s: float) -> StalenessLevel:
        if age_s > error_s:
            return StalenessLevel.ERROR
        if age_s > warn_s:
            return StalenessLevel.WARNING
        return StalenessLevel.FRESH

    def ttl_for(self, quote: Quote, ttl_ms: int | None = None) -> int:
        """Effective TTL for ``quote``: override or source default, clamped
        to the source's error threshold."""
        if ttl_ms is None:
            ttl_ms = self.ttl_by_source.get(quote.source, self.default_ttl_ms)
        _, error_s = self.thresholds_for(quote)
        return max(0, min(int(ttl_ms), int(error_s * 1000)))

    def put(self, symbol: str, quote: Quote, ttl_ms: int | None = None) -> None:
        """Store ``quote`` under ``symbol``, replacing any previous entry.

        :param symbol: Asset symbol (case-insensitive).
        :param quote: Quote to store.
        :param ttl_ms: Explicit TTL; the source default applies if None.
        """
        key = symbol.upper()
        ttl = self.ttl_for(quote, ttl_ms)
        if ttl <= 0:
            logger.debug(f"[{quote.source}] Not caching {key}: zero TTL")
            return

        now = self.clock.now_ms()
        if key not in self._entries and len(self._entries) >= self.max_entries:
            self._evict_lru()

        self._entries[key] = CacheEntry(
            quote=quote,
            cached_at_ms=now,
            ttl_ms=ttl,
            access_count=0,
            last_accessed_ms=now,
        )
        self._entries.move_to_end(key)
        logger.debug(f"[{quote.source}] Cached {key} at {quote.price_usd} (ttl {ttl}ms)")

    def _evict_lru(self) -> None:
        victim, _ = self._entries.popitem(last=False)
        self._evictions += 1
        logger.debug(f"Evicted {victim} (capacity {self.max_entries})")

    def get(self, symbol: str) -> Quote | None:
        """Return the cached quote with staleness recomputed, or None.

        Expired entries are removed and counted as misses.
        """
        key = symbol.upper()
        entry = self._entries.get(key)
        now = self.clock.now_ms()

        if entry is None:
            self._misses += 1
            return None

        if entry.is_expired(now):
            del self._entries[key]
            self._expired += 1
            self._misses += 1
            logger.debug(f"[{entry.quote.source}] Cache entry for {key} expired")
            return None

        self._hits += 1
        entry.access_count += 1
        entry.last_accessed_ms = now
        self._entries.move_to_end(key)

        quote = entry.quote.aged(now)
        level = self.classify(quote, now)
        if level is not StalenessLevel.FRESH:
            logger.debug(
                f"[{quote.source}] Cached {key} is {level.value} "
                f"({quote.staleness_seconds}s old)"
            )
        return quote

    def get_batch(self, symbols: Iterable[str]) -> dict[str, Quote | None]:
        """:meth:`get` for several symbols, keyed by upper-case symbol."""
        return {symbol.upper(): self.get(symbol) for symbol in symbols}

    def peek(self, symbol: str) -> CacheEntry | None:
        """Return the raw entry without touching counters or access time."""
        return self._entries.get(symbol.upper())

    def staleness_level(self, symbol: str) -> StalenessLevel | None:
        """Current grade of the cached quote for ``symbol``, if any."""
        entry = self._entries.get(symbol.upper())
        if entry is None:
            return None
        return self.classify(entry.quote)

    def list_stale(
        self,
        warn_after_s: float | None = None,
        error_after_s: float | None = None,
    ) -> list[StaleEntry]:
        """List cached quotes graded warning or error, oldest first.

        When thresholds are given they apply to every entry; otherwise each
        entry is graded against its own source's thresholds.
        """
        now = self.clock.now_ms()
        stale: list[StaleEntry] = []
        for key, entry in self._entries.items():
            warn_s, error_s = self.thresholds_for(entry.quote)
            if warn_after_s is not None:
                warn_s = warn_after_s
            if error_after_s is not None:
                error_s = error_after_s
            age = staleness_seconds(entry.quote.timestamp_ms, now)
            level = self._grade(age, warn_s, error_s)
            if level is not StalenessLevel.FRESH:
                stale.append(StaleEntry(key, entry.quote.source, age, level))
        stale.sort(key=lambda s: s.staleness_seconds, reverse=True)
        return stale

    def cleanup(self) -> int:
        """Drop every entry whose TTL has run out.

        Safe to call any number of times.

        :returns: Number of entries removed.
        """
        now = self.clock.now_ms()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._expired += len(expired)
        if expired:
            logger.debug(f"Cache cleanup removed {len(expired)} expired entries")
        return len(expired)

    def clear_critically_stale(self) -> int:
        """Drop every entry graded error.

        :returns: Number of entries removed.
        """
        now = self.clock.now_ms()
        critical = [
            k
            for k, e in self._entries.items()
            if self.classify(e.quote, now) is StalenessLevel.ERROR
        ]
        for key in critical:
            del self._entries[key]
        if critical:
            logger.info(f"Cleared {len(critical)} critically stale prices: {critical}")
        return len(critical)

    def delete(self, symbol: str) -> bool:
        return self._entries.pop(symbol.upper(), None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expired = 0

    def symbols(self) -> list[str]:
        return list(self._entries)

    def stats(self) -> CacheStats:
        """Snapshot of the cache counters."""
        total = self._hits + self._misses
        hit_rate = (self._hits / total) * 100 if total else 0.0
        miss_rate = 100.0 - hit_rate if total else 0.0
        now = self.clock.now_ms()
        stale = sum(
            1
            for e in self._entries.values()
            if self.classify(e.quote, now) is not StalenessLevel.FRESH
        )
        return CacheStats(
            total_keys=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            hit_rate=hit_rate,
            miss_rate=miss_rate,
            stale_prices=stale,
            evictions=self._evictions,
            expired=self._expired,
        )
