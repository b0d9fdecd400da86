"""Unit tests for PriceCache."""

import pytest

from pricefeed.src.PriceCache import PriceCache, StalenessLevel
from pricefeed.src.Quote import Quote

from conftest import FakeClock


def make_quote(
    clock: FakeClock,
    symbol: str = "ETH",
    price: float = 3000.0,
    age_s: int = 0,
    source: str = "chainlink",
    heartbeat: float = 3600.0,
) -> Quote:
    now = clock.now_ms()
    return Quote.create(
        symbol, price, timestamp_ms=now - age_s * 1000, source=source, now_ms=now,
        heartbeat_seconds=heartbeat,
    )


class TestPriceCacheInit:
    """Test PriceCache initialization."""

    def test_default_values(self, clock: FakeClock) -> None:
        """Default values should be reasonable."""
        cache = PriceCache(clock)
        assert cache.default_ttl_ms == 300_000
        assert cache.max_entries == 10_000
        assert cache.warning_threshold_s == 1800
        assert cache.error_threshold_s == 7200
        assert len(cache) == 0

    def test_invalid_capacity(self, clock: FakeClock) -> None:
        """Capacity below one should be rejected."""
        with pytest.raises(ValueError, match="max_entries"):
            PriceCache(clock, max_entries=0)

    def test_invalid_thresholds(self, clock: FakeClock) -> None:
        """Warning threshold must be below the error threshold."""
        with pytest.raises(ValueError, match="warning_threshold_s"):
            PriceCache(clock, warning_threshold_s=100, error_threshold_s=100)


class TestPriceCacheGetPut:
    """Test reads, writes and TTL."""

    def test_round_trip_case_insensitive(self, clock: FakeClock) -> None:
        """Symbols should be matched case-insensitively."""
        cache = PriceCache(clock)
        cache.put("eth", make_quote(clock))
        assert "ETH" in cache
        quote = cache.get("Eth")
        assert quote is not None
        assert quote.price_usd == 3000.0

    def test_staleness_recomputed_on_read(self, clock: FakeClock) -> None:
        """Reads should report staleness at read time."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock, age_s=10))
        clock.advance(30_000)
        quote = cache.get("ETH")
        assert quote is not None
        assert quote.staleness_seconds == 40
        assert quote.confidence == round(100 - 40 / 7200 * 100)

    def test_miss(self, clock: FakeClock) -> None:
        """Unknown symbols should miss."""
        cache = PriceCache(clock)
        assert cache.get("BTC") is None
        assert cache.stats().misses == 1

    def test_expired_entry_is_a_miss(self, clock: FakeClock) -> None:
        """An entry past its TTL should be dropped on read."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock), ttl_ms=1000)
        clock.advance(1000)
        assert cache.get("ETH") is not None
        clock.advance(1)
        assert cache.get("ETH") is None
        assert "ETH" not in cache
        stats = cache.stats()
        assert stats.expired == 1
        assert stats.misses == 1

    def test_ttl_from_source_defaults(self, clock: FakeClock) -> None:
        """The per-source TTL should apply when none is given."""
        cache = PriceCache(clock, ttl_by_source={"coinbase": 5_000})
        cache.put("BTC", make_quote(clock, "BTC", source="coinbase", heartbeat=600))
        entry = cache.peek("BTC")
        assert entry is not None
        assert entry.ttl_ms == 5_000

    def test_ttl_clamped_to_error_threshold(self, clock: FakeClock) -> None:
        """A TTL longer than two heartbeats should be clamped."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock, heartbeat=60), ttl_ms=10_000_000)
        entry = cache.peek("ETH")
        assert entry is not None
        assert entry.ttl_ms == 120_000

    def test_zero_ttl_not_cached(self, clock: FakeClock) -> None:
        """Quotes with a zero TTL should not be stored."""
        cache = PriceCache(clock, ttl_by_source={"stale_cache": 0})
        cache.put("ETH", make_quote(clock, source="stale_cache"))
        assert len(cache) == 0

    def test_put_replaces(self, clock: FakeClock) -> None:
        """A second put should replace the first."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock, price=1.0))
        cache.put("ETH", make_quote(clock, price=2.0))
        assert len(cache) == 1
        assert cache.get("ETH").price_usd == 2.0

    def test_get_batch(self, clock: FakeClock) -> None:
        """Batch reads should key results by upper-case symbol."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock))
        result = cache.get_batch(["eth", "btc"])
        assert set(result) == {"ETH", "BTC"}
        assert result["ETH"] is not None
        assert result["BTC"] is None

    def test_peek_does_not_count(self, clock: FakeClock) -> None:
        """Peeking should not touch counters."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock))
        assert cache.peek("eth") is not None
        stats = cache.stats()
        assert stats.hits == 0
        assert stats.misses == 0


class TestPriceCacheStaleness:
    """Test staleness grading."""

    @pytest.mark.parametrize(
        ("age_s", "expected"),
        [
            (3000, StalenessLevel.FRESH),
            (3600, StalenessLevel.FRESH),
            (4000, StalenessLevel.WARNING),
            (7300, StalenessLevel.ERROR),
        ],
    )
    def test_hourly_heartbeat_grades(
        self, clock: FakeClock, age_s: int, expected: StalenessLevel
    ) -> None:
        """Quotes should be graded against one and two heartbeats."""
        cache = PriceCache(clock)
        assert cache.classify(make_quote(clock, age_s=age_s)) is expected

    def test_global_thresholds_without_heartbeat(self, clock: FakeClock) -> None:
        """Quotes with no heartbeat should use the global thresholds."""
        cache = PriceCache(clock)
        quote = make_quote(clock, age_s=2000, heartbeat=0)
        assert cache.thresholds_for(quote) == (1800, 7200)
        assert cache.classify(quote) is StalenessLevel.WARNING

    def test_stale_entry_still_returned(self, clock: FakeClock) -> None:
        """Stale quotes should still be served until their TTL runs out."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock, age_s=5000))
        assert cache.staleness_level("ETH") is StalenessLevel.WARNING
        assert cache.get("ETH") is not None

    def test_list_stale_oldest_first(self, clock: FakeClock) -> None:
        """Stale listings should be ordered oldest first."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock, "ETH", age_s=4000))
        cache.put("BTC", make_quote(clock, "BTC", age_s=7100))
        cache.put("LINK", make_quote(clock, "LINK", age_s=10))
        stale = cache.list_stale()
        assert [s.symbol for s in stale] == ["BTC", "ETH"]
        assert all(s.level is StalenessLevel.WARNING for s in stale)

    def test_list_stale_explicit_thresholds(self, clock: FakeClock) -> None:
        """Explicit thresholds should override per-source grading."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock, age_s=100))
        stale = cache.list_stale(warn_after_s=30, error_after_s=60)
        assert len(stale) == 1
        assert stale[0].level is StalenessLevel.ERROR

    def test_clear_critically_stale(self, clock: FakeClock) -> None:
        """Only error-graded entries should be cleared."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock, "ETH", heartbeat=60))
        cache.put("BTC", make_quote(clock, "BTC"))
        clock.advance(121_000)
        assert cache.clear_critically_stale() == 1
        assert cache.symbols() == ["BTC"]


class TestPriceCacheMaintenance:
    """Test eviction, cleanup and stats."""

    def test_lru_eviction(self, clock: FakeClock) -> None:
        """The least recently read entry should be evicted at capacity."""
        cache = PriceCache(clock, max_entries=2)
        cache.put("ETH", make_quote(clock, "ETH"))
        clock.advance(1000)
        cache.put("BTC", make_quote(clock, "BTC"))
        clock.advance(1000)
        cache.get("ETH")
        clock.advance(1000)
        cache.put("LINK", make_quote(clock, "LINK"))
        assert set(cache.symbols()) == {"ETH", "LINK"}
        assert cache.stats().evictions == 1

    def test_rewrite_refreshes_lru_position(self, clock: FakeClock) -> None:
        """Writing an existing key should make it the most recently used."""
        cache = PriceCache(clock, max_entries=2)
        cache.put("ETH", make_quote(clock, "ETH"))
        cache.put("BTC", make_quote(clock, "BTC"))
        cache.put("ETH", make_quote(clock, "ETH", price=1.0))
        cache.put("LINK", make_quote(clock, "LINK"))
        assert cache.symbols() == ["ETH", "LINK"]
        assert cache.stats().evictions == 1

    def test_replace_at_capacity_does_not_evict(self, clock: FakeClock) -> None:
        """Updating an existing key at capacity should not evict anything."""
        cache = PriceCache(clock, max_entries=1)
        cache.put("ETH", make_quote(clock))
        cache.put("ETH", make_quote(clock, price=1.0))
        assert cache.stats().evictions == 0

    def test_cleanup_idempotent(self, clock: FakeClock) -> None:
        """Cleanup should drop expired entries once."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock), ttl_ms=1000)
        cache.put("BTC", make_quote(clock, "BTC"), ttl_ms=60_000)
        clock.advance(5000)
        assert cache.cleanup() == 1
        assert cache.cleanup() == 0
        assert cache.symbols() == ["BTC"]

    def test_stats_rates(self, clock: FakeClock) -> None:
        """Hit and miss rates should be percentages."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock))
        cache.get("ETH")
        cache.get("ETH")
        cache.get("ETH")
        cache.get("BTC")
        stats = cache.stats()
        assert stats.total_keys == 1
        assert stats.hits == 3
        assert stats.misses == 1
        assert stats.hit_rate == pytest.approx(75.0)
        assert stats.miss_rate == pytest.approx(25.0)

    def test_stats_empty(self, clock: FakeClock) -> None:
        """Rates should be zero before any read."""
        stats = PriceCache(clock).stats()
        assert stats.hit_rate == 0.0
        assert stats.miss_rate == 0.0

    def test_delete_and_clear(self, clock: FakeClock) -> None:
        """Delete and clear should remove entries."""
        cache = PriceCache(clock)
        cache.put("ETH", make_quote(clock))
        cache.put("BTC", make_quote(clock, "BTC"))
        assert cache.delete("eth") is True
        assert cache.delete("eth") is False
        cache.clear()
        assert len(cache) == 0

    def test_reset_stats(self, clock: FakeClock) -> None:
        """Resetting stats should zero the counters."""
        cache = PriceCache(clock)
        cache.get("ETH")
        cache.reset_stats()
        assert cache.stats().misses == 0
