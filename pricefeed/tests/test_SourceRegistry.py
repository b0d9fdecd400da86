"""Unit tests for SourceRegistry."""

import pytest

from pricefeed.src.SourceDescriptor import SourceDescriptor, SourceKind
from pricefeed.src.SourceRegistry import BreakerStatus, SourceRegistry

from conftest import FakeClock


def descriptors() -> list[SourceDescriptor]:
    return [
        SourceDescriptor("chainlink", SourceKind.ORACLE, 1),
        SourceDescriptor("coingecko", SourceKind.REST, 4),
        SourceDescriptor("zerox", SourceKind.DEX, 3),
        SourceDescriptor("coinbase", SourceKind.REST, 4),
    ]


def names(registry: SourceRegistry) -> list[str]:
    return [d.name for d in registry.ordered_healthy_sources()]


class TestSourceRegistryInit:
    """Test SourceRegistry initialization."""

    def test_default_values(self, clock: FakeClock) -> None:
        """Default values should be reasonable."""
        registry = SourceRegistry(descriptors(), clock)
        assert registry.failure_threshold == 0.8
        assert registry.min_calls == 5
        assert registry.health_min_calls == 10
        assert registry.cooldown_ms == 60_000
        assert registry.names == ["chainlink", "coingecko", "zerox", "coinbase"]
        assert registry.healthy_count() == 4

    def test_duplicate_rejected(self, clock: FakeClock) -> None:
        """Duplicate names should be rejected."""
        with pytest.raises(ValueError, match="Duplicate source name"):
            SourceRegistry(
                [SourceDescriptor("a", SourceKind.REST, 1), SourceDescriptor("a", SourceKind.DEX, 2)],
                clock,
            )

    def test_invalid_threshold(self, clock: FakeClock) -> None:
        """Thresholds outside (0, 1] should be rejected."""
        with pytest.raises(ValueError, match="failure_threshold"):
            SourceRegistry([], clock, failure_threshold=0)

    def test_unknown_source(self, clock: FakeClock) -> None:
        """Unknown names should raise KeyError."""
        registry = SourceRegistry(descriptors(), clock)
        with pytest.raises(KeyError, match="Unknown source"):
            registry.record_outcome("nope", True, 1)


class TestOrdering:
    """Test ordered_healthy_sources."""

    def test_priority_then_registration(self, clock: FakeClock) -> None:
        """Sources should be ordered by priority, ties by registration order."""
        registry = SourceRegistry(descriptors(), clock)
        assert names(registry) == ["chainlink", "zerox", "coingecko", "coinbase"]

    def test_disabled_excluded(self, clock: FakeClock) -> None:
        """Disabled sources should not be offered."""
        registry = SourceRegistry(descriptors(), clock)
        registry.set_enabled("zerox", False)
        assert "zerox" not in names(registry)
        registry.set_enabled("zerox", True)
        assert "zerox" in names(registry)

    def test_unhealthy_excluded(self, clock: FakeClock) -> None:
        """Sources marked unhealthy should not be offered."""
        registry = SourceRegistry(descriptors(), clock)
        registry.mark_health("chainlink", False, "stale")
        assert names(registry)[0] == "zerox"
        assert registry.get_health("chainlink").last_error == "stale"

    def test_empty_when_all_disabled(self, clock: FakeClock) -> None:
        """Disabling every source should leave nothing to offer."""
        registry = SourceRegistry(descriptors(), clock)
        for name in registry.names:
            registry.set_enabled(name, False)
        assert registry.ordered_healthy_sources() == []


class TestHealth:
    """Test lifetime health tracking."""

    def test_counts_and_latency(self, clock: FakeClock) -> None:
        """Outcomes should update counts and the latency average."""
        registry = SourceRegistry(descriptors(), clock)
        registry.record_outcome("chainlink", True, 100)
        registry.record_outcome("chainlink", False, 200, "boom")
        health = registry.get_health("chainlink")
        assert health.success_count == 1
        assert health.failure_count == 1
        assert health.average_latency_ms == pytest.approx(100 * 0.8 + 200 * 0.2)
        assert health.last_error == "boom"
        assert health.last_error_time_ms == clock.now_ms()
        assert health.failure_rate == pytest.approx(0.5)

    def test_not_judged_before_min_calls(self, clock: FakeClock) -> None:
        """Health should not flip before ten calls."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(9):
            registry.record_outcome("coingecko", False, 10)
        assert registry.get_health("coingecko").is_healthy

    def test_unhealthy_after_min_calls(self, clock: FakeClock) -> None:
        """A high failure rate over ten calls should mark the source unhealthy."""
        registry = SourceRegistry(descriptors(), clock, min_calls=100)
        registry.record_outcome("coingecko", True, 10)
        for _ in range(9):
            registry.record_outcome("coingecko", False, 10)
        assert not registry.get_health("coingecko").is_healthy
        assert registry.healthy_count() == 3

    def test_reset_source(self, clock: FakeClock) -> None:
        """Resetting should clear health and breaker."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(10):
            registry.record_outcome("zerox", False, 10)
        registry.reset_source("zerox")
        assert registry.get_health("zerox").total_calls == 0
        assert registry.breaker_state("zerox") is BreakerStatus.CLOSED
        assert "zerox" in names(registry)


class TestCircuitBreaker:
    """Test circuit breaker transitions."""

    def test_four_failures_stay_closed(self, clock: FakeClock) -> None:
        """Fewer than five calls should never open the breaker."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(4):
            registry.record_outcome("chainlink", False, 10)
        assert not registry.is_open("chainlink")
        assert registry.breaker_state("chainlink") is BreakerStatus.CLOSED

    def test_five_failures_open(self, clock: FakeClock) -> None:
        """Five failures out of five should open the breaker."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(5):
            registry.record_outcome("chainlink", False, 10)
        assert registry.is_open("chainlink")
        assert registry.breaker_state("chainlink") is BreakerStatus.OPEN
        assert "chainlink" not in names(registry)

    def test_rate_below_threshold_stays_closed(self, clock: FakeClock) -> None:
        """Three failures out of five should not open the breaker."""
        registry = SourceRegistry(descriptors(), clock)
        for success in (True, False, True, False, False):
            registry.record_outcome("chainlink", success, 10)
        assert not registry.is_open("chainlink")

    def test_probe_after_cooldown(self, clock: FakeClock) -> None:
        """The breaker should admit a probe exactly at the cooldown."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(5):
            registry.record_outcome("chainlink", False, 10)
        clock.advance(59_999)
        assert registry.is_open("chainlink")
        clock.advance(1)
        assert registry.breaker_state("chainlink") is BreakerStatus.HALF_OPEN
        assert not registry.is_open("chainlink")
        assert registry.get_breaker("chainlink").half_open

    def test_half_open_admits_one_caller(self, clock: FakeClock) -> None:
        """Only the first caller after the cooldown should be let through."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(5):
            registry.record_outcome("chainlink", False, 10)
        clock.advance(60_000)
        assert "chainlink" in names(registry)
        assert not registry.is_open("chainlink")
        assert registry.is_open("chainlink")
        assert "chainlink" not in names(registry)
        assert registry.breaker_state("chainlink") is BreakerStatus.HALF_OPEN

    def test_unreported_trial_call_released(self, clock: FakeClock) -> None:
        """A trial call that never reports should free its slot after another cooldown."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(5):
            registry.record_outcome("chainlink", False, 10)
        clock.advance(60_000)
        assert not registry.is_open("chainlink")
        clock.advance(59_999)
        assert registry.is_open("chainlink")
        clock.advance(1)
        assert not registry.is_open("chainlink")
        assert registry.get_breaker("chainlink").probe_started_ms == clock.now_ms()

    def test_successful_probe_closes(self, clock: FakeClock) -> None:
        """A successful probe should close the breaker and reset the window."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(5):
            registry.record_outcome("chainlink", False, 10)
        clock.advance(60_000)
        assert not registry.is_open("chainlink")
        registry.record_outcome("chainlink", True, 10)
        breaker = registry.get_breaker("chainlink")
        assert not breaker.is_open
        assert breaker.window_calls == 0
        assert registry.breaker_state("chainlink") is BreakerStatus.CLOSED

    def test_failed_probe_reopens(self, clock: FakeClock) -> None:
        """A failed probe should reopen the breaker for a full cooldown."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(5):
            registry.record_outcome("chainlink", False, 10)
        clock.advance(60_000)
        assert not registry.is_open("chainlink")
        registry.record_outcome("chainlink", False, 10)
        assert registry.is_open("chainlink")
        assert registry.get_breaker("chainlink").opened_at_ms == clock.now_ms()
        clock.advance(60_000)
        assert not registry.is_open("chainlink")

    def test_healthy_mark_closes_breaker(self, clock: FakeClock) -> None:
        """Marking a source healthy should close its breaker."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(5):
            registry.record_outcome("chainlink", False, 10)
        registry.mark_health("chainlink", True)
        assert not registry.is_open("chainlink")
        assert registry.get_breaker("chainlink").window_calls == 0

    def test_breakers_independent(self, clock: FakeClock) -> None:
        """Failures of one source should not affect another."""
        registry = SourceRegistry(descriptors(), clock)
        for _ in range(5):
            registry.record_outcome("chainlink", False, 10)
        assert not registry.is_open("zerox")
        assert names(registry) == ["zerox", "coingecko", "coinbase"]
