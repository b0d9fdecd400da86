"""SourceRegistry: Per-source health tracking with a failure-rate circuit breaker.

Every source invocation ends in exactly one :meth:`SourceRegistry.record_outcome`
call. The registry keeps two views of those outcomes:

    - Lifetime health (:class:`SourceHealth`): success/failure counts and a
      latency moving average. ``is_healthy`` is re-evaluated once ten calls
      have been seen, using the failure-rate threshold.
    - A circuit breaker (:class:`CircuitBreakerState`) over the calls since its
      last reset. It opens when the failure rate reaches the threshold with at
      least five calls, lets one probe through once the cooldown has elapsed,
      reopens on a failed probe and resets its window on a successful one.

.. code-block:: python

    >>> registry = SourceRegistry([chainlink, coingecko], clock)
    >>> [d.name for d in registry.ordered_healthy_sources()]
    ['chainlink', 'coingecko']
    >>> for _ in range(5):
    ...     registry.record_outcome("chainlink", False, 120, "timeout")
    >>> registry.is_open("chainlink")
    True
    >>> [d.name for d in registry.ordered_healthy_sources()]
    ['coingecko']
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from .SourceDescriptor import SourceDescriptor
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class BreakerStatus(str, Enum):
    """Observable state of a circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class SourceHealth:
    """Lifetime health of a single source.

    :ivar name: Source name.
    :ivar is_healthy: False once the lifetime failure rate crosses the threshold.
    :ivar success_count: Successful invocations.
    :ivar failure_count: Failed invocations.
    :ivar average_latency_ms: Exponential moving average of call latency.
    :ivar last_error: Message of the most recent failure.
    :ivar last_error_time_ms: When the most recent failure happened.
    :ivar last_success_time_ms: When the most recent success happened.
    """

    name: str
    is_healthy: bool = True
    success_count: int = 0
    failure_count: int = 0
    average_latency_ms: float = 0.0
    last_error: str | None = None
    last_error_time_ms: int | None = None
    last_success_time_ms: int | None = None

    @property
    def total_calls(self) -> int:
        return self.success_count + self.failure_count

    @property
    def failure_rate(self) -> float:
        """Lifetime failure rate in [0, 1]."""
        total = self.total_calls
        return self.failure_count / total if total else 0.0


@dataclass
class CircuitBreakerState:
    """Breaker for a single source.

    :ivar source_name: Source name.
    :ivar is_open: Whether calls are currently refused.
    :ivar opened_at_ms: When the breaker last opened.
    :ivar window_successes: Successes since the last reset.
    :ivar window_failures: Failures since the last reset.
    :ivar half_open: A probe has been let through and has not reported yet.
    :ivar probe_started_ms: When the pending probe was let through.
    """

    source_name: str
    is_open: bool = False
    opened_at_ms: int | None = None
    window_successes: int = 0
    window_failures: int = 0
    half_open: bool = False
    probe_started_ms: int | None = None

    @property
    def window_calls(self) -> int:
        return self.window_successes + self.window_failures

    def reset_window(self) -> None:
        self.window_successes = 0
        self.window_failures = 0


@dataclass
class _SourceRecord:
    descriptor: SourceDescriptor
    order: int
    health: SourceHealth
    breaker: CircuitBreakerState = field(init=False)

    def __post_init__(self) -> None:
        self.breaker = CircuitBreakerState(self.descriptor.name)


class SourceRegistry:
    """Tracks health and breaker state for a fixed set of sources.

    :ivar failure_threshold: Failure rate (0-1) at which a breaker opens and a
        source is declared unhealthy.
    :ivar min_calls: Calls in the breaker window required before it may open.
    :ivar health_min_calls: Lifetime calls required before ``is_healthy`` is
        re-evaluated.
    :ivar cooldown_ms: Time an open breaker waits before letting a probe through.
    :ivar latency_weight: Weight of a new sample in the latency average.
    """

    DEFAULT_FAILURE_THRESHOLD = 0.8
    DEFAULT_MIN_CALLS = 5
    DEFAULT_HEALTH_MIN_CALLS = 10
    DEFAULT_COOLDOWN_MS = 60_000
    DEFAULT_LATENCY_WEIGHT = 0.2

    def __init__(
        self,
        descriptors: Iterable[SourceDescriptor],
        clock: Clock | None = None,
        *,
        failure_threshold: float = DEFAULT_FAILURE_THRESHOLD,
        min_calls: int = DEFAULT_MIN_CALLS,
        health_min_calls: int = DEFAULT_HEALTH_MIN_CALLS,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        latency_weight: float = DEFAULT_LATENCY_WEIGHT,
    ) -> None:
        """Initialize the registry.

        :param descriptors: Sources, in registration order.
        :param clock: Time source (system clock if None).
        :param failure_threshold: Failure rate that opens a breaker.
        :param min_calls: Minimum breaker window before it may open.
        :param health_min_calls: Minimum lifetime calls before health is judged.
        :param cooldown_ms: Open-breaker cooldown.
        :param latency_weight: EMA weight of a new latency sample.
        :raises ValueError: On duplicate names or out-of-range settings.
        """
        if not 0 < failure_threshold <= 1:
            raise ValueError("failure_threshold must be in (0, 1]")
        if min_calls < 1 or health_min_calls < 1:
            raise ValueError("minimum call counts must be at least 1")
        if cooldown_ms < 0:
            raise ValueError("cooldown_ms must not be negative")
        if not 0 < latency_weight <= 1:
            raise ValueError("latency_weight must be in (0, 1]")

        self.clock = clock or SystemClock()
        self.failure_threshold = failure_threshold
        self.min_calls = min_calls
        self.health_min_calls = health_min_calls
        self.cooldown_ms = cooldown_ms
        self.latency_weight = latency_weight

        self._records: dict[str, _SourceRecord] = {}
        for descriptor in descriptors:
            self.add_source(descriptor)

    def add_source(self, descriptor: SourceDescriptor) -> None:
        """Register a source after the ones already known.

        :raises ValueError: If the name is already registered.
        """
        if descriptor.name in self._records:
            raise ValueError(f"Duplicate source name '{descriptor.name}'")
        self._records[descriptor.name] = _SourceRecord(
            descriptor=descriptor,
            order=len(self._records),
            health=SourceHealth(descriptor.name),
        )

    def _record(self, name: str) -> _SourceRecord:
        try:
            return self._records[name]
        except KeyError:
            raise KeyError(f"Unknown source '{name}'") from None

    @property
    def names(self) -> list[str]:
        return list(self._records)

    def get_descriptor(self, name: str) -> SourceDescriptor:
        return self._record(name).descriptor

    def get_descriptors(self) -> list[SourceDescriptor]:
        """All descriptors in registration order."""
        return [r.descriptor for r in self._records.values()]

    def record_outcome(
        self,
        name: str,
        success: bool,
        latency_ms: float,
        error: str | None = None,
    ) -> None:
        """Record the outcome of one source invocation.

        :param name: Source name.
        :param success: Whether the invocation produced an acceptable quote.
        :param latency_ms: Wall time of the invocation.
        :param error: Failure reason, ignored on success.
        """
        record = self._record(name)
        health = record.health
        breaker = record.breaker
        now = self.clock.now_ms()

        if health.total_calls == 0:
            health.average_latency_ms = float(latency_ms)
        else:
            health.average_latency_ms = (
                health.average_latency_ms * (1 - self.latency_weight)
                + latency_ms * self.latency_weight
            )

        if success:
            health.success_count += 1
            health.last_success_time_ms = now
            breaker.window_successes += 1
        else:
            health.failure_count += 1
            health.last_error = error or "unknown error"
            health.last_error_time_ms = now
            breaker.window_failures += 1

        if health.total_calls >= self.health_min_calls:
            healthy = health.failure_rate < self.failure_threshold
            if healthy != health.is_healthy:
                state = "healthy" if healthy else "unhealthy"
                logger.warning(
                    f"[{name}] Marked {state} "
                    f"(failure rate {health.failure_rate:.0%} over {health.total_calls} calls)"
                )
            health.is_healthy = healthy

        self._update_breaker(record, success, now)

    def _update_breaker(self, record: _SourceRecord, success: bool, now: int) -> None:
        breaker = record.breaker
        name = breaker.source_name

        if breaker.half_open:
            breaker.half_open = False
            breaker.probe_started_ms = None
            if success:
                breaker.is_open = False
                breaker.opened_at_ms = None
                breaker.reset_window()
                logger.info(f"[{name}] Circuit breaker closed after successful probe")
            else:
                breaker.is_open = True
                breaker.opened_at_ms = now
                logger.warning(f"[{name}] Probe failed, circuit breaker reopened")
            return

        if breaker.is_open or breaker.window_calls < self.min_calls:
            return

        failure_rate = breaker.window_failures / breaker.window_calls
        if failure_rate >= self.failure_threshold:
            breaker.is_open = True
            breaker.opened_at_ms = now
            logger.warning(
                f"[{name}] Circuit breaker opened "
                f"(failure rate {failure_rate:.0%} over {breaker.window_calls} calls)"
            )

    def _allows_probe(self, breaker: CircuitBreakerState, now: int) -> bool:
        return (
            breaker.opened_at_ms is not None
            and now - breaker.opened_at_ms >= self.cooldown_ms
        )

    def _probe_available(self, breaker: CircuitBreakerState, now: int) -> bool:
        # A probe that never reported frees its slot after another cooldown.
        if not self._allows_probe(breaker, now):
            return False
        return (
            not breaker.half_open
            or breaker.probe_started_ms is None
            or now - breaker.probe_started_ms >= self.cooldown_ms
        )

    def is_available(self, name: str) -> bool:
        """True when a call could be made now, without claiming the probe."""
        breaker = self._record(name).breaker
        return not breaker.is_open or self._probe_available(breaker, self.clock.now_ms())

    def is_open(self, name: str) -> bool:
        """True while calls to the source are refused.

        Once the cooldown has elapsed the first caller claims the probe and
        sees the breaker closed. Everyone else sees it open until the probe's
        outcome is recorded.
        """
        breaker = self._record(name).breaker
        if not breaker.is_open:
            return False
        now = self.clock.now_ms()
        if not self._probe_available(breaker, now):
            return True
        if breaker.half_open:
            logger.warning(f"[{name}] Previous probe never reported, allowing another")
        else:
            logger.info(f"[{name}] Cooldown elapsed, allowing probe")
        breaker.half_open = True
        breaker.probe_started_ms = now
        return False

    def breaker_state(self, name: str) -> BreakerStatus:
        """Observable breaker status, without arming a probe."""
        breaker = self._record(name).breaker
        if not breaker.is_open:
            return BreakerStatus.CLOSED
        if breaker.half_open or self._allows_probe(breaker, self.clock.now_ms()):
            return BreakerStatus.HALF_OPEN
        return BreakerStatus.OPEN

    def get_breaker(self, name: str) -> CircuitBreakerState:
        return self._record(name).breaker

    def ordered_healthy_sources(self) -> list[SourceDescriptor]:
        """Enabled, healthy sources whose breaker would admit a call, by ascending priority.

        Ties keep registration order.
        """
        usable = [
            record
            for record in self._records.values()
            if record.descriptor.enabled
            and record.health.is_healthy
            and self.is_available(record.descriptor.name)
        ]
        usable.sort(key=lambda r: (r.descriptor.priority, r.order))
        return [r.descriptor for r in usable]

    def set_enabled(self, name: str, enabled: bool) -> None:
        """Enable or disable a source.

        :raises KeyError: If the source is unknown.
        """
        record = self._record(name)
        record.descriptor.enabled = enabled
        logger.info(f"[{name}] {'Enabled' if enabled else 'Disabled'}")

    def mark_health(self, name: str, healthy: bool, error: str | None = None) -> None:
        """Set health directly, as the periodic health check does.

        Marking a source healthy also closes its breaker and resets the window.
        """
        record = self._record(name)
        health = record.health
        if health.is_healthy != healthy:
            logger.info(f"[{name}] Health check: {'healthy' if healthy else 'unhealthy'}")
        health.is_healthy = healthy
        if healthy:
            record.breaker = CircuitBreakerState(name)
        else:
            health.last_error = error or "health check failed"
            health.last_error_time_ms = self.clock.now_ms()

    def reset_source(self, name: str) -> None:
        """Clear a source's statistics and close its breaker.

        :raises KeyError: If the source is unknown.
        """
        record = self._record(name)
        record.health = SourceHealth(name)
        record.breaker = CircuitBreakerState(name)
        logger.info(f"[{name}] Statistics reset")

    def reset_all(self) -> None:
        for name in self._records:
            self.reset_source(name)

    def get_health(self, name: str) -> SourceHealth:
        return self._record(name).health

    def get_all_health(self) -> list[SourceHealth]:
        """Health of every source in registration order."""
        return [r.health for r in self._records.values()]

    def healthy_count(self) -> int:
        return sum(1 for r in self._records.values() if r.health.is_healthy)
