"""VolatilityMonitor: Rolling price history, volatility statistics and alerts.

For each symbol the monitor keeps a bounded, time-ordered list of price
points. Points arriving out of order (a slow source answering late) are
inserted in place. A snapshot covers three windows ending at the current
clock time:

    - price change: ``(newest - oldest) / oldest * 100`` within the window
    - volatility: population standard deviation of successive returns within
      the window, annualized as ``stdev * sqrt(365) * 100``

Alerts are evaluated against every new snapshot and handed to listeners as
they happen. Nothing about past alerts is stored; consumers that want to
suppress repeats compare timestamps themselves.

.. code-block:: python

    >>> monitor = VolatilityMonitor(clock)
    >>> for i, price in enumerate([100, 110, 99, 105]):
    ...     monitor.add_point("ETH", price, i * HOUR_MS)
    >>> round(monitor.snapshot("ETH").price_change_1h, 2)
    6.06
"""

from __future__ import annotations

import bisect
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from statistics import fmean, pstdev
from typing import TypedDict

from .Quote import Quote
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS

ANNUALIZATION_FACTOR = math.sqrt(365) * 100


class Window(str, Enum):
    """Snapshot windows."""

    H1 = "1h"
    H24 = "24h"
    D7 = "7d"

    @property
    def ms(self) -> int:
        return {Window.H1: HOUR_MS, Window.H24: DAY_MS, Window.D7: WEEK_MS}[self]


class AlertType(str, Enum):
    HIGH_VOLATILITY = "high_volatility"
    PRICE_SPIKE = "price_spike"
    PRICE_DROP = "price_drop"


class AlertSeverity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class PricePoint:
    price: float
    timestamp_ms: int


@dataclass(frozen=True)
class VolatilitySnapshot:
    """Volatility statistics for one symbol at one instant.

    :ivar symbol: Asset symbol.
    :ivar current_price: Price of the newest point.
    :ivar price_change_1h: Percent change over the last hour.
    :ivar price_change_24h: Percent change over the last day.
    :ivar price_change_7d: Percent change over the last week.
    :ivar volatility_1h: Annualized volatility over the last hour.
    :ivar volatility_24h: Annualized volatility over the last day.
    :ivar volatility_7d: Annualized volatility over the last week.
    :ivar std_dev: Population standard deviation of prices in the 24h window.
    :ivar avg_price_24h: Mean price in the 24h window.
    :ivar high_24h: Highest price in the 24h window.
    :ivar low_24h: Lowest price in the 24h window.
    :ivar price_range: ``(high - low) / avg * 100`` over the 24h window.
    :ivar timestamp_ms: When the snapshot was computed.
    :ivar sample_count: Points in the 24h window.
    """

    symbol: str
    current_price: float
    price_change_1h: float
    price_change_24h: float
    price_change_7d: float
    volatility_1h: float
    volatility_24h: float
    volatility_7d: float
    std_dev: float
    avg_price_24h: float
    high_24h: float
    low_24h: float
    price_range: float
    timestamp_ms: int
    sample_count: int

    def volatility(self, window: Window) -> float:
        return {
            Window.H1: self.volatility_1h,
            Window.H24: self.volatility_24h,
            Window.D7: self.volatility_7d,
        }[Window(window)]

    def price_change(self, window: Window) -> float:
        return {
            Window.H1: self.price_change_1h,
            Window.H24: self.price_change_24h,
            Window.D7: self.price_change_7d,
        }[Window(window)]


@dataclass(frozen=True)
class VolatilityAlert:
    """A threshold crossing, raised once per evaluated snapshot."""

    symbol: str
    alert_type: AlertType
    severity: AlertSeverity
    current_value: float
    threshold: float
    message: str
    timestamp_ms: int


@dataclass
class AlertThresholds:
    """Alert thresholds, all in percent.

    Volatility thresholds apply to the 24h window. A price change of at least
    ``price_change`` (either direction, 24h window) is a spike or drop; its
    severity grows at ``price_change_high`` and ``price_change_critical``.
    """

    volatility_medium: float = 15.0
    volatility_high: float = 30.0
    volatility_critical: float = 50.0
    price_change: float = 20.0
    price_change_high: float = 30.0
    price_change_critical: float = 50.0

    def __post_init__(self) -> None:
        if not (
            0
            <= self.volatility_medium
            <= self.volatility_high
            <= self.volatility_critical
        ):
            raise ValueError("volatility thresholds must be ascending")
        if not 0 < self.price_change <= self.price_change_high <= self.price_change_critical:
            raise ValueError("price change thresholds must be positive and ascending")


class MonitorStats(TypedDict):
    tracked_symbols: int
    total_points: int
    oldest_timestamp_ms: int | None
    newest_timestamp_ms: int | None


class VolatilitySummary(TypedDict):
    """Compact view used by the service status report."""

    tracked_symbols: int
    total_points: int
    most_volatile: list[dict[str, float | str]]


AlertListener = Callable[[VolatilityAlert], None]


def percent_change(points: list[PricePoint]) -> float:
    """Change from the first to the last point, in percent (0 with < 2 points)."""
    if len(points) < 2 or points[0].price == 0:
        return 0.0
    return (points[-1].price - points[0].price) / points[0].price * 100


def annualized_volatility(points: list[PricePoint]) -> float:
    """Population stdev of successive returns, annualized (0 with < 2 points)."""
    returns = [
        (cur.price - prev.price) / prev.price
        for prev, cur in zip(points, points[1:])
        if prev.price > 0
    ]
    if not returns:
        return 0.0
    return pstdev(returns) * ANNUALIZATION_FACTOR


class VolatilityMonitor:
    """Per-symbol price history with volatility snapshots and alerting.

    :ivar max_points: History bound per symbol; the oldest points are dropped.
    :ivar thresholds: Alert thresholds.
    """

    DEFAULT_MAX_POINTS = 10_080  # one week at one-minute resolution

    def __init__(
        self,
        clock: Clock | None = None,
        *,
        max_points: int = DEFAULT_MAX_POINTS,
        thresholds: AlertThresholds | None = None,
    ) -> None:
        if max_points < 2:
            raise ValueError("max_points must be at least 2")
        self.clock = clock or SystemClock()
        self.max_points = max_points
        self.thresholds = thresholds or AlertThresholds()
        self._history: dict[str, list[PricePoint]] = {}
        self._snapshots: dict[str, VolatilitySnapshot] = {}
        self._listeners: list[AlertListener] = []
        self.alerts_raised = 0

    def add_alert_listener(self, listener: AlertListener) -> None:
        self._listeners.append(listener)

    def remove_alert_listener(self, listener: AlertListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_point(
        self, symbol: str, price: float, timestamp_ms: int | None = None
    ) -> VolatilitySnapshot:
        """Insert a price point in time order and re-evaluate the symbol.

        :param symbol: Asset symbol (case-insensitive).
        :param price: Positive, finite USD price.
        :param timestamp_ms: Observation time (default: now).
        :returns: The new snapshot.
        :raises ValueError: If the price is not a positive finite number.
        """
        if not math.isfinite(price) or price <= 0:
            raise ValueError(f"price must be positive and finite, got {price}")
        key = symbol.upper()
        if timestamp_ms is None:
            timestamp_ms = self.clock.now_ms()

        history = self._history.setdefault(key, [])
        bisect.insort(history, PricePoint(float(price), timestamp_ms), key=lambda p: p.timestamp_ms)
        if len(history) > self.max_points:
            del history[: len(history) - self.max_points]

        return self._evaluate(key)

    def add_quote(self, quote: Quote) -> VolatilitySnapshot:
        """Feed a quote, using its upstream timestamp."""
        return self.add_point(quote.symbol, quote.price_usd, quote.timestamp_ms)

    def _window(self, history: list[PricePoint], window_ms: int, now: int) -> list[PricePoint]:
        start = bisect.bisect_left(history, now - window_ms, key=lambda p: p.timestamp_ms)
        return history[start:]

    def _compute(self, symbol: str) -> VolatilitySnapshot | None:
        history = self._history.get(symbol)
        if not history:
            return None

        now = self.clock.now_ms()
        h1 = self._window(history, Window.H1.ms, now)
        h24 = self._window(history, Window.H24.ms, now)
        d7 = self._window(history, Window.D7.ms, now)

        prices_24h = [p.price for p in h24]
        if prices_24h:
            avg = fmean(prices_24h)
            high = max(prices_24h)
            low = min(prices_24h)
            std_dev = pstdev(prices_24h)
            price_range = (high - low) / avg * 100 if avg else 0.0
        else:
            avg = high = low = std_dev = price_range = 0.0

        return VolatilitySnapshot(
            symbol=symbol,
            current_price=history[-1].price,
            price_change_1h=percent_change(h1),
            price_change_24h=percent_change(h24),
            price_change_7d=percent_change(d7),
            volatility_1h=annualized_volatility(h1),
            volatility_24h=annualized_volatility(h24),
            volatility_7d=annualized_volatility(d7),
            std_dev=std_dev,
            avg_price_24h=avg,
            high_24h=high,
            low_24h=low,
            price_range=price_range,
            timestamp_ms=now,
            sample_count=len(h24),
        )

    def _evaluate(self, symbol: str) -> VolatilitySnapshot | None:
        snapshot = self._compute(symbol)
        if snapshot is None:
            self._snapshots.pop(symbol, None)
            return None
        self._snapshots[symbol] = snapshot
        for alert in self.check_alerts(snapshot):
            self._dispatch(alert)
        return snapshot

    def check_alerts(self, snapshot: VolatilitySnapshot) -> list[VolatilityAlert]:
        """Alerts implied by ``snapshot`` under the current thresholds."""
        t = self.thresholds
        alerts: list[VolatilityAlert] = []

        vol = snapshot.volatility_24h
        severity = None
        threshold = 0.0
        if vol >= t.volatility_critical:
            severity, threshold = AlertSeverity.CRITICAL, t.volatility_critical
        elif vol >= t.volatility_high:
            severity, threshold = AlertSeverity.HIGH, t.volatility_high
        elif vol >= t.volatility_medium:
            severity, threshold = AlertSeverity.MEDIUM, t.volatility_medium
        if severity is not None:
            alerts.append(
                VolatilityAlert(
                    symbol=snapshot.symbol,
                    alert_type=AlertType.HIGH_VOLATILITY,
                    severity=severity,
                    current_value=vol,
                    threshold=threshold,
                    message=f"{snapshot.symbol} 24h volatility at {vol:.2f}%",
                    timestamp_ms=snapshot.timestamp_ms,
                )
            )

        change = snapshot.price_change_24h
        if abs(change) >= t.price_change:
            magnitude = abs(change)
            if magnitude >= t.price_change_critical:
                severity = AlertSeverity.CRITICAL
            elif magnitude >= t.price_change_high:
                severity = AlertSeverity.HIGH
            else:
                severity = AlertSeverity.MEDIUM
            spike = change > 0
            alerts.append(
                VolatilityAlert(
                    symbol=snapshot.symbol,
                    alert_type=AlertType.PRICE_SPIKE if spike else AlertType.PRICE_DROP,
                    severity=severity,
                    current_value=change,
                    threshold=t.price_change if spike else -t.price_change,
                    message=(
                        f"{snapshot.symbol} {'up' if spike else 'down'} "
                        f"{magnitude:.2f}% in 24h"
                    ),
                    timestamp_ms=snapshot.timestamp_ms,
                )
            )

        return alerts

    def _dispatch(self, alert: VolatilityAlert) -> None:
        self.alerts_raised += 1
        logger.warning(f"[{alert.symbol}] {alert.severity.value} alert: {alert.message}")
        for listener in list(self._listeners):
            try:
                listener(alert)
            except Exception:
                logger.exception(f"[{alert.symbol}] Alert listener failed")

    def snapshot(self, symbol: str) -> VolatilitySnapshot | None:
        """Statistics for ``symbol`` as of now, or None without history.

        Does not raise alerts; see :meth:`refresh`.
        """
        key = symbol.upper()
        snapshot = self._compute(key)
        if snapshot is not None:
            self._snapshots[key] = snapshot
        return snapshot

    def last_snapshot(self, symbol: str) -> VolatilitySnapshot | None:
        """Most recent snapshot computed for ``symbol`` without recomputing."""
        return self._snapshots.get(symbol.upper())

    def refresh(self) -> list[VolatilitySnapshot]:
        """Recompute and re-evaluate every tracked symbol.

        Run on a timer so that figures decay as old points leave the windows.
        """
        snapshots = []
        for symbol in list(self._history):
            snapshot = self._evaluate(symbol)
            if snapshot is not None:
                snapshots.append(snapshot)
        logger.debug(f"Refreshed volatility for {len(snapshots)} symbols")
        return snapshots

    def rank(self, window: Window | str = Window.H24, limit: int | None = None) -> list[VolatilitySnapshot]:
        """Snapshots of every tracked symbol, most volatile first."""
        window = Window(window)
        snapshots = [s for s in (self.snapshot(sym) for sym in self._history) if s]
        snapshots.sort(key=lambda s: s.volatility(window), reverse=True)
        return snapshots[:limit] if limit is not None else snapshots

    def tracked_symbols(self) -> list[str]:
        return list(self._history)

    def get_history(self, symbol: str, window_ms: int | None = None) -> list[PricePoint]:
        """Copy of the history, optionally limited to the last ``window_ms``."""
        history = self._history.get(symbol.upper(), [])
        if window_ms is None:
            return list(history)
        return self._window(history, window_ms, self.clock.now_ms())

    def clear_history(self, symbol: str) -> None:
        key = symbol.upper()
        self._history.pop(key, None)
        self._snapshots.pop(key, None)

    def clear_all(self) -> None:
        self._history.clear()
        self._snapshots.clear()

    def stats(self) -> MonitorStats:
        timestamps = [p.timestamp_ms for h in self._history.values() for p in (h[0], h[-1]) if h]
        return MonitorStats(
            tracked_symbols=len(self._history),
            total_points=sum(len(h) for h in self._history.values()),
            oldest_timestamp_ms=min(timestamps) if timestamps else None,
            newest_timestamp_ms=max(timestamps) if timestamps else None,
        )

    def summary(self, limit: int = 5) -> VolatilitySummary:
        """Tracked symbols plus the most volatile ones over 24h."""
        stats = self.stats()
        return VolatilitySummary(
            tracked_symbols=stats["tracked_symbols"],
            total_points=stats["total_points"],
            most_volatile=[
                {
                    "symbol": s.symbol,
                    "volatility_24h": s.volatility_24h,
                    "price_change_24h": s.price_change_24h,
                }
                for s in self.rank(Window.H24, limit)
            ],
        )
