"""Quote: a single price observation with provenance and age.

Quotes are immutable. ``staleness_seconds`` and ``confidence`` describe the
quote at the moment it was handed out; readers that hold a quote for a while
call :meth:`Quote.aged` to recompute both against the current time.

.. code-block:: python

    >>> q = Quote.create("eth", 3000.0, timestamp_ms=0, source="chainlink",
    ...                  now_ms=1_800_000, heartbeat_seconds=3600)
    >>> q.symbol, q.staleness_seconds, q.confidence
    ('ETH', 1800, 75)
"""

from __future__ import annotations

from dataclasses import dataclass, replace


def staleness_seconds(timestamp_ms: int, now_ms: int) -> int:
    """Age of an observation in whole seconds (never negative)."""
    return max(0, (now_ms - timestamp_ms) // 1000)


def compute_confidence(staleness_s: float, heartbeat_seconds: float) -> int:
    """Derive a 0-100 confidence score from staleness.

    Confidence falls linearly from 100 to 0 over two heartbeats.

    :param staleness_s: Age of the observation in seconds.
    :param heartbeat_seconds: Expected update cadence of the source.
    :returns: Integer confidence in [0, 100].
    """
    if heartbeat_seconds <= 0:
        return 0
    max_age = heartbeat_seconds * 2
    confidence = 100 - (staleness_s / max_age) * 100
    return round(max(0.0, min(100.0, confidence)))


@dataclass(frozen=True)
class Quote:
    """A price observation for one symbol.

    :ivar symbol: Upper-case asset symbol (e.g. "ETH").
    :ivar price_usd: Price in USD.
    :ivar timestamp_ms: When the upstream produced the price.
    :ivar source: Name of the source that produced it.
    :ivar confidence: 0-100 trust score derived from staleness.
    :ivar staleness_seconds: Age at the time this instance was produced.
    :ivar heartbeat_seconds: Expected update cadence of the producing source.
    """

    symbol: str
    price_usd: float
    timestamp_ms: int
    source: str
    confidence: int
    staleness_seconds: int
    heartbeat_seconds: float = 3600.0

    @classmethod
    def create(
        cls,
        symbol: str,
        price_usd: float,
        *,
        timestamp_ms: int,
        source: str,
        now_ms: int,
        heartbeat_seconds: float,
    ) -> Quote:
        """Build a quote, deriving staleness and confidence from ``now_ms``."""
        age = staleness_seconds(timestamp_ms, now_ms)
        return cls(
            symbol=symbol.upper(),
            price_usd=float(price_usd),
            timestamp_ms=timestamp_ms,
            source=source,
            confidence=compute_confidence(age, heartbeat_seconds),
            staleness_seconds=age,
            heartbeat_seconds=heartbeat_seconds,
        )

    def aged(self, now_ms: int) -> Quote:
        """Return a copy with staleness and confidence recomputed at ``now_ms``."""
        age = staleness_seconds(self.timestamp_ms, now_ms)
        return replace(
            self,
            staleness_seconds=age,
            confidence=compute_confidence(age, self.heartbeat_seconds),
        )
