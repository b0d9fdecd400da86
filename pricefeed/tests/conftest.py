"""Shared fixtures: a manual clock and scripted sources."""

from __future__ import annotations

from typing import Any

import pytest

from pricefeed.src.SourceDescriptor import SourceDescriptor, SourceKind
from pricefeed.src.errors import TransportError
from pricefeed.src.sources.base import BaseSource, SourceResponse

START_MS = 1_700_000_000_000


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, now_ms: int = START_MS) -> None:
        self._now = now_ms

    def now_ms(self) -> int:
        return self._now

    def advance(self, ms: int) -> None:
        self._now += ms

    def set(self, now_ms: int) -> None:
        self._now = now_ms


class FakeSleep:
    """Records backoff waits and moves the clock forward by the same amount."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(int(seconds * 1000))


class FakeSource(BaseSource):
    """Source answering from a script.

    Each call consumes the next scripted item: a :class:`SourceResponse`, an
    exception to raise, or a number taken as a 200 price. Once the script is
    empty every call fails with a network error if ``down`` is set, and
    returns ``price`` otherwise.
    """

    name = "fake"
    kind = SourceKind.REST

    def __init__(
        self,
        name: str,
        priority: int = 1,
        *,
        price: float = 100.0,
        down: bool = False,
        script: list[Any] | None = None,
        kind: SourceKind = SourceKind.REST,
        heartbeat_seconds: float | None = None,
        timestamp_ms: int | None = None,
        symbols: set[str] | None = None,
    ) -> None:
        super().__init__(
            SourceDescriptor(
                name=name, kind=kind, priority=priority, heartbeat_seconds=heartbeat_seconds
            )
        )
        self.price = price
        self.down = down
        self.script = list(script or [])
        self.timestamp_ms = timestamp_ms
        self.symbols = symbols
        self.calls: list[str] = []

    def supports_symbol(self, symbol: str) -> bool:
        return self.symbols is None or symbol in self.symbols

    def ok(self, price: float) -> SourceResponse:
        return SourceResponse(200, {}, {"price": price, "timestamp_ms": self.timestamp_ms})

    async def request(self, symbol: str) -> SourceResponse:
        self.calls.append(symbol)
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, SourceResponse):
                return item
            return self.ok(float(item))
        if self.down:
            raise TransportError(f"{self.source_name} is down")
        return self.ok(self.price)

    def extract_price(self, symbol: str, body: Any) -> tuple[float, int | None]:
        return float(body["price"]), body.get("timestamp_ms")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> FakeSleep:
    return FakeSleep(clock)
