"""Clock abstraction used by every time-dependent component.

All timestamps inside the price feed are integer milliseconds since the epoch.
Components take a clock at construction so tests can drive time by hand.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Anything with a ``now_ms()`` method returning epoch milliseconds."""

    def now_ms(self) -> int: ...


class SystemClock:
    """Wall clock backed by :func:`time.time`."""

    def now_ms(self) -> int:
        """Return the current time in epoch milliseconds."""
        return int(time.time() * 1000)
