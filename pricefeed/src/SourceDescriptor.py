"""SourceDescriptor: static configuration of one upstream price source.

Every source belongs to exactly one :class:`SourceKind`. The kind decides the
defaults for heartbeat, request timeout and cache TTL; explicit values on the
descriptor win over the kind defaults.

.. code-block:: python

    >>> d = SourceDescriptor("chainlink", SourceKind.ORACLE, priority=1)
    >>> d.heartbeat_seconds, d.timeout_ms, d.cache_ttl_ms
    (3600.0, 5000, 300000)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SourceKind(str, Enum):
    """Family of an upstream source."""

    ORACLE = "oracle"
    DEX = "dex"
    REST = "rest"
    CACHE = "cache"


@dataclass(frozen=True)
class KindProfile:
    """Per-kind defaults.

    :ivar heartbeat_seconds: Expected update cadence of sources of this kind.
    :ivar timeout_ms: Default per-call timeout.
    :ivar cache_ttl_ms: Default cache TTL for quotes produced by this kind.
    """

    heartbeat_seconds: float
    timeout_ms: int
    cache_ttl_ms: int


KIND_PROFILES: dict[SourceKind, KindProfile] = {
    SourceKind.ORACLE: KindProfile(3600.0, 5_000, 5 * 60 * 1000),
    SourceKind.DEX: KindProfile(300.0, 8_000, 2 * 60 * 1000),
    SourceKind.REST: KindProfile(600.0, 10_000, 10 * 60 * 1000),
    # Cache-backed sources answer from memory and never populate the cache.
    SourceKind.CACHE: KindProfile(3600.0, 1_000, 0),
}


@dataclass
class SourceDescriptor:
    """Configuration of a single source.

    ``enabled`` is the only field meant to change after construction; it is
    toggled through :meth:`SourceRegistry.set_enabled`.

    :ivar name: Unique source name.
    :ivar kind: Source family.
    :ivar priority: Lower is preferred.
    :ivar enabled: Whether the source takes part in failover.
    :ivar heartbeat_seconds: Expected update cadence (kind default if None).
    :ivar timeout_ms: Per-call timeout (kind default if None).
    :ivar cache_ttl_ms: TTL for cached quotes from this source (kind default if None).
    """

    name: str
    kind: SourceKind
    priority: int
    enabled: bool = True
    heartbeat_seconds: float | None = None
    timeout_ms: int | None = None
    cache_ttl_ms: int | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("source name must not be empty")
        if not isinstance(self.kind, SourceKind):
            self.kind = SourceKind(self.kind)
        if self.priority < 0:
            raise ValueError(f"[{self.name}] priority must be non-negative")

        profile = KIND_PROFILES[self.kind]
        if self.heartbeat_seconds is None:
            self.heartbeat_seconds = profile.heartbeat_seconds
        if self.timeout_ms is None:
            self.timeout_ms = profile.timeout_ms
        if self.cache_ttl_ms is None:
            self.cache_ttl_ms = profile.cache_ttl_ms

        if self.heartbeat_seconds <= 0:
            raise ValueError(f"[{self.name}] heartbeat_seconds must be positive")
        if self.timeout_ms <= 0:
            raise ValueError(f"[{self.name}] timeout_ms must be positive")
        if self.cache_ttl_ms < 0:
            raise ValueError(f"[{self.name}] cache_ttl_ms must not be negative")

    @property
    def is_cache_backed(self) -> bool:
        """True for sources that answer from the local cache."""
        return self.kind is SourceKind.CACHE
