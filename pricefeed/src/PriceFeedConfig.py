"""PriceFeedConfig: Every tunable of the price feed in one validated place.

Defaults match the documented behaviour of each component. ``from_env``
reads ``PRICEFEED_*`` variables; ``main.py`` layers command-line flags on top.

.. code-block:: python

    >>> config = PriceFeedConfig.from_env({"PRICEFEED_SOURCES": "chainlink,coingecko"})
    >>> config.sources
    ['chainlink', 'coingecko']
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from .RetryController import RetryConfig
from .VolatilityMonitor import AlertThresholds

DEFAULT_SOURCES = ["chainlink", "zerox", "coingecko", "coinbase"]
ENV_PREFIX = "PRICEFEED_"


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


@dataclass
class PriceFeedConfig:
    """Configuration of a :class:`PriceFeedService`.

    :ivar sources: Source names in registration order.
    :ivar priorities: Priority overrides by source name.
    :ivar api_keys: API keys by source name.
    :ivar rpc_url: JSON-RPC endpoint for on-chain sources.
    :ivar enable_cache_fallback: Add the cache-backed source after the live ones.
    :ivar cache_fallback_max_staleness_s: Oldest quote the fallback may serve.
    :ivar tracked_symbols: Symbols refreshed by the batch update task.
    :ivar health_check_symbol: Symbol used to probe sources.
    """

    sources: list[str] = field(default_factory=lambda: list(DEFAULT_SOURCES))
    priorities: dict[str, int] = field(default_factory=dict)
    api_keys: dict[str, str] = field(default_factory=dict)
    rpc_url: str | None = None
    enable_cache_fallback: bool = True
    cache_fallback_max_staleness_s: float | None = None
    tracked_symbols: list[str] = field(default_factory=list)
    health_check_symbol: str = "ETH"

    # Retry
    max_retries: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30_000

    # Registry / circuit breaker
    failure_threshold: float = 0.8
    breaker_min_calls: int = 5
    health_min_calls: int = 10
    breaker_cooldown_ms: int = 60_000

    # Cache
    cache_max_entries: int = 10_000
    cache_default_ttl_ms: int = 5 * 60 * 1000
    stale_warning_s: float = 1800
    stale_error_s: float = 7200

    # Volatility
    history_max_points: int = 10_080
    alert_thresholds: AlertThresholds = field(default_factory=AlertThresholds)

    # Timers
    health_check_interval_ms: int = 30_000
    cache_cleanup_interval_ms: int = 60_000
    volatility_refresh_interval_ms: int = 60_000
    batch_update_interval_ms: int = 60_000

    def __post_init__(self) -> None:
        self.sources = [s.lower() for s in self.sources]
        self.tracked_symbols = [s.upper() for s in self.tracked_symbols]
        self.health_check_symbol = self.health_check_symbol.upper()

        if not self.sources and not self.enable_cache_fallback:
            raise ValueError("At least one source must be configured")
        if len(set(self.sources)) != len(self.sources):
            raise ValueError(f"Duplicate sources: {self.sources}")
        for name in (
            "health_check_interval_ms",
            "cache_cleanup_interval_ms",
            "volatility_refresh_interval_ms",
            "batch_update_interval_ms",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.cache_fallback_max_staleness_s is not None and self.cache_fallback_max_staleness_s <= 0:
            raise ValueError("cache_fallback_max_staleness_s must be positive")
        # Remaining fields are validated by the components they configure
        self.retry_config()

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            max_delay_ms=self.max_delay_ms,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PriceFeedConfig:
        """Build a config from ``PRICEFEED_*`` variables.

        Unset or empty variables keep their defaults.

        :param environ: Variables to read (default: ``os.environ``).
        :raises ValueError: On unparsable values.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        def convert(name: str, parse: Callable[[str], object]) -> object:
            try:
                return parse(env[ENV_PREFIX + name])
            except ValueError as e:
                raise ValueError(f"{ENV_PREFIX}{name}: {e}") from e

        kwargs: dict[str, object] = {}
        list_fields = {"SOURCES": "sources", "TRACKED_SYMBOLS": "tracked_symbols"}
        str_fields = {"RPC_URL": "rpc_url", "HEALTH_CHECK_SYMBOL": "health_check_symbol"}
        int_fields = {
            "MAX_RETRIES": "max_retries",
            "BASE_DELAY_MS": "base_delay_ms",
            "MAX_DELAY_MS": "max_delay_ms",
            "BREAKER_MIN_CALLS": "breaker_min_calls",
            "HEALTH_MIN_CALLS": "health_min_calls",
            "BREAKER_COOLDOWN_MS": "breaker_cooldown_ms",
            "CACHE_MAX_ENTRIES": "cache_max_entries",
            "CACHE_DEFAULT_TTL_MS": "cache_default_ttl_ms",
            "HISTORY_MAX_POINTS": "history_max_points",
            "HEALTH_CHECK_INTERVAL_MS": "health_check_interval_ms",
            "CACHE_CLEANUP_INTERVAL_MS": "cache_cleanup_interval_ms",
            "VOLATILITY_REFRESH_INTERVAL_MS": "volatility_refresh_interval_ms",
            "BATCH_UPDATE_INTERVAL_MS": "batch_update_interval_ms",
        }
        float_fields = {
            "BACKOFF_MULTIPLIER": "backoff_multiplier",
            "FAILURE_THRESHOLD": "failure_threshold",
            "STALE_WARNING_S": "stale_warning_s",
            "STALE_ERROR_S": "stale_error_s",
            "CACHE_FALLBACK_MAX_STALENESS_S": "cache_fallback_max_staleness_s",
        }

        for env_name, attr in list_fields.items():
            value = get(env_name)
            if value is not None:
                kwargs[attr] = _split(value)
        for env_name, attr in str_fields.items():
            value = get(env_name)
            if value is not None:
                kwargs[attr] = value.strip()
        for env_name, attr in int_fields.items():
            value = get(env_name)
            if value is not None:
                kwargs[attr] = convert(env_name, int)
        for env_name, attr in float_fields.items():
            value = get(env_name)
            if value is not None:
                kwargs[attr] = convert(env_name, float)
        value = get("CACHE_FALLBACK")
        if value is not None:
            kwargs["enable_cache_fallback"] = convert("CACHE_FALLBACK", _parse_bool)

        return cls(**kwargs)
