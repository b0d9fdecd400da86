"""
Resilient Price Feed - Failover Price Oracle Client

This module provides USD prices from several unreliable upstream sources:
- Quote / SourceDescriptor: Price observations and static source configuration
- RetryController: Timeouts, error classification, rate limits and backoff
- PriceCache: Per-symbol cache with TTL and staleness grading
- SourceRegistry: Per-source health tracking with a circuit breaker
- FailoverOrchestrator: Ordered failover across sources
- VolatilityMonitor: Rolling volatility statistics and alerts
- PriceFeedService: Object graph, timers and subscriptions
- sources: Modular upstream source implementations
"""

from .FailoverOrchestrator import BatchPriceResult, FailoverOrchestrator
from .PriceCache import CacheStats, PriceCache, StalenessLevel
from .PriceFeedConfig import PriceFeedConfig
from .PriceFeedService import PriceFeedService, PriceUpdate
from .Quote import Quote
from .RetryController import RateLimitState, RetryConfig, RetryController
from .SourceDescriptor import SourceDescriptor, SourceKind
from .SourceRegistry import BreakerStatus, CircuitBreakerState, SourceHealth, SourceRegistry
from .VolatilityMonitor import (
    AlertThresholds,
    VolatilityAlert,
    VolatilityMonitor,
    VolatilitySnapshot,
)
from .errors import (
    AllSourcesFailed,
    ClassifiedError,
    ErrorKind,
    NoHealthySources,
    PriceFeedError,
    StaleDataError,
)

__all__ = [
    "AllSourcesFailed",
    "AlertThresholds",
    "BatchPriceResult",
    "BreakerStatus",
    "CacheStats",
    "CircuitBreakerState",
    "ClassifiedError",
    "ErrorKind",
    "FailoverOrchestrator",
    "NoHealthySources",
    "PriceCache",
    "PriceFeedConfig",
    "PriceFeedError",
    "PriceFeedService",
    "PriceUpdate",
    "Quote",
    "RateLimitState",
    "RetryConfig",
    "RetryController",
    "SourceDescriptor",
    "SourceHealth",
    "SourceKind",
    "SourceRegistry",
    "StaleDataError",
    "StalenessLevel",
    "VolatilityAlert",
    "VolatilityMonitor",
    "VolatilitySnapshot",
]
