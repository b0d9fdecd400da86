"""Error taxonomy for the price feed.

Only :class:`AllSourcesFailed` and :class:`NoHealthySources` ever reach a
caller of ``get_price``. Everything else is handled inside the failover loop.
"""

from __future__ import annotations

from enum import Enum


class PriceFeedError(Exception):
    """Base exception for price feed errors."""

    pass


class TransportError(PriceFeedError):
    """Raised by a transport when the request never produced a response.

    :ivar timed_out: True when the transport gave up waiting on the upstream.
    """

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        self.timed_out = timed_out
        super().__init__(message)


class ErrorKind(str, Enum):
    """Classification of a failed outbound call."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    BAD_GATEWAY = "bad_gateway"
    SERVICE_UNAVAILABLE = "service_unavailable"
    GATEWAY_TIMEOUT = "gateway_timeout"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    INVALID_RESPONSE = "invalid_response"


class ClassifiedError(PriceFeedError):
    """A failed call, classified.

    :ivar source: Source that produced the failure.
    :ivar kind: Error classification.
    :ivar status_code: HTTP status, or None when no response was received.
    :ivar retryable: Whether the retry loop may try again.
    :ivar retry_after_ms: Server-requested wait before retrying, if any.
    """

    def __init__(
        self,
        source: str,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
        retry_after_ms: int | None = None,
    ) -> None:
        self.source = source
        self.kind = kind
        self.status_code = status_code
        self.retryable = retryable
        self.retry_after_ms = retry_after_ms
        super().__init__(f"[{source}] {kind.value}: {message}")


class ProviderUnhealthy(PriceFeedError):
    """Raised when a provider cannot be used (open breaker, unhealthy)."""

    pass


class NoHealthySources(ProviderUnhealthy):
    """Raised when the registry has no usable source at all."""

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol
        super().__init__(f"No healthy price sources available for {symbol}")


class StaleDataError(PriceFeedError):
    """A quote failed a freshness requirement.

    :ivar source: Source that produced the quote.
    :ivar staleness_s: Age of the quote in seconds.
    :ivar required_s: Maximum acceptable age.
    """

    def __init__(self, source: str, staleness_s: int, required_s: float) -> None:
        self.source = source
        self.staleness_s = staleness_s
        self.required_s = required_s
        super().__init__(
            f"[{source}] price too stale: {staleness_s}s > {required_s}s"
        )


class AllSourcesFailed(PriceFeedError):
    """Every candidate source failed for a symbol.

    :ivar symbol: Requested symbol.
    :ivar attempted: ``(source, reason)`` pairs in the order they were tried.
    """

    def __init__(self, symbol: str, attempted: list[tuple[str, str]]) -> None:
        self.symbol = symbol
        self.attempted = attempted
        names = ", ".join(name for name, _ in attempted)
        super().__init__(f"All price sources failed for {symbol} (attempted: {names})")

    @property
    def attempted_sources(self) -> list[str]:
        """Names of the sources that were tried, in order."""
        return [name for name, _ in self.attempted]


class SubscriptionNotFound(PriceFeedError, KeyError):
    """Raised when unsubscribing an unknown subscription id."""

    def __init__(self, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"Subscription {subscription_id} not found")

    def __str__(self) -> str:
        return Exception.__str__(self)
