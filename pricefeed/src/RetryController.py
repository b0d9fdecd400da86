"""RetryController: Timeout, classification, rate limits and backoff for outbound calls.

Every source call in the price feed goes through one controller:

    1. The per-source :class:`RateLimitState` is consulted first. A source
       whose quota is spent and whose reset lies in the future fails fast
       with ``RATE_LIMITED`` and no network call is made.
    2. The call is raced against its timeout.
    3. Rate-limit headers on the response refresh the state. A 429 always
       does, marking the quota as spent.
    4. Non-2xx statuses are classified into :class:`ErrorKind`; network
       failures, and any other exception raised by the call, become
       ``NETWORK_ERROR``.

:meth:`RetryController.call_with_retry` repeats this for retryable failures,
waiting ``min(base * multiplier^attempt, max)`` plus jitter between attempts,
or exactly the server's ``retry-after`` when one was sent.

.. code-block:: python

    >>> controller = RetryController(clock)
    >>> response = await controller.call_with_retry(
    ...     "coingecko", 10_000, lambda: source.request("ETH")
    ... )
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass

from .clock import Clock, SystemClock
from .errors import ClassifiedError, ErrorKind, TransportError
from .sources.base import SourceResponse

logger = logging.getLogger(__name__)

STATUS_KINDS: dict[int, ErrorKind] = {
    400: ErrorKind.BAD_REQUEST,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    408: ErrorKind.TIMEOUT,
    429: ErrorKind.RATE_LIMITED,
    500: ErrorKind.SERVER_ERROR,
    502: ErrorKind.BAD_GATEWAY,
    503: ErrorKind.SERVICE_UNAVAILABLE,
    504: ErrorKind.GATEWAY_TIMEOUT,
}

# Status 0 stands for "no response received"
RETRYABLE_STATUS_CODES = frozenset({0, 408, 429, 500, 502, 503, 504})

DEFAULT_RATE_LIMIT_WINDOW_MS = 60_000

# Reset values above this are absolute epoch seconds, below it relative seconds
_EPOCH_SECONDS_CUTOFF = 1e9


@dataclass
class RetryConfig:
    """Backoff policy.

    :ivar max_retries: Extra attempts after the first one.
    :ivar base_delay_ms: Delay before the first retry.
    :ivar backoff_multiplier: Growth factor per attempt.
    :ivar max_delay_ms: Cap on the exponential part of the delay.
    :ivar jitter_ms: Upper bound of the uniform random jitter added to each delay.
    """

    max_retries: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30_000
    jitter_ms: int = 100

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0 or self.jitter_ms < 0:
            raise ValueError("retry delays must not be negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1")


@dataclass
class RateLimitState:
    """Last known quota of a source.

    :ivar limit: Requests allowed per window.
    :ivar remaining: Requests left in the current window.
    :ivar reset_at_ms: When the window resets.
    :ivar retry_after_ms: Server-requested wait from the last response.
    """

    limit: int | None = None
    remaining: int | None = None
    reset_at_ms: int | None = None
    retry_after_ms: int | None = None

    def is_exhausted(self, now_ms: int) -> bool:
        """True while the quota is spent and the reset lies in the future."""
        return (
            self.remaining is not None
            and self.remaining <= 0
            and self.reset_at_ms is not None
            and self.reset_at_ms > now_ms
        )


@dataclass
class RetryMetrics:
    """Per-source attempt counters.

    :ivar attempts: Calls actually issued.
    :ivar retries: Backoff waits taken.
    :ivar successes: Attempts that returned a 2xx.
    :ivar failures: Attempts that failed for any reason.
    :ivar fast_fails: Calls refused locally because the quota was spent.
    :ivar last_error: Message of the most recent failure.
    """

    attempts: int = 0
    retries: int = 0
    successes: int = 0
    failures: int = 0
    fast_fails: int = 0
    last_error: str | None = None


def _parse_number(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        return float(value.strip())
    except ValueError:
        return None


def parse_rate_limit_headers(
    headers: Mapping[str, str], now_ms: int
) -> RateLimitState | None:
    """Extract rate-limit signals from response headers.

    Reads ``x-ratelimit-limit``, ``x-ratelimit-remaining``,
    ``x-ratelimit-reset`` and ``retry-after`` (seconds). A reset above 1e9 is
    taken as epoch seconds, anything smaller as seconds from now.

    :param headers: Response headers with lower-case keys.
    :param now_ms: Current time.
    :returns: Parsed state, or None when no rate-limit header is present.
    """
    limit = _parse_number(headers.get("x-ratelimit-limit"))
    remaining = _parse_number(headers.get("x-ratelimit-remaining"))
    reset = _parse_number(headers.get("x-ratelimit-reset"))
    retry_after = _parse_number(headers.get("retry-after"))

    if limit is None and remaining is None and reset is None and retry_after is None:
        return None

    reset_at_ms: int | None = None
    if reset is not None:
        if reset > _EPOCH_SECONDS_CUTOFF:
            reset_at_ms = int(reset * 1000)
        else:
            reset_at_ms = now_ms + int(reset * 1000)
    elif remaining is not None:
        reset_at_ms = now_ms + DEFAULT_RATE_LIMIT_WINDOW_MS

    return RateLimitState(
        limit=int(limit) if limit is not None else None,
        remaining=int(remaining) if remaining is not None else None,
        reset_at_ms=reset_at_ms,
        retry_after_ms=int(retry_after * 1000) if retry_after is not None else None,
    )


def classify_status(
    source: str,
    status_code: int,
    message: str = "",
    retry_after_ms: int | None = None,
) -> ClassifiedError:
    """Map a non-2xx status to a :class:`ClassifiedError`.

    .. code-block:: python

        >>> classify_status("x", 503).kind
        <ErrorKind.SERVICE_UNAVAILABLE: 'service_unavailable'>
        >>> classify_status("x", 418).retryable
        False
    """
    kind = STATUS_KINDS.get(status_code, ErrorKind.HTTP_ERROR)
    return ClassifiedError(
        source,
        kind,
        message or f"HTTP {status_code}",
        status_code=status_code,
        retryable=status_code in RETRYABLE_STATUS_CODES,
        retry_after_ms=retry_after_ms,
    )


def backoff_delay_ms(
    attempt: int,
    config: RetryConfig,
    error: ClassifiedError | None = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt`` (0-based).

    :returns: The error's ``retry_after_ms`` if set, otherwise
        ``min(base * multiplier^attempt, max)`` plus up to ``jitter_ms``.
    """
    if error is not None and error.retry_after_ms is not None:
        return float(error.retry_after_ms)
    delay = min(
        config.base_delay_ms * (config.backoff_multiplier**attempt),
        config.max_delay_ms,
    )
    return delay + rng() * config.jitter_ms


async def retry_with_backoff(
    attempt: int,
    config: RetryConfig,
    error: ClassifiedError | None = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> float:
    """Wait out the backoff for ``attempt``.

    :returns: The delay waited, in milliseconds.
    """
    delay = backoff_delay_ms(attempt, config, error, rng)
    await sleep(delay / 1000)
    return delay


class RetryController:
    """Executes source calls with timeout, rate-limit tracking and retries.

    Holds per-source :class:`RateLimitState` and :class:`RetryMetrics`. It does
    not report to the source registry; the caller records one outcome per
    source invocation once :meth:`call_with_retry` returns or raises.

    :ivar config: Default retry policy.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        config: RetryConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the controller.

        :param clock: Time source (system clock if None).
        :param config: Default retry policy.
        :param sleep: Coroutine used for backoff waits (seconds).
        :param rng: Uniform [0, 1) generator for jitter.
        """
        self.clock = clock or SystemClock()
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng
        self._rate_limits: dict[str, RateLimitState] = {}
        self._metrics: dict[str, RetryMetrics] = {}

    def _metrics_for(self, source: str) -> RetryMetrics:
        if source not in self._metrics:
            self._metrics[source] = RetryMetrics()
        return self._metrics[source]

    def get_metrics(self, source: str) -> RetryMetrics | None:
        return self._metrics.get(source)

    def get_all_metrics(self) -> dict[str, RetryMetrics]:
        return dict(self._metrics)

    def get_rate_limit(self, source: str) -> RateLimitState | None:
        return self._rate_limits.get(source)

    def get_all_rate_limits(self) -> dict[str, RateLimitState]:
        return dict(self._rate_limits)

    def set_rate_limit(self, source: str, state: RateLimitState) -> None:
        self._rate_limits[source] = state

    def reset(self, source: str) -> None:
        """Forget the rate-limit state and metrics of a source."""
        self._rate_limits.pop(source, None)
        self._metrics.pop(source, None)

    def check_rate_limit(self, source: str) -> None:
        """Fail fast when the source's quota is spent.

        :raises ClassifiedError: ``RATE_LIMITED``, not retryable, carrying the
            time left until the reset as ``retry_after_ms``.
        """
        state = self._rate_limits.get(source)
        now = self.clock.now_ms()
        if state is None or not state.is_exhausted(now):
            return

        wait_ms = state.reset_at_ms - now
        metrics = self._metrics_for(source)
        metrics.fast_fails += 1
        logger.warning(
            f"[{source}] Rate limit exhausted, skipping call for {wait_ms}ms"
        )
        error = ClassifiedError(
            source,
            ErrorKind.RATE_LIMITED,
            f"rate limit exhausted, resets in {wait_ms}ms",
            retryable=False,
            retry_after_ms=wait_ms,
        )
        metrics.last_error = str(error)
        raise error

    def _update_rate_limit(self, source: str, response: SourceResponse) -> None:
        now = self.clock.now_ms()
        state = parse_rate_limit_headers(response.headers, now)

        if response.status_code == 429:
            state = state or RateLimitState()
            state.remaining = 0
            if state.retry_after_ms is not None:
                state.reset_at_ms = now + state.retry_after_ms
            elif state.reset_at_ms is None:
                state.reset_at_ms = now + DEFAULT_RATE_LIMIT_WINDOW_MS
            logger.warning(
                f"[{source}] Rate limited (HTTP 429), resets at {state.reset_at_ms}"
            )

        if state is not None:
            self._rate_limits[source] = state

    async def execute(
        self,
        source: str,
        timeout_ms: int,
        call: Callable[[], Awaitable[SourceResponse]],
    ) -> SourceResponse:
        """Issue one call.

        :param source: Source name, used for rate-limit state and messages.
        :param timeout_ms: Per-call timeout.
        :param call: Zero-argument coroutine factory performing the request.
        :returns: The 2xx response.
        :raises ClassifiedError: On fast-fail, timeout, network error, non-2xx,
            or any other exception raised by ``call``.
        """
        self.check_rate_limit(source)

        metrics = self._metrics_for(source)
        metrics.attempts += 1
        try:
            response = await asyncio.wait_for(call(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            error = ClassifiedError(
                source,
                ErrorKind.TIMEOUT,
                f"no response within {timeout_ms}ms",
                status_code=0,
                retryable=True,
            )
            self._record_failure(metrics, error)
            raise error from e
        except TransportError as e:
            error = ClassifiedError(
                source,
                ErrorKind.TIMEOUT if e.timed_out else ErrorKind.NETWORK_ERROR,
                str(e),
                status_code=0,
                retryable=True,
            )
            self._record_failure(metrics, error)
            raise error from e
        except OSError as e:
            error = ClassifiedError(
                source, ErrorKind.NETWORK_ERROR, str(e), status_code=0, retryable=True
            )
            self._record_failure(metrics, error)
            raise error from e
        except ClassifiedError as e:
            self._record_failure(metrics, e)
            raise
        except Exception as e:
            logger.exception(f"[{source}] Unexpected error from source call")
            error = ClassifiedError(
                source,
                ErrorKind.NETWORK_ERROR,
                f"{type(e).__name__}: {e}",
                status_code=0,
                retryable=True,
            )
            self._record_failure(metrics, error)
            raise error from e

        self._update_rate_limit(source, response)

        if response.is_success:
            metrics.successes += 1
            return response

        state = self._rate_limits.get(source)
        retry_after = state.retry_after_ms if state and response.status_code == 429 else None
        error = classify_status(
            source,
            response.status_code,
            _error_message(response),
            retry_after_ms=retry_after,
        )
        self._record_failure(metrics, error)
        raise error

    @staticmethod
    def _record_failure(metrics: RetryMetrics, error: ClassifiedError) -> None:
        metrics.failures += 1
        metrics.last_error = str(error)
        logger.debug(f"Attempt failed: {error}")

    async def call_with_retry(
        self,
        source: str,
        timeout_ms: int,
        call: Callable[[], Awaitable[SourceResponse]],
        config: RetryConfig | None = None,
        deadline_ms: int | None = None,
    ) -> SourceResponse:
        """Run :meth:`execute` until it succeeds or retrying is pointless.

        Stops on a non-retryable error (fast-fails included) and after
        ``max_retries`` extra attempts. An outer ``deadline_ms`` bounds the
        whole loop: attempts are shortened to fit and a backoff that would
        cross it aborts the loop.

        :raises ClassifiedError: The last failure, or a non-retryable
            ``TIMEOUT`` when the deadline is reached.
        """
        config = config or self.config
        attempt = 0
        while True:
            effective_timeout = timeout_ms
            if deadline_ms is not None:
                remaining = deadline_ms - self.clock.now_ms()
                if remaining <= 0:
                    raise self._deadline_error(source)
                effective_timeout = min(timeout_ms, remaining)

            try:
                return await self.execute(source, effective_timeout, call)
            except ClassifiedError as e:
                if not e.retryable or attempt >= config.max_retries:
                    raise

                delay = backoff_delay_ms(attempt, config, e, self._rng)
                if deadline_ms is not None and self.clock.now_ms() + delay >= deadline_ms:
                    raise self._deadline_error(source) from e

                self._metrics_for(source).retries += 1
                logger.debug(
                    f"[{source}] Retry {attempt + 1}/{config.max_retries} "
                    f"in {delay:.0f}ms after {e.kind.value}"
                )
                await self._sleep(delay / 1000)
                attempt += 1

    @staticmethod
    def _deadline_error(source: str) -> ClassifiedError:
        return ClassifiedError(
            source, ErrorKind.TIMEOUT, "deadline exceeded", status_code=0, retryable=False
        )


def _error_message(response: SourceResponse) -> str:
    body = response.body
    if isinstance(body, dict):
        for key in ("error", "message", "status"):
            if body.get(key):
                return f"HTTP {response.status_code}: {str(body[key])[:200]}"
    elif isinstance(body, str) and body:
        return f"HTTP {response.status_code}: {body[:200]}"
    return f"HTTP {response.status_code}"
