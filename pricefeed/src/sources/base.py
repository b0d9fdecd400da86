"""Base source interface and shared HTTP client management.

Every upstream price source inherits from BaseSource and implements two
halves of a single lookup:

    - ``request()`` performs exactly one outbound call and hands back the raw
      :class:`SourceResponse`. Non-2xx statuses are returned, not raised, so the
      retry controller can classify them. Network failures are raised as
      :class:`TransportError`.
    - ``extract_price()`` decodes a 2xx body into a price and an optional
      upstream timestamp.

A shared httpx.AsyncClient is used across all sources to avoid connection overhead.

.. code-block:: python

    @register_source
    class MySource(BaseSource):
        name = "mysource"
        kind = SourceKind.REST

        async def request(self, symbol: str) -> SourceResponse:
            return await self._get(f"https://api.example.com/{symbol}")

        def extract_price(self, symbol: str, body) -> tuple[float, int | None]:
            return float(body["price"]), None
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

import httpx

from ..Quote import Quote
from ..SourceDescriptor import SourceDescriptor, SourceKind
from ..errors import ClassifiedError, ErrorKind, TransportError

logger = logging.getLogger(__name__)


@dataclass
class SourceResponse:
    """Raw outcome of one outbound call.

    :ivar status_code: HTTP (or HTTP-equivalent) status.
    :ivar headers: Response headers, keys lower-cased.
    :ivar body: Decoded JSON body, or the raw text when it is not JSON.
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower())

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> SourceResponse:
        """Wrap an httpx response, decoding JSON when possible."""
        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return cls(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=body,
        )


class BaseSource(ABC):
    """Abstract base class for price sources.

    Subclasses must implement:
        - name: Class variable identifying the source (e.g., "chainlink")
        - kind: Class variable with the source family
        - request(): Async method performing the outbound call
        - extract_price(): Decode a successful body

    :cvar name: Unique identifier for this source.
    :cvar kind: Source family, decides the descriptor defaults.
    :cvar DEFAULT_PRIORITY: Priority used when no descriptor is supplied.
    :ivar descriptor: Static configuration of this source.
    :ivar api_key: Optional API key for authenticated endpoints.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""
    kind: ClassVar[SourceKind] = SourceKind.REST
    DEFAULT_PRIORITY: ClassVar[int] = 10

    def __init__(
        self,
        descriptor: SourceDescriptor | None = None,
        api_key: str | None = None,
    ) -> None:
        """Initialize the source.

        :param descriptor: Source configuration. Built from the class defaults if None.
        :param api_key: Optional API key for authenticated endpoints.
        """
        if descriptor is None:
            descriptor = SourceDescriptor(
                name=self.name, kind=self.kind, priority=self.DEFAULT_PRIORITY
            )
        self.descriptor = descriptor
        self.api_key = api_key

    @property
    def source_name(self) -> str:
        return self.descriptor.name

    @property
    def has_api_key(self) -> bool:
        """Check if this source has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @property
    def timeout(self) -> float:
        """Per-request timeout in seconds."""
        return self.descriptor.timeout_ms / 1000

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all source instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseSource._shared_client is None or BaseSource._shared_client.is_closed:
            BaseSource._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseSource._shared_client

    @classmethod
    def set_shared_client(cls, client: httpx.AsyncClient | None) -> None:
        """Replace the shared client (used to inject a mock transport)."""
        BaseSource._shared_client = client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseSource._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseSource._shared_client = None

    def supports_symbol(self, symbol: str) -> bool:
        """Check if this source can price the given symbol.

        Override in subclasses with a fixed symbol table.
        """
        return True

    def heartbeat_for(self, symbol: str) -> float:
        """Expected update cadence of this source for ``symbol``."""
        return self.descriptor.heartbeat_seconds

    @abstractmethod
    async def request(self, symbol: str) -> SourceResponse:
        """Perform the single outbound call for ``symbol``.

        :param symbol: Upper-case asset symbol.
        :returns: Raw response, whatever its status.
        :raises TransportError: When no response was received.
        """

    @abstractmethod
    def extract_price(self, symbol: str, body: Any) -> tuple[float, int | None]:
        """Decode a successful body.

        :param symbol: Upper-case asset symbol.
        :param body: Decoded response body.
        :returns: ``(price_usd, timestamp_ms)``; a None timestamp means "now".
        :raises KeyError, ValueError, TypeError: On malformed bodies.
        """

    def parse_quote(self, symbol: str, response: SourceResponse, now_ms: int) -> Quote:
        """Turn a 2xx response into a :class:`Quote`.

        :raises ClassifiedError: ``INVALID_RESPONSE`` when the body cannot be
            decoded or the price is not a positive finite number.
        """
        try:
            price, timestamp_ms = self.extract_price(symbol, response.body)
        except (KeyError, ValueError, TypeError, IndexError, AttributeError) as e:
            raise ClassifiedError(
                self.source_name,
                ErrorKind.INVALID_RESPONSE,
                f"failed to parse response for {symbol}: {e}",
                status_code=response.status_code,
            ) from e

        if not math.isfinite(price) or price <= 0:
            raise ClassifiedError(
                self.source_name,
                ErrorKind.INVALID_RESPONSE,
                f"invalid price for {symbol}: {price}",
                status_code=response.status_code,
            )

        return Quote.create(
            symbol,
            price,
            timestamp_ms=now_ms if timestamp_ms is None else timestamp_ms,
            source=self.source_name,
            now_ms=now_ms,
            heartbeat_seconds=self.heartbeat_for(symbol),
        )

    def unsupported(self, symbol: str) -> SourceResponse:
        """Synthetic 404 for symbols this source does not know."""
        logger.debug(f"[{self.source_name}] Unsupported symbol: {symbol}")
        return SourceResponse(404, {}, {"error": f"unsupported symbol {symbol}"})

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> SourceResponse:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: Wrapped response, any status.
        :raises TransportError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url, params=params, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timeout: {e}", timed_out=True) from e
        except httpx.RequestError as e:
            raise TransportError(f"Request failed: {e}") from e
        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
        return SourceResponse.from_httpx(response)

    async def _post(
        self,
        url: str,
        *,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> SourceResponse:
        """Make an HTTP POST request using the shared client.

        :param url: Request URL.
        :param json: Optional JSON body.
        :param headers: Optional request headers.
        :returns: Wrapped response, any status.
        :raises TransportError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.post(
                url, json=json, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timeout: {e}", timed_out=True) from e
        except httpx.RequestError as e:
            raise TransportError(f"Request failed: {e}") from e
        if not response.is_success:
            logger.debug(
                "HTTP POST %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
        return SourceResponse.from_httpx(response)


# Registry of available sources (populated by subclass imports)
SOURCE_REGISTRY: dict[str, type[BaseSource]] = {}


def register_source(cls: type[BaseSource]) -> type[BaseSource]:
    """Decorator to register a source class in the global registry.

    :param cls: Source class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If the source has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Source {cls.__name__} must define a 'name' class variable")
    SOURCE_REGISTRY[cls.name] = cls
    return cls


def get_source(
    name: str,
    descriptor: SourceDescriptor | None = None,
    api_key: str | None = None,
    **kwargs: Any,
) -> BaseSource:
    """Get a source instance by name.

    :param name: Source name (e.g., "chainlink", "coingecko").
    :param descriptor: Optional configuration overriding the class defaults.
    :param api_key: Optional API key.
    :returns: Source instance.
    :raises ValueError: If the source name is unknown.
    """
    if name not in SOURCE_REGISTRY:
        available = ", ".join(sorted(SOURCE_REGISTRY.keys()))
        raise ValueError(f"Unknown source '{name}'. Available: {available}")
    return SOURCE_REGISTRY[name](descriptor=descriptor, api_key=api_key, **kwargs)


def get_available_sources() -> list[str]:
    """Get list of available source names.

    :returns: Sorted list of registered source names.
    """
    return sorted(SOURCE_REGISTRY.keys())


def default_headers(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    """JSON accept header plus any source-specific extras."""
    headers = {"accept": "application/json"}
    if extra:
        headers.update(extra)
    return headers
