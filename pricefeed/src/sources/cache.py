"""Cache-backed fallback source.

Answers from the in-process :class:`PriceCache` instead of the network. It is
meant to sit at the end of the priority list so that, when every live source
is down, the last known price can still be served, subject to the caller's
freshness requirement and this source's own ``max_staleness_s``.

Not registered in ``SOURCE_REGISTRY``: it needs the service's cache instance,
so :class:`PriceFeedService` builds it directly.
"""

from __future__ import annotations

import logging
from typing import Any

from ..PriceCache import PriceCache
from ..Quote import Quote
from ..SourceDescriptor import SourceDescriptor, SourceKind
from ..errors import StaleDataError
from .base import BaseSource, SourceResponse

logger = logging.getLogger(__name__)


class CacheSource(BaseSource):
    """Serves the cached quote for a symbol, 404 on a miss.

    :ivar cache: Cache to read from.
    :ivar max_staleness_s: Reject cached quotes older than this (None: no limit).
    """

    name = "stale_cache"
    kind = SourceKind.CACHE
    DEFAULT_PRIORITY = 99

    def __init__(
        self,
        cache: PriceCache,
        descriptor: SourceDescriptor | None = None,
        max_staleness_s: float | None = None,
    ) -> None:
        super().__init__(descriptor=descriptor)
        self.cache = cache
        self.max_staleness_s = max_staleness_s

    async def request(self, symbol: str) -> SourceResponse:
        quote = self.cache.get(symbol)
        if quote is None:
            return SourceResponse(404, {}, {"error": f"no cached price for {symbol}"})
        return SourceResponse(200, {}, {"quote": quote})

    def extract_price(self, symbol: str, body: Any) -> tuple[float, int | None]:
        quote: Quote = body["quote"]
        return quote.price_usd, quote.timestamp_ms

    def parse_quote(self, symbol: str, response: SourceResponse, now_ms: int) -> Quote:
        """Return the cached quote unchanged apart from its age.

        The quote keeps the name and heartbeat of the source that originally
        produced it.

        :raises StaleDataError: When older than ``max_staleness_s``.
        """
        quote: Quote = response.body["quote"].aged(now_ms)
        if self.max_staleness_s is not None and quote.staleness_seconds > self.max_staleness_s:
            raise StaleDataError(
                self.source_name, quote.staleness_seconds, self.max_staleness_s
            )
        logger.debug(
            f"[{self.source_name}] Serving cached {symbol} from {quote.source} "
            f"({quote.staleness_seconds}s old)"
        )
        return quote
