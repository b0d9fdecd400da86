"""Coinbase Exchange source.

Endpoint: https://api.exchange.coinbase.com/products/{SYMBOL}-USD/ticker
Rate Limit: High (no key required)
"""

from __future__ import annotations

import logging
from typing import Any

from ..SourceDescriptor import SourceKind
from .base import BaseSource, SourceResponse, default_headers, register_source

logger = logging.getLogger(__name__)


@register_source
class CoinbaseSource(BaseSource):
    """Source for the Coinbase Exchange public ticker.

    No API key required. Any ``{SYMBOL}-USD`` product listed on the exchange
    is supported; unknown products come back as a 404 from the exchange.
    """

    name = "coinbase"
    kind = SourceKind.REST
    DEFAULT_PRIORITY = 5
    BASE_URL = "https://api.exchange.coinbase.com"

    async def request(self, symbol: str) -> SourceResponse:
        product = f"{symbol.upper()}-USD"
        return await self._get(
            f"{self.BASE_URL}/products/{product}/ticker", headers=default_headers()
        )

    def extract_price(self, symbol: str, body: Any) -> tuple[float, int | None]:
        if "price" not in body:
            logger.warning(f"[coinbase] No price in response for {symbol}: {body}")
        return float(body["price"]), None
