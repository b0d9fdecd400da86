"""0x DEX aggregator source.

Endpoint: https://api.0x.org/swap/v1/price?sellToken={token}&buyToken=USDC&sellAmount={1 unit}
Rate Limit: Depends on plan, ``0x-api-key`` header required
"""

from __future__ import annotations

import logging
from typing import Any

from ..SourceDescriptor import SourceKind
from .base import BaseSource, SourceResponse, default_headers, register_source

logger = logging.getLogger(__name__)


@register_source
class ZeroExSource(BaseSource):
    """Prices a token by quoting a 1-unit swap into USDC through the 0x API.

    The quote is taken as live, so the quote timestamp is the time of the call.
    """

    name = "zerox"
    kind = SourceKind.DEX
    DEFAULT_PRIORITY = 3
    BASE_URL = "https://api.0x.org"
    BUY_TOKEN = "USDC"

    # symbol -> (sell token accepted by 0x, decimals)
    TOKENS = {
        "ETH": ("ETH", 18),
        "WETH": ("WETH", 18),
        "BTC": ("WBTC", 8),
        "WBTC": ("WBTC", 8),
        "LINK": ("LINK", 18),
        "UNI": ("UNI", 18),
        "AAVE": ("AAVE", 18),
        "DAI": ("DAI", 18),
        "USDT": ("USDT", 6),
    }

    def supports_symbol(self, symbol: str) -> bool:
        return symbol.upper() in self.TOKENS

    async def request(self, symbol: str) -> SourceResponse:
        """Request a price for selling one whole token for USDC."""
        token = self.TOKENS.get(symbol.upper())
        if token is None:
            logger.warning(f"[zerox] Unknown token: {symbol}")
            return self.unsupported(symbol)

        sell_token, decimals = token
        extra = {"0x-api-key": self.api_key} if self.has_api_key else None
        return await self._get(
            f"{self.BASE_URL}/swap/v1/price",
            params={
                "sellToken": sell_token,
                "buyToken": self.BUY_TOKEN,
                "sellAmount": str(10**decimals),
            },
            headers=default_headers(extra),
        )

    def extract_price(self, symbol: str, body: Any) -> tuple[float, int | None]:
        # "price" is buyToken per sellToken, already decimal-adjusted
        return float(body["price"]), None
