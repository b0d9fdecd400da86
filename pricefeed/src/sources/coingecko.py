"""CoinGecko source.

Endpoint: https://api.coingecko.com/api/v3/simple/price?ids={id}&vs_currencies=usd&include_last_updated_at=true
Rate Limit: 30 calls/min (free), higher with API key
"""

from __future__ import annotations

import logging
from typing import Any

from ..SourceDescriptor import SourceDescriptor, SourceKind
from .base import BaseSource, SourceResponse, default_headers, register_source

logger = logging.getLogger(__name__)


@register_source
class CoinGeckoSource(BaseSource):
    """Source for the CoinGecko simple-price API.

    API tiers:
        - Free: api.coingecko.com (no key, 30 calls/min)
        - Demo: api.coingecko.com + x-cg-demo-api-key header
        - Pro: pro-api.coingecko.com + x-cg-pro-api-key header

    To use a demo key, prefix with "demo:": API_KEY_COINGECKO=demo:CG-xxxxx
    Pro keys need no prefix: API_KEY_COINGECKO=xxxxx
    """

    name = "coingecko"
    kind = SourceKind.REST
    DEFAULT_PRIORITY = 4
    BASE_URL_FREE = "https://api.coingecko.com/api/v3"
    BASE_URL_PRO = "https://pro-api.coingecko.com/api/v3"

    # Map common symbols to CoinGecko IDs
    COIN_IDS = {
        "BTC": "bitcoin",
        "ETH": "ethereum",
        "USDT": "tether",
        "USDC": "usd-coin",
        "DAI": "dai",
        "SOL": "solana",
        "AVAX": "avalanche-2",
        "MATIC": "matic-network",
        "DOT": "polkadot",
        "ATOM": "cosmos",
        "LINK": "chainlink",
        "UNI": "uniswap",
        "AAVE": "aave",
        "ROSE": "oasis-network",
    }

    def __init__(
        self,
        descriptor: SourceDescriptor | None = None,
        api_key: str | None = None,
    ) -> None:
        """Initialize with optional demo: prefix handling."""
        self._is_demo = False
        if api_key and api_key.lower().startswith("demo:"):
            self._is_demo = True
            api_key = api_key[5:]
        super().__init__(descriptor=descriptor, api_key=api_key)

    @property
    def base_url(self) -> str:
        """Return appropriate base URL based on API key type."""
        if not self.has_api_key:
            return self.BASE_URL_FREE
        return self.BASE_URL_FREE if self._is_demo else self.BASE_URL_PRO

    @property
    def api_header(self) -> dict[str, str] | None:
        """Return the API key header for the configured tier."""
        if not self.api_key:
            return None
        header_name = "x-cg-demo-api-key" if self._is_demo else "x-cg-pro-api-key"
        return {header_name: self.api_key}

    def supports_symbol(self, symbol: str) -> bool:
        return symbol.upper() in self.COIN_IDS

    async def request(self, symbol: str) -> SourceResponse:
        coin_id = self.COIN_IDS.get(symbol.upper())
        if not coin_id:
            logger.warning(f"[coingecko] Unknown coin: {symbol}")
            return self.unsupported(symbol)

        return await self._get(
            f"{self.base_url}/simple/price",
            params={
                "ids": coin_id,
                "vs_currencies": "usd",
                "include_last_updated_at": "true",
            },
            headers=default_headers(self.api_header),
        )

    def extract_price(self, symbol: str, body: Any) -> tuple[float, int | None]:
        """Read ``usd`` and ``last_updated_at`` for the symbol's coin id."""
        coin_id = self.COIN_IDS[symbol.upper()]
        if coin_id not in body:
            logger.warning(f"[coingecko] Coin {coin_id} not in response: {body}")
        data = body[coin_id]
        updated_at = data.get("last_updated_at")
        return float(data["usd"]), int(updated_at) * 1000 if updated_at else None
