"""Chainlink on-chain oracle source.

Endpoint: any Ethereum JSON-RPC node, ``eth_call`` of ``latestRoundData()``
Rate Limit: Depends on the RPC provider
Staleness: Real. The quote timestamp is the feed's ``updatedAt``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from ..SourceDescriptor import SourceDescriptor, SourceKind
from .base import BaseSource, SourceResponse, default_headers, register_source

logger = logging.getLogger(__name__)

# keccak("latestRoundData()")[:4]
LATEST_ROUND_DATA_SELECTOR = "0xfeaf968c"
LATEST_ROUND_DATA_TYPES = ["uint80", "int256", "uint256", "uint256", "uint80"]


@dataclass(frozen=True)
class ChainlinkFeed:
    """Mainnet aggregator proxy for one USD pair.

    :ivar address: Aggregator proxy address.
    :ivar decimals: Decimals of the ``answer`` field.
    :ivar heartbeat_seconds: Maximum time between on-chain updates.
    """

    address: str
    decimals: int = 8
    heartbeat_seconds: float = 3600.0


@register_source
class ChainlinkSource(BaseSource):
    """Reads USD prices from Chainlink aggregator proxies over JSON-RPC.

    Stablecoin feeds update once a day, so their heartbeat is 24h rather than
    the oracle default of 1h.
    """

    name = "chainlink"
    kind = SourceKind.ORACLE
    DEFAULT_PRIORITY = 1
    DEFAULT_RPC_URL = "https://eth.llamarpc.com"

    FEEDS = {
        "ETH": ChainlinkFeed("0x5f4ec3df9cbd43714fe2740f5e3616155c5b8419"),
        "BTC": ChainlinkFeed("0xf4030086522a5beea4988f8ca5b36dbc97bee88c"),
        "LINK": ChainlinkFeed("0x2c1d072e956affc0d435cb7ac38ef18d24d9127c"),
        "DAI": ChainlinkFeed("0xaed0c38402a5d19df6e4c03f4e2dced6e29c1ee9"),
        "USDC": ChainlinkFeed(
            "0x8fffffd4afb6115b954bd326cbe7b4ba576818f6", heartbeat_seconds=86400.0
        ),
        "USDT": ChainlinkFeed(
            "0x3e7d1eab13ad0104d2750b8863b489d65364e32d", heartbeat_seconds=86400.0
        ),
    }

    def __init__(
        self,
        descriptor: SourceDescriptor | None = None,
        api_key: str | None = None,
        rpc_url: str | None = None,
    ) -> None:
        """Initialize with an optional RPC endpoint.

        :param rpc_url: JSON-RPC URL (default: public mainnet endpoint).
        """
        super().__init__(descriptor=descriptor, api_key=api_key)
        self.rpc_url = rpc_url or self.DEFAULT_RPC_URL

    def supports_symbol(self, symbol: str) -> bool:
        return symbol.upper() in self.FEEDS

    def heartbeat_for(self, symbol: str) -> float:
        feed = self.FEEDS.get(symbol.upper())
        return feed.heartbeat_seconds if feed else self.descriptor.heartbeat_seconds

    async def request(self, symbol: str) -> SourceResponse:
        """Issue ``eth_call latestRoundData()`` against the symbol's feed."""
        feed = self.FEEDS.get(symbol.upper())
        if feed is None:
            return self.unsupported(symbol)

        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [
                {
                    "to": Web3.to_checksum_address(feed.address),
                    "data": LATEST_ROUND_DATA_SELECTOR,
                },
                "latest",
            ],
        }
        return await self._post(self.rpc_url, json=payload, headers=default_headers())

    def extract_price(self, symbol: str, body: Any) -> tuple[float, int | None]:
        """Decode the ABI-encoded ``latestRoundData`` tuple.

        :returns: Price scaled by the feed decimals and ``updatedAt`` in ms.
        :raises ValueError: On a JSON-RPC error or an empty result.
        """
        if body.get("error"):
            raise ValueError(f"rpc error: {body['error']}")
        result = body["result"]
        if not result or result == "0x":
            raise ValueError("empty eth_call result")

        feed = self.FEEDS[symbol.upper()]
        try:
            _round_id, answer, _started_at, updated_at, _answered_in_round = decode(
                LATEST_ROUND_DATA_TYPES, Web3.to_bytes(hexstr=result)
            )
        except DecodingError as e:
            raise ValueError(f"undecodable latestRoundData: {e}") from e
        price = answer / 10**feed.decimals
        logger.debug(f"[chainlink] {symbol} answer={answer} updatedAt={updated_at}")
        return price, int(updated_at) * 1000
