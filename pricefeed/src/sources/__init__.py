"""
Upstream price sources.

This module provides a unified interface for reading USD prices from
on-chain oracles, DEX aggregators and REST market-data APIs.

Usage:
    from pricefeed.src.sources import get_source, get_available_sources

    # Get list of available sources
    available = get_available_sources()
    # ['chainlink', 'coinbase', 'coingecko', 'zerox']

    # Create a source instance and perform one call
    source = get_source("coingecko")
    response = await source.request("ETH")
    quote = source.parse_quote("ETH", response, now_ms)

    # For sources requiring API keys
    source = get_source("zerox", api_key="your-api-key")
"""

# Import base classes and utilities
from .base import (
    SOURCE_REGISTRY,
    BaseSource,
    SourceResponse,
    get_available_sources,
    get_source,
    register_source,
)
from .cache import CacheSource

# Import all source implementations to trigger registration
from .chainlink import ChainlinkSource
from .coinbase import CoinbaseSource
from .coingecko import CoinGeckoSource
from .zerox import ZeroExSource

__all__ = [
    # Base classes
    "BaseSource",
    "SourceResponse",
    # Registry functions
    "register_source",
    "get_source",
    "get_available_sources",
    "SOURCE_REGISTRY",
    # Source implementations
    "CacheSource",
    "ChainlinkSource",
    "CoinbaseSource",
    "CoinGeckoSource",
    "ZeroExSource",
]
