#!/usr/bin/env python3
"""Resilient Price Feed.

Prices crypto assets in USD from on-chain oracles, DEX aggregators and REST
market-data APIs with ordered failover, circuit breaking, staleness-aware
caching and volatility alerts.

Run once to print prices, or keep running to log periodic updates.
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.PriceFeedConfig import PriceFeedConfig
from .src.PriceFeedService import PriceFeedService, PriceUpdate
from .src.VolatilityMonitor import VolatilityAlert
from .src.sources import get_available_sources

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_api_keys(api_key_str: str | None) -> dict[str, str]:
    """Parse comma-separated API key string into a dictionary.

    Format: source1=key1,source2=key2
    Example: zerox=abc123,coingecko=demo:CG-xyz

    :param api_key_str: Comma-separated API key string.
    :returns: Dict mapping source names to API keys.
    """
    if not api_key_str:
        return {}

    api_keys = {}
    for item in api_key_str.split(","):
        item = item.strip()
        if "=" in item:
            source, key = item.split("=", 1)
            api_keys[source.strip().lower()] = key.strip()
    return api_keys


def parse_env_api_keys() -> dict[str, str]:
    """Parse API keys from individual environment variables.

    Looks for: API_KEY_ZEROX, API_KEY_COINGECKO, etc.

    :returns: Dict mapping source names to API keys.
    """
    api_keys = {}
    prefixes = ["API_KEY_", "APIKEY_"]

    for key, value in os.environ.items():
        for prefix in prefixes:
            if key.startswith(prefix) and value:
                source = key[len(prefix):].lower()
                api_keys[source] = value
                break

    return api_keys


def log_update(update: PriceUpdate) -> None:
    quote = update.quote
    line = (
        f"{quote.symbol}: ${quote.price_usd:,.4f} from {quote.source} "
        f"(confidence {quote.confidence}, {quote.staleness_seconds}s old)"
    )
    if update.volatility is not None:
        line += f", 24h volatility {update.volatility.volatility_24h:.2f}%"
    logger.info(line)


def log_alert(alert: VolatilityAlert) -> None:
    logger.warning(f"ALERT [{alert.severity.value}] {alert.message}")


async def print_once(service: PriceFeedService, symbols: list[str], max_age: float | None) -> int:
    """Price every symbol once and print the result.

    :returns: Process exit code (1 if any symbol failed).
    """
    try:
        result = await service.get_batch_prices(symbols, max_age, include_volatility=False)
    finally:
        await service.close()

    for symbol in symbols:
        quote = result.quotes.get(symbol)
        if quote is None:
            print(f"{symbol:<6} ERROR {result.errors.get(symbol, 'unknown error')}")
        else:
            print(
                f"{symbol:<6} {quote.price_usd:>14,.4f} USD  "
                f"source={quote.source} confidence={quote.confidence} "
                f"age={quote.staleness_seconds}s"
            )
    return 1 if result.errors else 0


async def watch(service: PriceFeedService, symbols: list[str], interval_ms: int) -> None:
    """Subscribe to every symbol and run until interrupted."""
    service.add_alert_listener(log_alert)
    await service.start()
    for symbol in symbols:
        service.subscribe(symbol, log_update, interval_ms=interval_ms, include_volatility=True)
    await service.run()


def main() -> None:
    """Main entry point for the price feed CLI."""
    available_sources = get_available_sources()

    parser = argparse.ArgumentParser(
        description="Resilient Price Feed: USD prices with failover across sources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Available price sources:
  {', '.join(available_sources)}

Examples:
  # Print ETH and BTC once
  python -m pricefeed.main --symbols eth,btc --once

  # Keep running, logging updates every 30 seconds
  python -m pricefeed.main --symbols eth,btc,link --interval 30

  # Custom source order with an API key for the DEX aggregator
  python -m pricefeed.main --symbols eth \\
      --sources chainlink,zerox,coinbase --api-keys zerox=your-api-key

Environment variables (CLI args take precedence):
  PRICEFEED_SOURCES, PRICEFEED_TRACKED_SYMBOLS, PRICEFEED_RPC_URL,
  PRICEFEED_MAX_RETRIES, PRICEFEED_BREAKER_COOLDOWN_MS, PRICEFEED_CACHE_FALLBACK,
  PRICEFEED_HEALTH_CHECK_INTERVAL_MS, ..., API_KEY_ZEROX, API_KEY_COINGECKO, etc.
""",
    )

    try:
        env_config = PriceFeedConfig.from_env()
        default_interval = int(os.environ.get("PRICEFEED_INTERVAL") or "60")
        max_age_env = os.environ.get("PRICEFEED_MAX_AGE")
        default_max_age = float(max_age_env) if max_age_env else None
    except ValueError as e:
        parser.error(f"Invalid environment configuration: {e}")

    parser.add_argument(
        "--symbols",
        type=str,
        help="Comma-separated asset symbols (e.g., eth,btc,link)",
        default=",".join(env_config.tracked_symbols) or "ETH",
    )

    parser.add_argument(
        "--sources",
        type=str,
        help=f"Comma-separated price sources. Available: {', '.join(available_sources)}",
        default=",".join(env_config.sources),
    )

    parser.add_argument(
        "--rpc-url",
        dest="rpc_url",
        type=str,
        help="Ethereum JSON-RPC endpoint for on-chain sources",
        default=env_config.rpc_url,
    )

    parser.add_argument(
        "--interval",
        type=int,
        help="Seconds between updates in watch mode (minimum: 1, default: 60)",
        default=default_interval,
    )

    parser.add_argument(
        "--max-age",
        dest="max_age",
        type=float,
        help="Reject quotes older than this many seconds (default: no limit)",
        default=default_max_age,
    )

    parser.add_argument(
        "--max-retries",
        dest="max_retries",
        type=int,
        help=f"Retries per source call (default: {env_config.max_retries})",
        default=env_config.max_retries,
    )

    parser.add_argument(
        "--no-cache-fallback",
        dest="cache_fallback",
        action="store_false",
        default=env_config.enable_cache_fallback,
        help="Do not serve cached prices when every live source fails",
    )

    parser.add_argument(
        "--api-keys",
        dest="api_keys",
        type=str,
        help="Comma-separated API keys (e.g., zerox=abc,coingecko=demo:xyz)",
        default=os.environ.get("API_KEYS"),
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Print prices once and exit",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.interval < 1:
        parser.error("--interval must be at least 1 second")

    if args.max_retries < 0:
        parser.error("--max-retries must not be negative")

    symbols = [s.strip().upper() for s in args.symbols.split(",") if s.strip()]
    sources = [s.strip().lower() for s in args.sources.split(",") if s.strip()]

    if not symbols:
        parser.error("At least one symbol must be specified")

    invalid_sources = [s for s in sources if s not in available_sources]
    if invalid_sources:
        parser.error(
            f"Unknown sources: {invalid_sources}. "
            f"Available: {', '.join(available_sources)}"
        )

    # Parse API keys (CLI + environment)
    api_keys = parse_env_api_keys()
    api_keys.update(parse_api_keys(args.api_keys))

    env_config.sources = sources
    # Watch mode refreshes through subscriptions, not the batch update task
    env_config.tracked_symbols = []
    env_config.rpc_url = args.rpc_url
    env_config.max_retries = args.max_retries
    env_config.enable_cache_fallback = args.cache_fallback
    env_config.api_keys = api_keys

    try:
        config = PriceFeedConfig(**vars(env_config))
    except ValueError as e:
        parser.error(str(e))

    # Log configuration
    logger.info("=" * 60)
    logger.info("Resilient Price Feed")
    logger.info("=" * 60)
    logger.info(f"Symbols:           {', '.join(symbols)}")
    logger.info(f"Sources:           {', '.join(config.sources)}")
    logger.info(f"Cache Fallback:    {'enabled' if config.enable_cache_fallback else 'disabled'}")
    logger.info(f"Max Retries:       {config.max_retries}")
    logger.info(f"Max Age:           {args.max_age}s" if args.max_age else "Max Age:           unlimited")
    if not args.once:
        logger.info(f"Update Interval:   {args.interval}s")
    if api_keys:
        logger.info(f"API Keys:          {', '.join(api_keys.keys())}")
    logger.info("=" * 60)

    service = PriceFeedService(config)
    try:
        if args.once:
            sys.exit(asyncio.run(print_once(service, symbols, args.max_age)))
        asyncio.run(watch(service, symbols, args.interval * 1000))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
