"""Unit tests for the upstream price sources."""

import json
from collections.abc import Callable, Iterator

import httpx
import pytest
from eth_abi import encode
from web3 import Web3

from pricefeed.src.SourceDescriptor import SourceKind
from pricefeed.src.errors import ClassifiedError, ErrorKind, TransportError
from pricefeed.src.sources import (
    BaseSource,
    ChainlinkSource,
    CoinbaseSource,
    CoinGeckoSource,
    SourceResponse,
    ZeroExSource,
    get_available_sources,
    get_source,
    register_source,
)

from conftest import START_MS

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def mock_http() -> Iterator[Callable[[Handler], list[httpx.Request]]]:
    """Route the shared client through a handler, recording every request."""

    def install(handler: Handler) -> list[httpx.Request]:
        seen: list[httpx.Request] = []

        def record(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        BaseSource.set_shared_client(httpx.AsyncClient(transport=httpx.MockTransport(record)))
        return seen

    yield install
    BaseSource.set_shared_client(None)


def round_data(answer: int, updated_at: int) -> str:
    encoded = encode(
        ["uint80", "int256", "uint256", "uint256", "uint80"],
        [110680464442257320000, answer, updated_at, updated_at, 110680464442257320000],
    )
    return "0x" + encoded.hex()


class TestRegistry:
    """Test the source registry helpers."""

    def test_available_sources(self) -> None:
        """Every live source should be registered; the cache source is not."""
        assert get_available_sources() == ["chainlink", "coinbase", "coingecko", "zerox"]

    def test_get_source(self) -> None:
        """Sources should be built with their class defaults."""
        source = get_source("zerox", api_key="key")
        assert isinstance(source, ZeroExSource)
        assert source.descriptor.kind is SourceKind.DEX
        assert source.descriptor.priority == ZeroExSource.DEFAULT_PRIORITY
        assert source.has_api_key

    def test_unknown_source(self) -> None:
        """Unknown names should raise ValueError listing what exists."""
        with pytest.raises(ValueError, match="Available: chainlink"):
            get_source("bitstamp")

    def test_register_requires_name(self) -> None:
        """Sources without a name should not register."""
        with pytest.raises(ValueError, match="must define a 'name'"):

            @register_source
            class Nameless(CoinbaseSource):
                name = ""


class TestSourceResponse:
    """Test response wrapping."""

    def test_headers_lower_cased(self) -> None:
        """Header names should be case-insensitive."""
        response = SourceResponse(200, {"Retry-After": "3"})
        assert response.header("retry-after") == "3"
        assert response.header("RETRY-AFTER") == "3"

    def test_from_httpx_text_body(self) -> None:
        """Non-JSON bodies should be kept as text."""
        response = SourceResponse.from_httpx(httpx.Response(502, text="Bad gateway"))
        assert response.status_code == 502
        assert response.body == "Bad gateway"
        assert not response.is_success


class TestChainlinkSource:
    """Test the Chainlink oracle source."""

    @pytest.mark.asyncio()
    async def test_latest_round_data(self, mock_http) -> None:
        """The answer should be scaled and updatedAt used as the timestamp."""
        updated_at = START_MS // 1000 - 120

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "result": round_data(312_345_000_000, updated_at)}
            )

        seen = mock_http(handler)
        source = ChainlinkSource(rpc_url="http://node:8545")
        response = await source.request("eth")
        quote = source.parse_quote("ETH", response, START_MS)

        payload = json.loads(seen[0].content)
        assert seen[0].method == "POST"
        assert (seen[0].url.host, seen[0].url.port) == ("node", 8545)
        assert payload["method"] == "eth_call"
        assert payload["params"][0] == {
            "to": Web3.to_checksum_address(ChainlinkSource.FEEDS["ETH"].address),
            "data": "0xfeaf968c",
        }
        assert quote.price_usd == pytest.approx(3123.45)
        assert quote.timestamp_ms == updated_at * 1000
        assert quote.staleness_seconds == 120
        assert quote.heartbeat_seconds == 3600
        assert quote.source == "chainlink"

    @pytest.mark.asyncio()
    async def test_stablecoin_heartbeat(self, mock_http) -> None:
        """Stablecoin feeds should carry a daily heartbeat."""
        mock_http(lambda request: httpx.Response(200, json={"result": round_data(100_000_000, 0)}))
        source = ChainlinkSource()
        quote = source.parse_quote("USDC", await source.request("USDC"), START_MS)
        assert quote.price_usd == pytest.approx(1.0)
        assert quote.heartbeat_seconds == 86400

    @pytest.mark.asyncio()
    async def test_rpc_error(self, mock_http) -> None:
        """JSON-RPC errors should be invalid responses."""
        mock_http(
            lambda request: httpx.Response(
                200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "nope"}}
            )
        )
        source = ChainlinkSource()
        response = await source.request("BTC")
        with pytest.raises(ClassifiedError) as exc_info:
            source.parse_quote("BTC", response, START_MS)
        assert exc_info.value.kind is ErrorKind.INVALID_RESPONSE

    @pytest.mark.asyncio()
    async def test_empty_result(self, mock_http) -> None:
        """An empty eth_call result should be an invalid response."""
        mock_http(lambda request: httpx.Response(200, json={"result": "0x"}))
        source = ChainlinkSource()
        with pytest.raises(ClassifiedError, match="empty eth_call result"):
            source.parse_quote("ETH", await source.request("ETH"), START_MS)

    @pytest.mark.asyncio()
    async def test_unsupported_symbol(self, mock_http) -> None:
        """Unknown feeds should 404 without a network call."""
        seen = mock_http(lambda request: httpx.Response(500))
        source = ChainlinkSource()
        assert not source.supports_symbol("DOGE")
        response = await source.request("DOGE")
        assert response.status_code == 404
        assert seen == []


class TestZeroExSource:
    """Test the 0x DEX aggregator source."""

    @pytest.mark.asyncio()
    async def test_price(self, mock_http) -> None:
        """One whole token should be quoted against USDC."""
        seen = mock_http(lambda request: httpx.Response(200, json={"price": "3120.5"}))
        source = ZeroExSource(api_key="secret")
        response = await source.request("BTC")
        quote = source.parse_quote("BTC", response, START_MS)

        request = seen[0]
        assert request.url.path == "/swap/v1/price"
        assert request.url.params["sellToken"] == "WBTC"
        assert request.url.params["buyToken"] == "USDC"
        assert request.url.params["sellAmount"] == str(10**8)
        assert request.headers["0x-api-key"] == "secret"
        assert quote.price_usd == 3120.5
        assert quote.timestamp_ms == START_MS
        assert quote.heartbeat_seconds == 300

    @pytest.mark.asyncio()
    async def test_no_key_header_without_key(self, mock_http) -> None:
        """The API key header should only be sent when configured."""
        seen = mock_http(lambda request: httpx.Response(200, json={"price": "1"}))
        await ZeroExSource().request("ETH")
        assert "0x-api-key" not in seen[0].headers


class TestCoinGeckoSource:
    """Test the CoinGecko source."""

    @pytest.mark.asyncio()
    async def test_free_tier(self, mock_http) -> None:
        """Without a key the free API should be used."""
        seen = mock_http(
            lambda request: httpx.Response(
                200, json={"ethereum": {"usd": 3001.25, "last_updated_at": START_MS // 1000 - 30}}
            )
        )
        source = CoinGeckoSource()
        quote = source.parse_quote("ETH", await source.request("ETH"), START_MS)
        assert seen[0].url.host == "api.coingecko.com"
        assert seen[0].url.params["ids"] == "ethereum"
        assert seen[0].url.params["include_last_updated_at"] == "true"
        assert quote.price_usd == 3001.25
        assert quote.staleness_seconds == 30

    @pytest.mark.asyncio()
    async def test_demo_and_pro_keys(self, mock_http) -> None:
        """Demo and pro keys should pick their host and header."""
        seen = mock_http(lambda request: httpx.Response(200, json={"bitcoin": {"usd": 1}}))
        await CoinGeckoSource(api_key="demo:CG-1").request("BTC")
        await CoinGeckoSource(api_key="pro-key").request("BTC")
        assert seen[0].url.host == "api.coingecko.com"
        assert seen[0].headers["x-cg-demo-api-key"] == "CG-1"
        assert seen[1].url.host == "pro-api.coingecko.com"
        assert seen[1].headers["x-cg-pro-api-key"] == "pro-key"

    def test_missing_coin_is_invalid(self) -> None:
        """A body without the coin should be an invalid response."""
        source = CoinGeckoSource()
        with pytest.raises(ClassifiedError) as exc_info:
            source.parse_quote("ETH", SourceResponse(200, {}, {}), START_MS)
        assert exc_info.value.kind is ErrorKind.INVALID_RESPONSE


class TestCoinbaseSource:
    """Test the Coinbase source."""

    @pytest.mark.asyncio()
    async def test_ticker(self, mock_http) -> None:
        """The ticker price should be parsed."""
        seen = mock_http(lambda request: httpx.Response(200, json={"price": "64000.01"}))
        source = CoinbaseSource()
        quote = source.parse_quote("btc", await source.request("btc"), START_MS)
        assert seen[0].url.path == "/products/BTC-USD/ticker"
        assert quote.price_usd == 64000.01
        assert quote.symbol == "BTC"

    @pytest.mark.asyncio()
    async def test_error_status_returned(self, mock_http) -> None:
        """Non-2xx responses should be returned with their headers."""
        mock_http(
            lambda request: httpx.Response(
                429, headers={"Retry-After": "10"}, json={"message": "slow down"}
            )
        )
        response = await CoinbaseSource().request("ETH")
        assert response.status_code == 429
        assert response.header("retry-after") == "10"
        assert response.body == {"message": "slow down"}

    @pytest.mark.asyncio()
    async def test_transport_errors(self, mock_http) -> None:
        """Connection failures and timeouts should raise TransportError."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        mock_http(refuse)
        with pytest.raises(TransportError) as refused:
            await CoinbaseSource().request("ETH")
        assert not refused.value.timed_out

        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        mock_http(slow)
        with pytest.raises(TransportError) as timed_out:
            await CoinbaseSource().request("ETH")
        assert timed_out.value.timed_out

    def test_non_positive_price(self) -> None:
        """Zero prices should be rejected."""
        with pytest.raises(ClassifiedError, match="invalid price"):
            CoinbaseSource().parse_quote("ETH", SourceResponse(200, {}, {"price": "0"}), START_MS)

    @pytest.mark.parametrize("price", ["NaN", "inf", "-inf"])
    def test_non_finite_price(self, price: str) -> None:
        """NaN and infinite prices should be invalid responses."""
        with pytest.raises(ClassifiedError) as exc_info:
            CoinbaseSource().parse_quote("ETH", SourceResponse(200, {}, {"price": price}), START_MS)
        assert exc_info.value.kind is ErrorKind.INVALID_RESPONSE
