"""Tests for the REST client and rate limiter against a local aiohttp server."""

import asyncio
import time

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from binance_feeder.clients.binance_rest import BinanceRESTClient, RateLimiter
from binance_feeder.config.settings import BinanceConfig
from binance_feeder.exceptions import BinanceAPIError
from binance_feeder.models import Bar

pytestmark = pytest.mark.unit


KLINE_ROWS = [
    [1704067200000, "42000.1", "42050.0", "41990.5", "42010.0", "12.5",
     1704067259999, "525000.0", 321, "6.0", "252000.0", "0"],
    [1704067260000, 42010.0, 42100.0, 42000.0, 42090.0, 3.25,
     1704067319999, 136000.0, 80, 1.5, 63000.0, "0"],
    [1704067320000, "1"],
]


class BinanceStub:
    """Minimal stand-in for the Binance spot REST API."""

    def __init__(self):
        self.requests = []
        self.app = web.Application()
        self.app.router.add_get("/api/v3/klines", self.klines)
        self.app.router.add_get("/api/v3/exchangeInfo", self.exchange_info)
        self.app.router.add_get("/api/v3/depth", self.depth)
        self.app.router.add_get("/api/v3/trades", self.trades)
        self.app.router.add_get("/api/v3/time", self.server_time)

    async def klines(self, request):
        self.requests.append(dict(request.query))
        if request.query.get("symbol") == "BADPAIR":
            return web.json_response({"code": -1121, "msg": "Invalid symbol."}, status=400)
        return web.json_response(KLINE_ROWS)

    async def exchange_info(self, request):
        return web.json_response({
            "symbols": [
                {"symbol": "BTCUSDT", "status": "TRADING", "baseAsset": "BTC",
                 "quoteAsset": "USDT", "isSpotTradingAllowed": True},
                {"symbol": "OLDCOIN", "status": "BREAK", "isSpotTradingAllowed": True},
            ]
        })

    async def depth(self, request):
        self.requests.append(dict(request.query))
        return web.json_response({
            "lastUpdateId": 1027024,
            "bids": [["4.00000000", "431.00000000"]],
            "asks": [["4.00000200", "12.00000000"]],
        })

    async def trades(self, request):
        return web.json_response([
            {"id": 28457, "price": "4.00000100", "qty": "12.00000000",
             "quoteQty": "48.000012", "time": 1499865549590, "isBuyerMaker": True},
        ])

    async def server_time(self, request):
        return web.json_response({"serverTime": 1499827319559})


@pytest_asyncio.fixture
async def binance_stub():
    stub = BinanceStub()
    server = test_utils.TestServer(stub.app)
    await server.start_server()
    stub.base_url = f"http://{server.host}:{server.port}"
    yield stub
    await server.close()


@pytest_asyncio.fixture
async def client(binance_stub):
    config = BinanceConfig(rest_base_url=binance_stub.base_url, rate_limit_requests_per_minute=60_000)
    async with BinanceRESTClient(config) as client:
        yield client


class TestBinanceRESTClient:

    @pytest.mark.asyncio
    async def test_get_klines(self, client, binance_stub):
        bars = await client.get_klines(
            "btcusdt", "1m", start_time=1704067200000, end_time=1704067319999, limit=5000
        )

        assert len(bars) == 3
        assert bars[0].open == 42000.1
        assert bars[0].trade_count == 321
        assert bars[1].close == 42090.0
        assert bars[2] == Bar()

        query = binance_stub.requests[-1]
        assert query["symbol"] == "BTCUSDT"
        assert query["startTime"] == "1704067200000"
        assert query["endTime"] == "1704067319999"
        assert query["limit"] == "1000"

    @pytest.mark.asyncio
    async def test_error_status_raises_with_body(self, client):
        with pytest.raises(BinanceAPIError) as exc_info:
            await client.get_klines("BADPAIR")

        assert exc_info.value.status == 400
        assert "Invalid symbol." in exc_info.value.body
        assert client.stats["errors"] == 1

    @pytest.mark.asyncio
    async def test_get_exchange_info(self, client):
        infos = await client.get_exchange_info()
        assert [i.symbol for i in infos] == ["BTCUSDT", "OLDCOIN"]
        assert [i.is_tradable for i in infos] == [True, False]

    @pytest.mark.asyncio
    async def test_get_depth(self, client, binance_stub):
        depth = await client.get_depth("BTCUSDT", limit=10)
        assert depth.last_update_id == 1027024
        assert depth.bids == ((4.0, 431.0),)
        assert binance_stub.requests[-1]["limit"] == "10"

    @pytest.mark.asyncio
    async def test_get_recent_trades(self, client):
        trades = await client.get_recent_trades("BTCUSDT", limit=1)
        assert len(trades) == 1
        assert trades[0].id == 28457

    @pytest.mark.asyncio
    async def test_get_server_time(self, client):
        assert await client.get_server_time() == 1499827319559

    @pytest.mark.asyncio
    async def test_request_outside_context_manager(self):
        client = BinanceRESTClient(BinanceConfig())
        with pytest.raises(RuntimeError):
            await client.get_server_time()


class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_spacing_between_calls(self):
        limiter = RateLimiter(0.05)

        started = time.monotonic()
        for _ in range(4):
            await limiter.acquire()
        elapsed = time.monotonic() - started

        # First call is free, the next three each wait one interval
        assert elapsed >= 0.15 - 0.01

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_serialized(self):
        limiter = RateLimiter(0.05)
        stamps = []

        async def call():
            await limiter.acquire()
            stamps.append(time.monotonic())

        await asyncio.gather(*(call() for _ in range(3)))
        stamps.sort()

        assert stamps[1] - stamps[0] >= 0.05 - 0.01
        assert stamps[2] - stamps[1] >= 0.05 - 0.01

    def test_per_minute(self):
        assert RateLimiter.per_minute(1200).interval == pytest.approx(0.05)
