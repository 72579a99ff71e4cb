"""Pytest configuration and shared fixtures."""

import asyncio
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest
from websockets.exceptions import ConnectionClosedOK

from binance_feeder.config.settings import BackfillConfig, RealtimeConfig
from binance_feeder.models import Bar


def make_bar(open_time: int, **overrides) -> Bar:
    """Bar with sensible values, one minute long."""
    values = dict(
        open_time=open_time,
        open=100.0,
        high=110.0,
        low=90.0,
        close=105.0,
        volume=1.0,
        close_time=open_time + 59_999,
        quote_volume=100.0,
        trade_count=10,
        taker_buy_base=0.5,
        taker_buy_quote=50.0,
    )
    values.update(overrides)
    return Bar(**values)


async def wait_until(predicate, timeout: float = 2.0):
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.01)


class RecordingSink:
    """Sink double that records every call; can be told to fail."""

    def __init__(self, fail_bars_for: Optional[set] = None):
        self.fail_bars_for = fail_bars_for or set()
        self.bars: Dict[str, List[Bar]] = defaultdict(list)
        self.bar_cadences: List[str] = []
        self.aggregated: List[tuple] = []
        self.trades: List[tuple] = []
        self.depth: List[tuple] = []

    async def write_bars(self, symbol, cadence, bars):
        if symbol in self.fail_bars_for:
            raise RuntimeError(f"store rejected {symbol}")
        self.bars[symbol].extend(bars)
        self.bar_cadences.append(cadence)

    async def write_aggregated(self, symbol, timeframe, bars):
        self.aggregated.append((symbol, timeframe, list(bars)))

    async def write_trades(self, symbol, trades):
        self.trades.append((symbol, list(trades)))

    async def write_depth(self, symbol, depth):
        self.depth.append((symbol, depth))


class FakeKlineClient:
    """REST client double serving generated one-minute bars per window."""

    websocket_url = "wss://stream.test/stream"

    def __init__(self, fail_symbols: Optional[set] = None, delay: float = 0.0):
        self.fail_symbols = fail_symbols or set()
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def get_klines(self, symbol, interval="1m", start_time=None, end_time=None, limit=1000):
        self.calls.append(
            {"symbol": symbol, "interval": interval, "start_time": start_time,
             "end_time": end_time, "limit": limit}
        )
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if symbol in self.fail_symbols:
                raise RuntimeError(f"API request failed: 500 for {symbol}")
            return [make_bar(t) for t in range(start_time, end_time + 1, 60_000)]
        finally:
            self.active -= 1


class FakeWebSocket:
    """
    Websocket double. ``recv`` hands out queued frames, then blocks until the
    socket is closed (or raises straight away when ``close_when_drained``).
    """

    def __init__(self, frames=(), close_when_drained: bool = False):
        self.frames = list(frames)
        self.close_when_drained = close_when_drained
        self.closed = False
        self.pings = 0
        self._closed_event = asyncio.Event()

    async def recv(self):
        if self.frames:
            return self.frames.pop(0)
        if not self.close_when_drained:
            await self._closed_event.wait()
        raise ConnectionClosedOK(None, None)

    async def ping(self):
        self.pings += 1

    async def close(self):
        self.closed = True
        self._closed_event.set()


class FakeConnector:
    """Stands in for ``websockets.connect``; hands out prepared sockets in order."""

    def __init__(self, *sockets, error: Optional[Exception] = None):
        self.sockets = list(sockets)
        self.error = error
        self.urls: List[str] = []

    async def __call__(self, url, **kwargs):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return self.sockets.pop(0)


def stream_frame(stream: str, data: Dict[str, Any]) -> str:
    return json.dumps({"stream": stream, "data": data})


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fake_client() -> FakeKlineClient:
    return FakeKlineClient()


@pytest.fixture
def backfill_config() -> BackfillConfig:
    return BackfillConfig(
        enabled=True,
        start_time="2024-01-01T00:00:00Z",
        end_time="2024-01-01T01:00:00Z",
        batch_size=20,
        parallelism=2,
        interval="1m",
        batch_delay_seconds=0,
    )


@pytest.fixture
def realtime_config() -> RealtimeConfig:
    return RealtimeConfig(
        enabled=True,
        stream_types=["kline"],
        update_freq="1m",
        buffer_size=2,
        keepalive_interval_seconds=0.05,
    )


@pytest.fixture
def kline_event() -> Dict[str, Any]:
    """Websocket kline event for a closed bar."""
    return {
        "e": "kline",
        "E": 1704067260000,
        "s": "BTCUSDT",
        "k": {
            "t": 1704067200000,
            "T": 1704067259999,
            "s": "BTCUSDT",
            "i": "1m",
            "o": "42000.10",
            "c": "42010.00",
            "h": "42050.00",
            "l": "41990.50",
            "v": "12.5",
            "n": 321,
            "x": True,
            "q": "525000.0",
            "V": "6.0",
            "Q": "252000.0",
        },
    }


@pytest.fixture
def trade_event() -> Dict[str, Any]:
    return {
        "e": "trade",
        "E": 1704067200123,
        "s": "BTCUSDT",
        "t": 12345,
        "p": "42000.50",
        "q": "0.1",
        "T": 1704067200120,
        "m": False,
    }


@pytest.fixture
def depth_event() -> Dict[str, Any]:
    """Partial book depth event (``@depth20@100ms``); carries no symbol field."""
    return {
        "lastUpdateId": 160,
        "bids": [["42000.00", "0.5"], ["41999.99", "1.0"]],
        "asks": [["42000.01", "0.3"]],
    }
