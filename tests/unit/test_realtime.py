"""Tests for the realtime combined-stream manager."""

import asyncio

import pytest

from binance_feeder.aggregator import BarAggregator
from binance_feeder.realtime import RealtimeStreamManager, build_stream_url, stream_name
from binance_feeder.symbols import SymbolUniverse
from tests.conftest import (
    FakeConnector,
    FakeKlineClient,
    FakeWebSocket,
    RecordingSink,
    stream_frame,
    wait_until,
)

pytestmark = pytest.mark.unit


def make_manager(config, connector, sink=None, aggregator=None, symbols=("BTCUSDT", "ETHUSDT"), stop_event=None):
    sink = sink or RecordingSink()
    return RealtimeStreamManager(
        SymbolUniverse(symbols),
        FakeKlineClient(),
        sink,
        aggregator,
        config,
        stop_event or asyncio.Event(),
        connect=connector,
    )


class TestStreamNames:

    @pytest.mark.parametrize("stream_type, expected", [
        ("kline", "btcusdt@kline_1m"),
        ("trade", "btcusdt@trade"),
        ("depth", "btcusdt@depth20@100ms"),
    ])
    def test_stream_name(self, stream_type, expected):
        assert stream_name("BTCUSDT", stream_type, "1m") == expected

    def test_unknown_stream_type(self):
        with pytest.raises(ValueError):
            stream_name("BTCUSDT", "bookTicker", "1m")

    def test_combined_url(self):
        url = build_stream_url("wss://stream.binance.com:9443/stream", ["btcusdt@trade", "ethusdt@trade"])
        assert url == "wss://stream.binance.com:9443/stream?streams=btcusdt@trade/ethusdt@trade"


class TestRealtimeStreamManager:

    @pytest.mark.asyncio
    async def test_dials_one_combined_stream_per_type(self, realtime_config):
        realtime_config.stream_types = ["kline", "trade"]
        stop_event = asyncio.Event()
        connector = FakeConnector(FakeWebSocket(), FakeWebSocket())
        manager = make_manager(realtime_config, connector, stop_event=stop_event)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: len(connector.urls) == 2)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert sorted(connector.urls) == [
            "wss://stream.test/stream?streams=btcusdt@kline_1m/ethusdt@kline_1m",
            "wss://stream.test/stream?streams=btcusdt@trade/ethusdt@trade",
        ]

    @pytest.mark.asyncio
    async def test_only_final_klines_are_forwarded(self, realtime_config, kline_event):
        open_event = dict(kline_event, k=dict(kline_event["k"], x=False))
        ws = FakeWebSocket([
            stream_frame("btcusdt@kline_1m", open_event),
            stream_frame("btcusdt@kline_1m", kline_event),
        ])
        sink = RecordingSink()
        aggregator = BarAggregator(sink, "1m", buffer_size=1)
        stop_event = asyncio.Event()
        manager = make_manager(realtime_config, FakeConnector(ws), sink, aggregator, stop_event=stop_event)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: manager.stats["kline"]["messages_received"] == 2)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert list(sink.bars) == ["BTCUSDT"]
        assert sink.bars["BTCUSDT"][0].close == 42010.0
        assert sink.bar_cadences == ["1m"]
        assert len(sink.aggregated) == 1
        assert manager.stats["kline"]["messages_forwarded"] == 1

    @pytest.mark.asyncio
    async def test_trade_and_depth_dispatch(self, realtime_config, trade_event, depth_event):
        realtime_config.stream_types = ["trade", "depth"]
        trade_ws = FakeWebSocket([stream_frame("btcusdt@trade", trade_event)])
        depth_ws = FakeWebSocket([stream_frame("ethusdt@depth20@100ms", depth_event)])
        sink = RecordingSink()
        stop_event = asyncio.Event()
        manager = make_manager(realtime_config, FakeConnector(trade_ws, depth_ws), sink, stop_event=stop_event)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: sink.trades and sink.depth)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        symbol, trades = sink.trades[0]
        assert symbol == "BTCUSDT"
        assert trades[0].id == 12345

        # Partial book events carry no symbol; it comes from the stream name
        symbol, depth = sink.depth[0]
        assert symbol == "ETHUSDT"
        assert depth.last_update_id == 160

    @pytest.mark.asyncio
    async def test_malformed_frames_are_skipped(self, realtime_config, kline_event):
        ws = FakeWebSocket([
            "not json",
            '{"stream": "btcusdt@kline_1m"}',
            stream_frame("btcusdt@kline_1m", kline_event),
        ])
        sink = RecordingSink()
        stop_event = asyncio.Event()
        manager = make_manager(realtime_config, FakeConnector(ws), sink, stop_event=stop_event)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: sink.bars)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert manager.stats["kline"]["decode_errors"] == 2
        assert len(sink.bars["BTCUSDT"]) == 1

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_reader(self, realtime_config, kline_event):
        sink = RecordingSink(fail_bars_for={"BTCUSDT"})
        ws = FakeWebSocket([
            stream_frame("btcusdt@kline_1m", kline_event),
            stream_frame("ethusdt@kline_1m", dict(kline_event, s="ETHUSDT")),
        ])
        stop_event = asyncio.Event()
        manager = make_manager(realtime_config, FakeConnector(ws), sink, stop_event=stop_event)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: sink.bars)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert list(sink.bars) == ["ETHUSDT"]

    @pytest.mark.asyncio
    async def test_dial_failure_returns(self, realtime_config):
        connector = FakeConnector(error=OSError("connection refused"))
        manager = make_manager(realtime_config, connector)

        await asyncio.wait_for(manager.run(), timeout=1.0)

        assert len(connector.urls) == 1
        assert manager.stats["kline"]["connection_count"] == 0

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_after_max_retries(self, realtime_config):
        realtime_config.reconnect = True
        realtime_config.max_retries = 2
        realtime_config.retry_delay = "1ms"
        connector = FakeConnector(error=OSError("connection refused"))
        manager = make_manager(realtime_config, connector)

        await asyncio.wait_for(manager.run(), timeout=2.0)

        assert len(connector.urls) == 3

    @pytest.mark.asyncio
    async def test_server_close_ends_stream_without_reconnect(self, realtime_config, kline_event):
        ws = FakeWebSocket([stream_frame("btcusdt@kline_1m", kline_event)], close_when_drained=True)
        sink = RecordingSink()
        manager = make_manager(realtime_config, FakeConnector(ws), sink)

        await asyncio.wait_for(manager.run(), timeout=1.0)

        assert ws.closed
        assert len(sink.bars["BTCUSDT"]) == 1
        assert manager.stats["kline"]["connected"] is False

    @pytest.mark.asyncio
    async def test_reconnect_after_server_close(self, realtime_config, kline_event):
        realtime_config.reconnect = True
        realtime_config.retry_delay = "1ms"
        first = FakeWebSocket([stream_frame("btcusdt@kline_1m", kline_event)], close_when_drained=True)
        second = FakeWebSocket()
        connector = FakeConnector(first, second)
        stop_event = asyncio.Event()
        manager = make_manager(realtime_config, connector, stop_event=stop_event)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: manager.stats["kline"]["connection_count"] == 2)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert first.closed and second.closed

    @pytest.mark.asyncio
    async def test_stop_closes_connection_and_pings(self, realtime_config):
        ws = FakeWebSocket()
        stop_event = asyncio.Event()
        manager = make_manager(realtime_config, FakeConnector(ws), stop_event=stop_event)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: ws.pings >= 2)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert ws.closed
        assert manager.stats["kline"]["connected"] is False

    @pytest.mark.asyncio
    async def test_flush_on_shutdown(self, realtime_config, kline_event):
        realtime_config.flush_on_shutdown = True
        realtime_config.buffer_size = 10
        ws = FakeWebSocket([stream_frame("btcusdt@kline_1m", kline_event)])
        sink = RecordingSink()
        aggregator = BarAggregator(sink, "1m", buffer_size=10)
        stop_event = asyncio.Event()
        manager = make_manager(realtime_config, FakeConnector(ws), sink, aggregator, stop_event=stop_event)

        task = asyncio.create_task(manager.run())
        await wait_until(lambda: sink.bars)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert len(sink.aggregated) == 1

    @pytest.mark.asyncio
    async def test_empty_universe(self, realtime_config):
        connector = FakeConnector(FakeWebSocket())
        manager = make_manager(realtime_config, connector, symbols=())

        await asyncio.wait_for(manager.run(), timeout=1.0)

        assert connector.urls == []

    @pytest.mark.asyncio
    async def test_health_check(self, realtime_config):
        manager = make_manager(realtime_config, FakeConnector())
        health = await manager.health_check()
        assert health["status"] == "degraded"
        assert "kline stream not connected" in health["issues"]
