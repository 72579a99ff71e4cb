"""Realtime Binance combined-stream ingestion over websockets."""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .aggregator import BarAggregator
from .config.settings import RealtimeConfig
from .models import decode_depth, decode_stream_kline, decode_stream_trade
from .symbols import SymbolUniverse
from .utils.retry import exponential_backoff, wait_for_stop

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60.0


def stream_name(symbol: str, stream_type: str, interval: str) -> str:
    symbol = symbol.lower()
    if stream_type == "kline":
        return f"{symbol}@kline_{interval}"
    if stream_type == "trade":
        return f"{symbol}@trade"
    if stream_type == "depth":
        return f"{symbol}@depth20@100ms"
    raise ValueError(f"Unsupported stream type: {stream_type}")


def build_stream_url(base_url: str, streams: List[str]) -> str:
    """Combined-stream address, e.g. ``wss://host/stream?streams=a@trade/b@trade``."""
    separator = "&" if "?" in base_url else "?"
    return f"{base_url}{separator}streams={'/'.join(streams)}"


def symbol_from_stream(stream: str) -> str:
    return stream.split("@", 1)[0].upper() if stream else ""


class RealtimeStreamManager:
    """
    Opens one combined websocket per configured stream type covering the
    whole working set, decodes frames and forwards records to the sink.

    Each connection has a reader task; the owning task sends a keepalive
    ping every ``keepalive_interval_seconds`` until the stop event fires or
    the reader ends. The socket is closed on every exit path.
    """

    def __init__(
        self,
        universe: SymbolUniverse,
        client,
        sink,
        aggregator: Optional[BarAggregator],
        config: RealtimeConfig,
        stop_event: Optional[asyncio.Event] = None,
        connect: Optional[Callable[..., Any]] = None
    ):
        self.universe = universe
        self.client = client
        self.sink = sink
        self.aggregator = aggregator
        self.config = config
        self.stop_event = stop_event or asyncio.Event()
        self._connect = connect or websockets.connect

        self._handlers = {
            "kline": self._handle_kline,
            "trade": self._handle_trade,
            "depth": self._handle_depth,
        }

        self.stats: Dict[str, Dict[str, Any]] = {
            stream_type: {
                "connected": False,
                "connection_count": 0,
                "messages_received": 0,
                "messages_forwarded": 0,
                "decode_errors": 0,
                "write_errors": 0,
                "last_message_time": None,
            }
            for stream_type in config.stream_types
        }

    async def run(self):
        logger.info("Starting Binance realtime data feed")

        symbols = self.universe.working_set()
        if not symbols:
            logger.error("No symbols available for realtime feed")
            return

        tasks = [
            asyncio.create_task(self.run_stream(stream_type, symbols), name=f"realtime-{stream_type}")
            for stream_type in self.config.stream_types
        ]
        try:
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            if self.config.flush_on_shutdown and self.aggregator is not None:
                await self.aggregator.flush_all()

        logger.info("Realtime data feed stopped")

    async def run_stream(self, stream_type: str, symbols: List[str]):
        """Run one stream type until stopped (or until it fails without reconnect)."""
        if stream_type not in self._handlers:
            logger.error(f"Unsupported stream type: {stream_type}")
            return

        streams = [stream_name(s, stream_type, self.config.update_freq) for s in symbols]
        url = build_stream_url(self.client.websocket_url, streams)

        while not self.stop_event.is_set():
            connected = await self._run_connection(stream_type, url, len(symbols))

            if self.stop_event.is_set():
                break
            if not self.config.reconnect:
                return
            if not connected:
                logger.error(
                    f"Giving up on {stream_type} stream after {self.config.max_retries} reconnect attempts"
                )
                return

            delay = self.config.retry_delay_seconds
            logger.info(f"Reconnecting {stream_type} stream in {delay:.1f}s")
            if await wait_for_stop(self.stop_event, delay):
                break

        logger.info(f"{stream_type.capitalize()} stream cancelled")

    async def _dial(self, url: str):
        if not self.config.reconnect:
            return await self._connect(url, ping_interval=None)

        return await exponential_backoff(
            lambda: self._connect(url, ping_interval=None),
            max_attempts=self.config.max_retries + 1,
            initial_delay=self.config.retry_delay_seconds,
            max_delay=MAX_BACKOFF_SECONDS,
            stop_event=self.stop_event,
        )

    async def _run_connection(self, stream_type: str, url: str, symbol_count: int) -> bool:
        """One dial-read-keepalive session. Returns False if the dial failed."""
        stats = self.stats[stream_type]

        try:
            ws = await self._dial(url)
        except Exception as e:
            logger.error(f"Failed to connect to WebSocket for {stream_type} streams: {e}")
            return False

        stats["connected"] = True
        stats["connection_count"] += 1
        logger.info(f"Connected to Binance WebSocket for {symbol_count} {stream_type} streams")

        reader = asyncio.create_task(self._read_messages(stream_type, ws))
        try:
            await self._keepalive(stream_type, ws, reader)
        except Exception as e:
            logger.error(f"WebSocket session for {stream_type} ended with error: {e}")
        finally:
            stats["connected"] = False
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"Error closing {stream_type} WebSocket: {e}")
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        return True

    async def _keepalive(self, stream_type: str, ws, reader: asyncio.Task):
        interval = self.config.keepalive_interval_seconds
        stop = asyncio.ensure_future(self.stop_event.wait())
        try:
            while not self.stop_event.is_set() and not reader.done():
                try:
                    await ws.ping()
                except Exception as e:
                    logger.error(f"Failed to send ping on {stream_type} stream: {e}")
                    return

                await asyncio.wait({stop, reader}, timeout=interval, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()

        if reader.done() and not self.stop_event.is_set():
            logger.warning(f"{stream_type} reader ended; closing connection")

    async def _read_messages(self, stream_type: str, ws):
        stats = self.stats[stream_type]
        handler = self._handlers[stream_type]

        while not self.stop_event.is_set():
            try:
                message = await ws.recv()
            except ConnectionClosed as e:
                if not self.stop_event.is_set():
                    logger.error(f"Failed to read WebSocket message: {e}")
                return
            except Exception as e:
                logger.error(f"Failed to read WebSocket message: {e}")
                return

            stats["messages_received"] += 1
            stats["last_message_time"] = time.time()

            try:
                envelope = json.loads(message)
                data = envelope.get("data")
                if not isinstance(data, dict):
                    raise ValueError("frame has no data object")
            except (ValueError, AttributeError) as e:
                stats["decode_errors"] += 1
                logger.error(f"Failed to unmarshal WebSocket message: {e}")
                continue

            try:
                if await handler(envelope.get("stream", ""), data):
                    stats["messages_forwarded"] += 1
            except Exception as e:
                stats["write_errors"] += 1
                logger.error(f"Failed to write realtime {stream_type} data: {e}")

    async def _handle_kline(self, stream: str, data: Dict[str, Any]) -> bool:
        kline = data.get("k")
        if not isinstance(kline, dict) or not kline.get("x"):
            return False

        symbol = str(data.get("s") or kline.get("s") or symbol_from_stream(stream)).upper()
        bar = decode_stream_kline(kline)

        try:
            await self.sink.write_bars(symbol, self.config.update_freq, [bar])
        except Exception as e:
            logger.error(f"Failed to write realtime kline for {symbol}: {e}")

        if self.aggregator is not None:
            await self.aggregator.ingest(symbol, bar)
        return True

    async def _handle_trade(self, stream: str, data: Dict[str, Any]) -> bool:
        symbol = str(data.get("s") or symbol_from_stream(stream)).upper()
        await self.sink.write_trades(symbol, [decode_stream_trade(data)])
        return True

    async def _handle_depth(self, stream: str, data: Dict[str, Any]) -> bool:
        symbol = str(data.get("s") or symbol_from_stream(stream)).upper()
        await self.sink.write_depth(symbol, decode_depth(data))
        return True

    async def health_check(self) -> Dict[str, Any]:
        issues = []
        now = time.time()
        for stream_type, stats in self.stats.items():
            if not stats["connected"]:
                issues.append(f"{stream_type} stream not connected")
            last = stats["last_message_time"]
            if last and now - last > 60:
                issues.append(f"No {stream_type} messages for {now - last:.0f}s")

        return {
            "status": "healthy" if not issues else "degraded",
            "issues": issues,
            "streams": {k: dict(v) for k, v in self.stats.items()},
        }
