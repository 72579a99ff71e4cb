"""Sink that turns normalized records into column series batches."""

import logging
from typing import Any, Dict, List, Optional

from ..exceptions import SinkWriteError
from ..models import Bar, DepthSnapshot, Trade
from ..timeframes import to_timeframe
from .stores import ColumnSeries, TimeBucketKey

logger = logging.getLogger(__name__)

OHLCV_GROUP = "OHLCV"
TRADE_GROUP = "Trade"
TRADE_TIMEFRAME = "1Min"

# Column layout per attribute group
DATA_SHAPES = {
    OHLCV_GROUP: ("Epoch", "Open", "High", "Low", "Close", "Volume"),
    TRADE_GROUP: ("Epoch", "Nanosecond", "Price", "Size", "Exchange", "Tape"),
}

EXCHANGE_CODE = "B"  # Binance
TAPE_CODE = "A"  # spot


class MarketDataWriter:
    """
    Writes bars, trades and depth to a store keyed by symbol/timeframe/group.

    Cadences are mapped to storage timeframes before any column is built, so
    an unmapped cadence raises InvalidTimeframeError and nothing is written.
    Store failures surface as SinkWriteError; callers log and move on.
    """

    def __init__(self, store):
        self.store = store
        self.stats = {
            "bars_written": 0,
            "trades_written": 0,
            "aggregated_written": 0,
            "depth_received": 0,
            "errors": 0,
        }

    async def write_bars(self, symbol: str, cadence: str, bars: List[Bar]) -> None:
        if not bars:
            return

        key = TimeBucketKey(symbol, to_timeframe(cadence), OHLCV_GROUP)
        await self._write(key, self._ohlcv_series(bars))
        self.stats["bars_written"] += len(bars)
        logger.info(f"Wrote {len(bars)} klines for {symbol}")

    async def write_aggregated(self, symbol: str, timeframe: str, bars: List[Bar]) -> None:
        if not bars:
            return

        key = TimeBucketKey(symbol, to_timeframe(timeframe), OHLCV_GROUP)
        await self._write(key, self._ohlcv_series(bars))
        self.stats["aggregated_written"] += len(bars)
        logger.info(f"Wrote {len(bars)} aggregated bars for {symbol}/{timeframe}")

    async def write_trades(self, symbol: str, trades: List[Trade]) -> None:
        if not trades:
            return

        epoch, nanosecond = [], []
        for trade in trades:
            seconds, millis = divmod(trade.timestamp_ms, 1000)
            epoch.append(seconds)
            nanosecond.append(millis * 1_000_000)

        series = ColumnSeries()
        series.add_column("Epoch", epoch)
        series.add_column("Nanosecond", nanosecond)
        series.add_column("Price", [t.price for t in trades])
        series.add_column("Size", [t.quantity for t in trades])
        series.add_column("Exchange", [EXCHANGE_CODE] * len(trades))
        series.add_column("Tape", [TAPE_CODE] * len(trades))

        key = TimeBucketKey(symbol, TRADE_TIMEFRAME, TRADE_GROUP)
        await self._write(key, series)
        self.stats["trades_written"] += len(trades)
        logger.debug(f"Wrote {len(trades)} trades for {symbol}")

    async def write_depth(self, symbol: str, depth: Optional[DepthSnapshot]) -> None:
        # TODO: persist depth once a book attribute group exists in the store schema
        if depth is None:
            return
        self.stats["depth_received"] += 1
        logger.info(
            f"Received depth data for {symbol}: {len(depth.bids)} bids, {len(depth.asks)} asks"
        )

    async def _write(self, key: TimeBucketKey, series: ColumnSeries) -> None:
        try:
            await self.store.write(key, series)
        except SinkWriteError:
            self.stats["errors"] += 1
            raise
        except Exception as e:
            self.stats["errors"] += 1
            raise SinkWriteError(f"failed to write {key}: {e}") from e

    @staticmethod
    def _ohlcv_series(bars: List[Bar]) -> ColumnSeries:
        series = ColumnSeries()
        series.add_column("Epoch", [bar.open_time // 1000 for bar in bars])
        series.add_column("Open", [bar.open for bar in bars])
        series.add_column("High", [bar.high for bar in bars])
        series.add_column("Low", [bar.low for bar in bars])
        series.add_column("Close", [bar.close for bar in bars])
        series.add_column("Volume", [bar.volume for bar in bars])
        return series

    async def health_check(self) -> Dict[str, Any]:
        store_health = await self.store.health_check()
        return {
            "status": store_health.get("status", "unknown"),
            "store": store_health,
            "stats": dict(self.stats),
        }
