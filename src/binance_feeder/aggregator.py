"""Count-based bar aggregation for the realtime kline stream."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .models import Bar

logger = logging.getLogger(__name__)


def reduce_bars(bars: Sequence[Bar]) -> Optional[Bar]:
    """Collapse consecutive bars into one covering their combined span."""
    if not bars:
        return None

    first, last = bars[0], bars[-1]
    return Bar(
        open_time=first.open_time,
        open=first.open,
        high=max(bar.high for bar in bars),
        low=min(bar.low for bar in bars),
        close=last.close,
        volume=sum(bar.volume for bar in bars),
        close_time=last.close_time,
        quote_volume=sum(bar.quote_volume for bar in bars),
        trade_count=sum(bar.trade_count for bar in bars),
        taker_buy_base=sum(bar.taker_buy_base for bar in bars),
        taker_buy_quote=sum(bar.taker_buy_quote for bar in bars),
    )


class AggregationBuffer:
    """Bars awaiting reduction for one (symbol, timeframe)."""

    def __init__(self, symbol: str, timeframe: str, sink):
        self.symbol = symbol
        self.timeframe = timeframe
        self.sink = sink
        self.bars: List[Bar] = []
        self.lock = asyncio.Lock()
        self.flush_count = 0

    async def append(self, bar: Bar) -> int:
        async with self.lock:
            self.bars.append(bar)
            return len(self.bars)

    async def flush(self) -> Optional[Bar]:
        """Write the reduced bar and empty the buffer. No-op when empty."""
        async with self.lock:
            if not self.bars:
                return None

            aggregated = reduce_bars(self.bars)
            try:
                await self.sink.write_aggregated(self.symbol, self.timeframe, [aggregated])
            except Exception as e:
                logger.error(
                    f"Failed to write aggregated data for {self.symbol}/{self.timeframe}: {e}"
                )

            self.bars.clear()
            self.flush_count += 1
            return aggregated

    def __len__(self) -> int:
        return len(self.bars)


class BarAggregator:
    """
    Buffers final bars per (symbol, timeframe) and flushes one reduced bar
    every ``buffer_size`` bars.

    Each buffer has its own lock, so flushing one symbol never blocks ingest
    for another. The map lock is held only while looking up or creating a
    buffer. There is no time-based flush; see ``flush_all`` for shutdown.
    """

    def __init__(self, sink, timeframe: str, buffer_size: int):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.sink = sink
        self.timeframe = timeframe
        self.buffer_size = buffer_size
        self._buffers: Dict[Tuple[str, str], AggregationBuffer] = {}
        self._lock = asyncio.Lock()

    async def _get_buffer(self, symbol: str) -> AggregationBuffer:
        key = (symbol, self.timeframe)
        async with self._lock:
            buffer = self._buffers.get(key)
            if buffer is None:
                buffer = AggregationBuffer(symbol, self.timeframe, self.sink)
                self._buffers[key] = buffer
            return buffer

    async def ingest(self, symbol: str, bar: Bar) -> Optional[Bar]:
        """Add a bar; returns the reduced bar when this call triggered a flush."""
        buffer = await self._get_buffer(symbol)
        size = await buffer.append(bar)
        if size >= self.buffer_size:
            return await buffer.flush()
        return None

    async def flush_all(self) -> int:
        """Flush every non-empty buffer; returns how many bars were written."""
        async with self._lock:
            buffers = list(self._buffers.values())

        flushed = 0
        for buffer in buffers:
            if await buffer.flush() is not None:
                flushed += 1

        if flushed:
            logger.info(f"Flushed {flushed} partial aggregation buffers")
        return flushed

    def pending(self) -> Dict[str, int]:
        return {f"{symbol}_{timeframe}": len(buffer)
                for (symbol, timeframe), buffer in self._buffers.items()}

    def get_stats(self) -> Dict[str, Any]:
        return {
            "timeframe": self.timeframe,
            "buffer_size": self.buffer_size,
            "active_buffers": len(self._buffers),
            "total_buffered": sum(len(b) for b in self._buffers.values()),
            "flushes": sum(b.flush_count for b in self._buffers.values()),
        }
