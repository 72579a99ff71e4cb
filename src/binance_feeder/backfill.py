"""Historical kline backfill across the symbol universe."""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from .config.settings import BackfillConfig
from .models import BatchWindow, TimeRange
from .symbols import SymbolUniverse
from .timeframes import interval_millis
from .utils.retry import wait_for_stop

logger = logging.getLogger(__name__)


def iter_windows(
    symbol: str,
    time_range: TimeRange,
    cadence: str,
    batch_size: int
) -> Iterator[BatchWindow]:
    """Split ``time_range`` into consecutive windows of ``batch_size`` bars."""
    step = batch_size * interval_millis(cadence)
    current = time_range.start_ms
    while current < time_range.end_ms:
        batch_end = min(current + step, time_range.end_ms)
        yield BatchWindow(symbol=symbol, start_time=current, end_time=batch_end, cadence=cadence)
        current = batch_end


def _fmt(millis: int) -> str:
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class BackfillScheduler:
    """
    Walks the configured range for every symbol in fixed-size windows.

    At most ``parallelism`` symbols run at once. A failed window is logged
    and skipped, and a failed write is logged and not retried, so a symbol
    with persistent API errors never holds up the rest of the universe.
    """

    def __init__(
        self,
        universe: SymbolUniverse,
        client,
        sink,
        config: BackfillConfig,
        stop_event: Optional[asyncio.Event] = None
    ):
        self.universe = universe
        self.client = client
        self.sink = sink
        self.config = config
        self.stop_event = stop_event or asyncio.Event()
        self._permits = asyncio.Semaphore(config.parallelism)
        self._tasks: List[asyncio.Task] = []
        self._running = False

        self.symbol_stats: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"windows_done": 0, "windows_failed": 0, "bars_written": 0, "write_errors": 0}
        )

    def default_range(self) -> TimeRange:
        end_time = self.config.end_time or datetime.now(timezone.utc)
        if self.config.start_time is None:
            raise ValueError("backfill start_time is not configured")
        return TimeRange.from_datetimes(self.config.start_time, end_time)

    async def run(
        self,
        time_range: Optional[TimeRange] = None,
        cadence: Optional[str] = None,
        batch_size: Optional[int] = None
    ):
        """Backfill every working-set symbol; returns once all symbol tasks finish."""
        time_range = time_range or self.default_range()
        cadence = cadence or self.config.interval
        batch_size = batch_size or self.config.batch_size

        logger.info(
            f"Starting Binance backfill from {_fmt(time_range.start_ms)} to {_fmt(time_range.end_ms)}"
        )

        symbols = self.universe.working_set()
        if not symbols:
            logger.error("No symbols available for backfill")
            return

        logger.info(f"Backfilling data for {len(symbols)} symbols")
        self._running = True
        self._tasks = []

        try:
            for symbol in symbols:
                if not await self._acquire_permit():
                    logger.info("Backfill cancelled")
                    break

                task = asyncio.create_task(
                    self._run_symbol(symbol, time_range, cadence, batch_size),
                    name=f"backfill-{symbol}"
                )
                self._tasks.append(task)

            await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self._running = False

        logger.info("Backfill completed")

    async def _acquire_permit(self) -> bool:
        """Wait for a free worker slot or the stop signal, whichever comes first."""
        if self.stop_event.is_set():
            return False

        acquire = asyncio.ensure_future(self._permits.acquire())
        stop = asyncio.ensure_future(self.stop_event.wait())
        try:
            await asyncio.wait({acquire, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()

        if acquire.done() and not acquire.cancelled():
            if self.stop_event.is_set():
                self._permits.release()
                return False
            return True

        acquire.cancel()
        try:
            await acquire
        except asyncio.CancelledError:
            return False
        # Acquired in the same tick the cancel was requested
        self._permits.release()
        return False

    async def _run_symbol(self, symbol: str, time_range: TimeRange, cadence: str, batch_size: int):
        try:
            await self.backfill_symbol(symbol, time_range, cadence, batch_size)
        except Exception as e:
            logger.error(f"Backfill for {symbol} aborted: {e}", exc_info=True)
        finally:
            self._permits.release()

    async def backfill_symbol(self, symbol: str, time_range: TimeRange, cadence: str, batch_size: int):
        logger.info(f"Starting backfill for symbol: {symbol}")
        stats = self.symbol_stats[symbol]

        for window in iter_windows(symbol, time_range, cadence, batch_size):
            if self.stop_event.is_set():
                logger.info(f"Backfill cancelled for symbol: {symbol}")
                return

            try:
                # The API treats endTime as inclusive; windows are half-open
                bars = await self.client.get_klines(
                    symbol,
                    cadence,
                    start_time=window.start_time,
                    end_time=window.end_time - 1,
                    limit=batch_size
                )
            except Exception as e:
                stats["windows_failed"] += 1
                logger.error(f"Failed to get klines for {symbol}: {e}")
                bars = None

            if bars:
                try:
                    await self.sink.write_bars(symbol, cadence, bars)
                    stats["bars_written"] += len(bars)
                    logger.info(
                        f"Backfilled {len(bars)} klines for {symbol} from "
                        f"{_fmt(bars[0].open_time)} to {_fmt(bars[-1].open_time)}"
                    )
                except Exception as e:
                    stats["write_errors"] += 1
                    logger.error(f"Failed to write klines for {symbol}: {e}")

            if bars is not None:
                stats["windows_done"] += 1

            if await wait_for_stop(self.stop_event, self.config.batch_delay_seconds):
                logger.info(f"Backfill cancelled for symbol: {symbol}")
                return

        logger.info(f"Completed backfill for symbol: {symbol}")

    def progress(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "start_time": self.config.start_time.isoformat() if self.config.start_time else None,
            "end_time": self.config.end_time.isoformat() if self.config.end_time else None,
            "interval": self.config.interval,
            "batch_size": self.config.batch_size,
            "parallelism": self.config.parallelism,
            "active_tasks": sum(1 for t in self._tasks if not t.done()),
            "symbols": {symbol: dict(stats) for symbol, stats in self.symbol_stats.items()},
        }
