"""Binance feeder service - historical backfill plus realtime streams into a bucket store."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import List, Optional

from .aggregator import BarAggregator
from .backfill import BackfillScheduler
from .clients.binance_rest import BinanceRESTClient
from .config.settings import FeederConfig, load_config
from .health import HealthCheckServer
from .metrics import FeederMetrics
from .realtime import RealtimeStreamManager
from .symbols import SymbolUniverse
from .utils.logging import setup_logging
from .writers import MarketDataWriter, create_store

logger = logging.getLogger(__name__)


class FeederService:
    """Wires the client, universe, sink and both ingestion paths together."""

    def __init__(self, config: FeederConfig, connect=None):
        self.config = config
        self._stop_event = asyncio.Event()
        self._connect = connect

        self.store = create_store(config.storage.backend, config.storage.directory)
        self.writer = MarketDataWriter(self.store)
        self.metrics = FeederMetrics()
        self.client: Optional[BinanceRESTClient] = None
        self.universe: Optional[SymbolUniverse] = None
        self.aggregator: Optional[BarAggregator] = None
        self.backfill: Optional[BackfillScheduler] = None
        self.realtime: Optional[RealtimeStreamManager] = None
        self.health_server: Optional[HealthCheckServer] = None
        self._tasks: List[asyncio.Task] = []

        logger.info(f"{config.service_name} initialized")

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    async def start(self):
        """Run until a stop signal arrives or every ingestion task has finished."""
        logger.info("Starting Binance feeder")

        async with BinanceRESTClient(self.config.binance) as client:
            self.client = client
            self.universe = SymbolUniverse(
                self.config.symbols, self.config.exclude_symbols, client=client
            )

            symbols = await self.universe.resolve()
            logger.info(f"Working set has {len(symbols)} symbols")

            self._setup_signal_handlers()

            if self.config.health.enabled:
                self.health_server = HealthCheckServer(
                    self, self.config.health.host, self.config.health.port, self.config.service_name
                )
                await self.health_server.start()

            try:
                self._tasks = self._start_tasks(client)
                if self._tasks:
                    await self._wait_for_completion()
                else:
                    logger.warning("Neither backfill nor realtime is enabled; nothing to do")
            finally:
                await self._shutdown()

        logger.info("Binance feeder stopped")

    def _start_tasks(self, client: BinanceRESTClient) -> List[asyncio.Task]:
        tasks = []

        if self.config.backfill.enabled:
            self.backfill = BackfillScheduler(
                self.universe, client, self.writer, self.config.backfill, self._stop_event
            )
            tasks.append(asyncio.create_task(self.backfill.run(), name="backfill"))

        if self.config.realtime.enabled:
            self.aggregator = BarAggregator(
                self.writer, self.config.realtime.update_freq, self.config.realtime.buffer_size
            )
            self.realtime = RealtimeStreamManager(
                self.universe,
                client,
                self.writer,
                self.aggregator,
                self.config.realtime,
                self._stop_event,
                connect=self._connect,
            )
            tasks.append(asyncio.create_task(self.realtime.run(), name="realtime"))

        return tasks

    async def _wait_for_completion(self):
        stop = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait(
                [stop, asyncio.gather(*self._tasks, return_exceptions=True)],
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop.cancel()

    async def _shutdown(self):
        logger.info("Shutting down Binance feeder")
        self._stop_event.set()

        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for task, result in zip(self._tasks, results):
            if isinstance(result, BaseException) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"Task {task.get_name()} failed: {result}")

        if self.health_server:
            await self.health_server.stop()

        self._remove_signal_handlers()

    def stop(self):
        """Request a graceful stop; safe to call more than once."""
        if not self._stop_event.is_set():
            logger.info("Stop requested")
            self._stop_event.set()

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                logger.debug(f"Signal handler for {sig.name} not installed")

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _handle_signal(self, sig: signal.Signals):
        logger.info(f"Received signal {sig.name}, initiating shutdown")
        self.stop()

    def render_metrics(self) -> bytes:
        self.metrics.update(self)
        return self.metrics.render()

    async def health_check(self) -> dict:
        health_status = {
            "service": self.config.service_name,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {},
        }

        components = health_status["components"]
        components["writer"] = await self.writer.health_check()
        if self.client:
            components["binance_api"] = await self.client.health_check()
        if self.realtime:
            components["realtime"] = await self.realtime.health_check()
        if self.backfill:
            components["backfill"] = {"status": "healthy", **self.backfill.progress()}
        if self.aggregator:
            components["aggregator"] = {"status": "healthy", **self.aggregator.get_stats()}
        if self.universe:
            components["symbols"] = {
                "status": "healthy" if self.universe.symbol_count() else "degraded",
                "count": self.universe.symbol_count(),
                "catalog_loaded": self.universe.catalog_loaded,
            }

        statuses = [comp.get("status", "unknown") for comp in components.values()]
        if any(status == "unhealthy" for status in statuses):
            health_status["status"] = "unhealthy"
        elif any(status == "degraded" for status in statuses):
            health_status["status"] = "degraded"

        return health_status


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE", "config/local.yaml")
    config = load_config(config_file)
    setup_logging(config.logging, config.service_name)

    service = FeederService(config)
    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
