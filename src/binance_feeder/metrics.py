"""Prometheus metrics built from component stats at scrape time."""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Gauge, generate_latest

logger = logging.getLogger(__name__)


class FeederMetrics:
    """
    Prometheus gauges mirroring the feeder's internal stats.

    Components keep plain stats dicts; ``update`` copies them into gauges so
    the hot paths never touch the metrics library. Each instance owns its
    registry, so several services can coexist in one process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.sink_records = Gauge(
            'feeder_sink_records',
            'Records handed to the store since start',
            ['kind'],
            registry=self.registry
        )
        self.sink_errors = Gauge(
            'feeder_sink_errors',
            'Failed store writes since start',
            registry=self.registry
        )
        self.api_requests = Gauge(
            'feeder_api_requests',
            'REST requests sent since start',
            ['outcome'],
            registry=self.registry
        )
        self.symbols = Gauge(
            'feeder_symbols',
            'Symbols in the working set',
            registry=self.registry
        )
        self.stream_connected = Gauge(
            'feeder_stream_connected',
            'Connection status (1=connected, 0=disconnected)',
            ['stream_type'],
            registry=self.registry
        )
        self.stream_messages = Gauge(
            'feeder_stream_messages',
            'Websocket frames since start',
            ['stream_type', 'outcome'],
            registry=self.registry
        )
        self.last_message_timestamp = Gauge(
            'feeder_last_message_timestamp',
            'Unix time of the last websocket frame',
            ['stream_type'],
            registry=self.registry
        )
        self.backfill_windows = Gauge(
            'feeder_backfill_windows',
            'Backfill windows processed',
            ['symbol', 'outcome'],
            registry=self.registry
        )
        self.aggregation_buffered = Gauge(
            'feeder_aggregation_buffered',
            'Bars waiting in aggregation buffers',
            registry=self.registry
        )

    def update(self, service) -> None:
        """Refresh every gauge from the service's components."""
        writer = getattr(service, 'writer', None)
        if writer is not None:
            stats = writer.stats
            self.sink_records.labels(kind='bars').set(stats['bars_written'])
            self.sink_records.labels(kind='aggregated').set(stats['aggregated_written'])
            self.sink_records.labels(kind='trades').set(stats['trades_written'])
            self.sink_records.labels(kind='depth').set(stats['depth_received'])
            self.sink_errors.set(stats['errors'])

        client = getattr(service, 'client', None)
        if client is not None:
            self.api_requests.labels(outcome='sent').set(client.stats['requests'])
            self.api_requests.labels(outcome='error').set(client.stats['errors'])

        universe = getattr(service, 'universe', None)
        if universe is not None:
            self.symbols.set(universe.symbol_count())

        realtime = getattr(service, 'realtime', None)
        if realtime is not None:
            for stream_type, stats in realtime.stats.items():
                self.stream_connected.labels(stream_type=stream_type).set(1 if stats['connected'] else 0)
                for outcome in ('received', 'forwarded'):
                    self.stream_messages.labels(stream_type=stream_type, outcome=outcome).set(
                        stats[f'messages_{outcome}']
                    )
                self.stream_messages.labels(stream_type=stream_type, outcome='decode_error').set(
                    stats['decode_errors']
                )
                if stats['last_message_time']:
                    self.last_message_timestamp.labels(stream_type=stream_type).set(
                        stats['last_message_time']
                    )

        backfill = getattr(service, 'backfill', None)
        if backfill is not None:
            for symbol, stats in backfill.symbol_stats.items():
                self.backfill_windows.labels(symbol=symbol, outcome='done').set(stats['windows_done'])
                self.backfill_windows.labels(symbol=symbol, outcome='failed').set(stats['windows_failed'])

        aggregator = getattr(service, 'aggregator', None)
        if aggregator is not None:
            self.aggregation_buffered.set(aggregator.get_stats()['total_buffered'])

        logger.debug("Prometheus metrics updated")

    def render(self) -> bytes:
        return generate_latest(self.registry)
