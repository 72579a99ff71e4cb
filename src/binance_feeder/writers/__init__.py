from .marketstore_writer import DATA_SHAPES, MarketDataWriter
from .stores import ColumnSeries, JsonlFileStore, MemoryStore, TimeBucketKey, create_store

__all__ = [
    "DATA_SHAPES",
    "ColumnSeries",
    "JsonlFileStore",
    "MarketDataWriter",
    "MemoryStore",
    "TimeBucketKey",
    "create_store",
]
