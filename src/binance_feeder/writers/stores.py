"""Storage backends that persist column series batches."""

import asyncio
import gzip
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..exceptions import SinkWriteError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeBucketKey:
    """Storage address: ``SYMBOL/TIMEFRAME/ATTRIBUTE_GROUP``."""
    symbol: str
    timeframe: str
    attribute_group: str

    def __str__(self) -> str:
        return f"{self.symbol}/{self.timeframe}/{self.attribute_group}"

    @classmethod
    def parse(cls, key: str) -> "TimeBucketKey":
        parts = key.split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid time bucket key: {key}")
        return cls(*parts)


@dataclass
class ColumnSeries:
    """Ordered set of equally sized columns."""
    columns: Dict[str, List[Any]] = field(default_factory=dict)

    def add_column(self, name: str, values: List[Any]) -> None:
        if self.columns and len(values) != len(self):
            raise ValueError(
                f"Column {name} has {len(values)} rows, expected {len(self)}"
            )
        self.columns[name] = list(values)

    def __len__(self) -> int:
        if not self.columns:
            return 0
        return len(next(iter(self.columns.values())))

    def rows(self) -> List[Dict[str, Any]]:
        names = list(self.columns)
        return [
            dict(zip(names, values))
            for values in zip(*(self.columns[name] for name in names))
        ]


@dataclass
class StoreStats:
    """Statistics for store write operations."""
    batches_written: int = 0
    rows_written: int = 0
    errors: int = 0


class MemoryStore:
    """In-process store; keeps every written row per bucket key."""

    def __init__(self):
        self._data: Dict[TimeBucketKey, List[Dict[str, Any]]] = defaultdict(list)
        self.stats = StoreStats()

    async def write(self, key: TimeBucketKey, series: ColumnSeries) -> None:
        self._data[key].extend(series.rows())
        self.stats.batches_written += 1
        self.stats.rows_written += len(series)

    def read(self, key: TimeBucketKey) -> List[Dict[str, Any]]:
        return list(self._data.get(key, []))

    def keys(self) -> List[TimeBucketKey]:
        return list(self._data)

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": "memory", "keys": len(self._data)}


class JsonlFileStore:
    """
    Appends each batch as gzip-compressed JSON lines.

    One file per bucket key: ``<directory>/<SYMBOL>/<TIMEFRAME>/<GROUP>.jsonl.gz``.
    Gzip members are concatenated, so appending keeps the file readable with
    ``gzip.open``.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.stats = StoreStats()
        self._locks: Dict[TimeBucketKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        logger.info(f"JsonlFileStore writing under {self.directory}")

    def path_for(self, key: TimeBucketKey) -> Path:
        return self.directory / key.symbol / key.timeframe / f"{key.attribute_group}.jsonl.gz"

    async def write(self, key: TimeBucketKey, series: ColumnSeries) -> None:
        if not len(series):
            return

        payload = "".join(json.dumps(row, default=str) + "\n" for row in series.rows())
        path = self.path_for(key)

        async with self._locks[key]:
            try:
                await asyncio.to_thread(self._append, path, payload.encode("utf-8"))
            except OSError as e:
                self.stats.errors += 1
                raise SinkWriteError(f"Failed to write {key} to {path}: {e}") from e

        self.stats.batches_written += 1
        self.stats.rows_written += len(series)

    @staticmethod
    def _append(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with gzip.open(path, "ab") as f:
            f.write(data)

    def read(self, key: TimeBucketKey) -> List[Dict[str, Any]]:
        path = self.path_for(key)
        if not path.exists():
            return []
        with gzip.open(path, "rt", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "degraded" if self.stats.errors else "healthy",
            "backend": "jsonl",
            "directory": str(self.directory),
            "batches_written": self.stats.batches_written,
            "errors": self.stats.errors,
        }


def create_store(backend: str, directory: Optional[str] = None):
    """Build the store named by ``StorageConfig.backend``."""
    if backend == "memory":
        return MemoryStore()
    if backend == "jsonl":
        return JsonlFileStore(directory or "./data")
    raise ValueError(f"Unknown storage backend: {backend}")
