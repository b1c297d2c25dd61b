"""
Columnar availability partitions (Parquet) and their Bloom filter sidecars.

A partition is written to a temporary sibling and renamed into place on
close, so a partition under its final name is always complete. The sidecar
holds one Bloom filter per filter field; it is advisory only, a missing or
unreadable sidecar just disables pruning.
"""

import base64
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

import pyarrow as pa
import pyarrow.parquet as pq
from rbloom import Bloom

from broadband_sync.sources.fcc_bdc.paths import filter_path
from broadband_sync.sources.fcc_bdc.schema import (
    AVAILABILITY_SCHEMA,
    COLUMN_NAMES,
    FILTER_FIELDS,
    AvailabilityRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100_000
DEFAULT_FALSE_POSITIVE_RATE = 0.01


def _filter_hash(value: Any) -> int:
    """Stable 128-bit hash, required by rbloom for persisted filters."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        data = b"b:" + bytes(value)
    else:
        data = f"v:{value}".encode("utf-8")
    digest = hashlib.blake2b(data, digest_size=16).digest()
    return int.from_bytes(digest, "big", signed=True)


class PartitionFilters:
    """Per-field Bloom filters of one partition."""

    def __init__(self, filters: Dict[str, Bloom], false_positive_rate: float):
        self.filters = filters
        self.false_positive_rate = false_positive_rate

    @classmethod
    def create(
        cls,
        expected_items: int,
        false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
        fields: Sequence[str] = FILTER_FIELDS,
    ) -> "PartitionFilters":
        capacity = max(1, expected_items)
        return cls(
            {name: Bloom(capacity, false_positive_rate, hash_func=_filter_hash) for name in fields},
            false_positive_rate,
        )

    def add(self, record: AvailabilityRecord) -> None:
        for name, bloom in self.filters.items():
            value = getattr(record, name)
            if value is not None:
                bloom.add(value)

    def might_contain(self, field: str, value: Any) -> bool:
        """False only if ``value`` is definitely absent from ``field``."""
        bloom = self.filters.get(field)
        if bloom is None:
            return True
        return value in bloom

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        payload = {
            "false_positive_rate": self.false_positive_rate,
            "filters": {
                name: base64.b64encode(bloom.save_bytes()).decode("ascii")
                for name, bloom in self.filters.items()
            },
        }
        temp_path = path.with_name(path.name + ".tmp")
        temp_path.write_text(json.dumps(payload))
        os.replace(temp_path, path)

    @classmethod
    def load(cls, path: Union[str, Path]) -> Optional["PartitionFilters"]:
        path = Path(path)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text())
            filters = {
                name: Bloom.load_bytes(base64.b64decode(encoded), _filter_hash)
                for name, encoded in payload["filters"].items()
            }
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable filter sidecar {path.name}: {e}")
            return None
        return cls(filters, payload.get("false_positive_rate", DEFAULT_FALSE_POSITIVE_RATE))


class PartitionWriter:
    """
    Streams availability records into a new partition.

    Usage:
        with PartitionWriter(path, expected_rows=500) as writer:
            for record in records:
                writer.append(record)
    """

    def __init__(
        self,
        path: Union[str, Path],
        expected_rows: int = 0,
        false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.path = Path(path)
        self.temp_path = self.path.with_name(self.path.name + ".tmp")
        self.batch_size = batch_size
        self.filters = PartitionFilters.create(expected_rows, false_positive_rate)
        self.rows_written = 0
        self._buffer: Dict[str, List[Any]] = {name: [] for name in COLUMN_NAMES}
        self._buffered = 0

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._writer: Optional[pq.ParquetWriter] = pq.ParquetWriter(
            str(self.temp_path),
            AVAILABILITY_SCHEMA,
            compression="zstd",
            write_statistics=True,
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.close()
        else:
            self.abort()

    def append(self, record: AvailabilityRecord) -> None:
        for name in COLUMN_NAMES:
            self._buffer[name].append(getattr(record, name))
        self.filters.add(record)
        self._buffered += 1
        if self._buffered >= self.batch_size:
            self._flush()

    def _flush(self) -> None:
        if not self._buffered:
            return
        table = pa.Table.from_pydict(self._buffer, schema=AVAILABILITY_SCHEMA)
        self._writer.write_table(table)
        self.rows_written += self._buffered
        self._buffer = {name: [] for name in COLUMN_NAMES}
        self._buffered = 0

    def close(self) -> int:
        """Finish the partition and its sidecar. Returns the row count."""
        if self._writer is None:
            return self.rows_written
        self._flush()
        self._writer.close()
        self._writer = None
        os.replace(self.temp_path, self.path)
        self.filters.save(filter_path(self.path))
        return self.rows_written

    def abort(self) -> None:
        """Discard everything written so far."""
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self.temp_path.exists():
            self.temp_path.unlink()


def read_row_count(path: Union[str, Path]) -> Optional[int]:
    """Row count of a partition, or None when missing or unreadable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        return pq.ParquetFile(path).metadata.num_rows
    except (pa.ArrowException, OSError) as e:
        logger.warning(f"Unreadable partition {path.name}: {e}")
        return None


def iter_batches(
    path: Union[str, Path],
    columns: Optional[Sequence[str]] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Iterator[pa.RecordBatch]:
    parquet_file = pq.ParquetFile(path)
    yield from parquet_file.iter_batches(
        batch_size=batch_size,
        columns=list(columns) if columns else None,
    )


def iter_records(path: Union[str, Path], batch_size: int = DEFAULT_BATCH_SIZE) -> Iterator[AvailabilityRecord]:
    """Records of a partition in write order."""
    for batch in iter_batches(path, batch_size=batch_size):
        for row in batch.to_pylist():
            yield AvailabilityRecord.from_mapping(row)


def load_filters(path: Union[str, Path]) -> Optional[PartitionFilters]:
    """Bloom filters of a partition, if its sidecar is readable."""
    return PartitionFilters.load(filter_path(path))


def remove_partition(path: Union[str, Path]) -> None:
    """Delete a partition and its sidecar."""
    path = Path(path)
    for candidate in (path, filter_path(path)):
        if candidate.exists():
            candidate.unlink()
