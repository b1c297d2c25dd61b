"""
Two-level location index: state -> census blocks -> locations.

Pass 1 (index_filings) reads every converted tabular partition and records
each location in the scratch store through a bounded write pool. Pass 2
(write_locations) drains the scratch sets state by state into the
``locations`` table of the spatial store.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from sqlalchemy import insert
from sqlalchemy.orm import Session

from broadband_sync.core.models import Location
from broadband_sync.core.parallel import BoundedWritePool, collect_in_parallel, take_in_parallel
from broadband_sync.sources.fcc_bdc.common import FilingDescriptor
from broadband_sync.sources.fcc_bdc.converter import verify_partition
from broadband_sync.sources.fcc_bdc.errors import PartitionCorruptError
from broadband_sync.sources.fcc_bdc.metadata import get_state_label
from broadband_sync.sources.fcc_bdc.partitions import iter_batches
from broadband_sync.sources.fcc_bdc.paths import partition_path
from broadband_sync.sources.fcc_bdc.schema import GEOID_WIDTH, decode_geoid
from broadband_sync.sources.fcc_bdc.scratch import GeoIndexStore, geoid_key, state_key

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 10_000


def _next_columns(batches: Iterator) -> Optional[Tuple[list, list]]:
    """Decode the next partition batch into (location_ids, geoids), or None at the end."""
    batch = next(batches, None)
    if batch is None:
        return None
    return batch.column("location_id").to_pylist(), batch.column("geoid").to_pylist()


@dataclass
class IndexReport:
    files_indexed: int = 0
    records_indexed: int = 0
    records_without_geoid: int = 0
    state_codes: Set[str] = field(default_factory=set)
    failures: List[str] = field(default_factory=list)
    peak_in_flight: int = 0


class LocationIndexer:
    """
    Builds the location index for a set of converted filings.

    Usage:
        indexer = LocationIndexer(store, db, cache_root)
        report = await indexer.index_filings(filings)
        await indexer.write_locations(report.state_codes)
    """

    def __init__(
        self,
        store: GeoIndexStore,
        db: Session,
        cache_root: Union[str, Path],
        write_pool_capacity: int = 30_000,
        read_concurrency: int = 10,
        cancellation: Optional[asyncio.Event] = None,
    ):
        self.store = store
        self.db = db
        self.cache_root = Path(cache_root)
        self.write_pool_capacity = write_pool_capacity
        self.read_concurrency = read_concurrency
        self.cancellation = cancellation or asyncio.Event()

    async def reset(self) -> None:
        """Clear the scratch store and the locations table."""
        logger.info("Clearing existing location index")
        await self.store.flush()
        self.db.query(Location).delete()
        self.db.commit()

    async def _tally(self, filings: List[FilingDescriptor], report: IndexReport) -> List[FilingDescriptor]:
        """Verify partitions up front, keeping only readable ones."""

        async def check(filing: FilingDescriptor) -> Optional[FilingDescriptor]:
            path = partition_path(self.cache_root, filing)
            try:
                await asyncio.to_thread(verify_partition, path, filing.record_count)
            except PartitionCorruptError as e:
                logger.warning(f"Skipping {filing.file_name}: {e}")
                report.failures.append(filing.file_name)
                return None
            return filing

        checked = await collect_in_parallel(filings, self.read_concurrency, check, self.cancellation)
        return [filing for filing in checked if filing is not None]

    async def index_filings(self, filings: Iterable[FilingDescriptor]) -> IndexReport:
        """
        Index every record of the given (tabular) filings.

        Records without a block GEOID are counted and skipped.
        """
        report = IndexReport()
        tabular = [filing for filing in filings if filing.is_tabular]
        readable = await self._tally(tabular, report)

        total_records = sum(filing.record_count for filing in readable)
        logger.info(f"Indexing {total_records} records from {len(readable)} files")

        pool = BoundedWritePool(self.write_pool_capacity, self.cancellation)

        async def index_file(filing: FilingDescriptor) -> FilingDescriptor:
            path = partition_path(self.cache_root, filing)
            state_code = filing.state_code
            label = f"{get_state_label(state_code)} - {filing.provider_name}"

            # Parquet decoding runs off the event loop, one batch per hop
            batches = iter_batches(path, columns=["location_id", "geoid"])
            while True:
                columns = await asyncio.to_thread(_next_columns, batches)
                if columns is None:
                    break
                location_ids, geoids = columns

                for location_id, encoded in zip(location_ids, geoids):
                    if encoded is None:
                        report.records_without_geoid += 1
                        continue
                    geoid = decode_geoid(encoded)
                    await pool.submit(self.store.index_location(state_code, geoid, location_id))
                    report.records_indexed += 1

            report.state_codes.add(state_code)
            logger.debug(f"Indexed {label}")
            return filing

        try:
            async for _ in take_in_parallel(readable, self.read_concurrency, index_file, self.cancellation):
                report.files_indexed += 1
        finally:
            await pool.drain()
            report.peak_in_flight = pool.peak_in_flight

        logger.info(
            f"Indexed {report.records_indexed} records in {len(report.state_codes)} states "
            f"({report.records_without_geoid} without a block)"
        )
        return report

    async def write_locations(self, state_codes: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """
        Drain the scratch sets into the locations table.

        Returns:
            Rows inserted per state code
        """
        if state_codes is None:
            state_codes = await self.store.state_codes()

        inserted: Dict[str, int] = {}

        for state_code in sorted(state_codes):
            if self.cancellation.is_set():
                break

            expected = await self.store.get_count(state_key(state_code))
            logger.info(f"Writing locations for {get_state_label(state_code)} ({expected} records)")

            rows: List[dict] = []
            count = 0

            async for geoid in self.store.pop_set(state_key(state_code)):
                padded = geoid.zfill(GEOID_WIDTH)
                async for location_id in self.store.pop_set(geoid_key(geoid)):
                    rows.append({"geoid": padded, "location_id": int(location_id)})
                    if len(rows) >= INSERT_BATCH_SIZE:
                        count += self._insert_locations(rows)
                        rows = []
                        await asyncio.sleep(0)

            if rows:
                count += self._insert_locations(rows)

            self.db.commit()
            inserted[state_code] = count

        return inserted

    def _insert_locations(self, rows: List[dict]) -> int:
        self.db.execute(insert(Location.__table__).prefix_with("OR IGNORE"), rows)
        return len(rows)
