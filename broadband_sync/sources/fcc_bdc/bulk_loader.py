"""
Bulk insertion of converted partitions into the spatial store.

Providers are loaded smallest first (by total pending records), so that
under a slow insert path the number of providers with complete coverage
grows as fast as possible. Each provider's filings are inserted one at a
time; the single SQLite writer gains nothing from more concurrency. A
filing is marked synchronized only after all of its rows are committed.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import insert, update
from sqlalchemy.orm import Session

from broadband_sync.core.models import BDCFile, BSLAvailability
from broadband_sync.core.parallel import take_in_parallel
from broadband_sync.sources.fcc_bdc.common import FilingDescriptor
from broadband_sync.sources.fcc_bdc.converter import verify_partition
from broadband_sync.sources.fcc_bdc.errors import PartitionCorruptError
from broadband_sync.sources.fcc_bdc.metadata import get_state_label
from broadband_sync.sources.fcc_bdc.partitions import iter_records
from broadband_sync.sources.fcc_bdc.paths import partition_path

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 10_000


@dataclass
class LoadReport:
    provider_order: List[int] = field(default_factory=list)
    synchronized: List[FilingDescriptor] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    records_inserted: int = 0


def order_providers_by_record_count(
    filings: Iterable[FilingDescriptor],
) -> "OrderedDict[int, List[FilingDescriptor]]":
    """
    Group filings by provider, smallest total record count first.

    Ties are broken by provider ID so the order is deterministic.
    """
    by_provider: Dict[int, List[FilingDescriptor]] = {}
    totals: Dict[int, int] = {}

    for filing in filings:
        by_provider.setdefault(filing.provider_id, []).append(filing)
        totals[filing.provider_id] = totals.get(filing.provider_id, 0) + filing.record_count

    ordered_ids = sorted(by_provider, key=lambda provider_id: (totals[provider_id], provider_id))
    return OrderedDict((provider_id, by_provider[provider_id]) for provider_id in ordered_ids)


def _availability_rows(filing: FilingDescriptor, path: Path):
    revision = filing.revision.date()
    vintage = filing.vintage.date()
    for record in iter_records(path):
        yield {
            "state_code": filing.state_code,
            "provider_id": filing.provider_id,
            "location_id": record.location_id,
            "technology_code": record.technology_code,
            "business_residential_code": record.business_residential_code,
            "max_advertised_download_speed": record.max_advertised_download_speed,
            "max_advertised_upload_speed": record.max_advertised_upload_speed,
            "low_latency": record.low_latency,
            "block_geoid": record.block_geoid,
            "revision": revision,
            "vintage": vintage,
        }


async def load_filing(db: Session, filing: FilingDescriptor, cache_root: Union[str, Path]) -> int:
    """
    Insert one filing's partition and mark the filing synchronized.

    Rows already present (same state, provider, location, technology and
    business/residential code) are ignored, so a re-run after a crash
    is safe.

    Raises:
        PartitionCorruptError: Partition missing or row count mismatch
    """
    path = partition_path(cache_root, filing)
    verify_partition(path, filing.record_count)

    statement = insert(BSLAvailability.__table__).prefix_with("OR IGNORE")
    batch: List[dict] = []
    inserted = 0

    try:
        for row in _availability_rows(filing, path):
            batch.append(row)
            if len(batch) >= INSERT_BATCH_SIZE:
                db.execute(statement, batch)
                inserted += len(batch)
                batch = []
                await asyncio.sleep(0)
        if batch:
            db.execute(statement, batch)
            inserted += len(batch)

        db.execute(
            update(BDCFile)
            .where(BDCFile.file_id == filing.file_id)
            .values(synchronized_at=datetime.utcnow())
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    return inserted


async def load_filings(
    db: Session,
    filings: Iterable[FilingDescriptor],
    cache_root: Union[str, Path],
    cancellation: Optional[asyncio.Event] = None,
) -> LoadReport:
    """
    Load pending tabular filings, providers in ascending record count order.

    Filings whose partition fails verification are reported and stay
    pending; any other error is fatal and propagates.
    """
    report = LoadReport()
    cancellation = cancellation or asyncio.Event()
    ordered = order_providers_by_record_count(f for f in filings if f.is_tabular)
    report.provider_order = list(ordered)

    logger.info(f"Loading {sum(len(v) for v in ordered.values())} files from {len(ordered)} providers")

    for provider_id, provider_filings in ordered.items():
        if cancellation.is_set():
            logger.warning("Load cancelled, remaining providers stay pending")
            break

        async def load_one(filing: FilingDescriptor) -> Optional[FilingDescriptor]:
            label = f"{get_state_label(filing.state_code)} - {filing.provider_name}"
            try:
                report.records_inserted += await load_filing(db, filing, cache_root)
            except PartitionCorruptError as e:
                logger.warning(f"Skipping {label}: {e}")
                report.failures.append(filing.file_name)
                return None
            logger.info(f"Synchronized {label} ({filing.record_count} records)")
            return filing

        async for loaded in take_in_parallel(provider_filings, 1, load_one, cancellation):
            if loaded is not None:
                report.synchronized.append(loaded)

    if report.failures:
        logger.error(f"Failed to load {len(report.failures)} files: {report.failures}")

    return report
