"""
BDC synchronization orchestration.

Stages share one cancellation event: a fatal error in any stage sets it and
no further work is scheduled. Recoverable per-file errors are collected in
the stage reports and logged once at the end of each stage.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from broadband_sync.core.config import Settings, get_settings
from broadband_sync.sources.fcc_bdc.bulk_loader import LoadReport, load_filings
from broadband_sync.sources.fcc_bdc.catalog import collect_filings, resolve_catalog
from broadband_sync.sources.fcc_bdc.common import (
    BDCFileCategory,
    BDCFileKind,
    BDCProviderSubCategory,
    CollectMode,
    FilingDescriptor,
)
from broadband_sync.sources.fcc_bdc.fetcher import FetchReport, fetch_filings
from broadband_sync.sources.fcc_bdc.location_indexer import IndexReport, LocationIndexer
from broadband_sync.sources.fcc_bdc.scratch import GeoIndexStore

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    filings: List[FilingDescriptor] = field(default_factory=list)
    fetch: Optional[FetchReport] = None
    load: Optional[LoadReport] = None

    @property
    def failed_files(self) -> List[str]:
        failed = list(self.fetch.failed_files) if self.fetch else []
        if self.load:
            failed.extend(self.load.failures)
        return failed


async def sync_availability(
    db: Session,
    client,
    settings: Optional[Settings] = None,
    category: Union[BDCFileCategory, str] = BDCFileCategory.PROVIDER,
    subcategory: Union[BDCProviderSubCategory, str] = BDCProviderSubCategory.FIXED_BROADBAND,
    provider_ids: Optional[Sequence[int]] = None,
    refresh: bool = True,
    skip_cache: bool = False,
    cancellation: Optional[asyncio.Event] = None,
) -> SyncReport:
    """
    Resolve pending filings, fetch and convert them, then bulk load.

    Filings that failed to download or convert stay pending for the next run.
    """
    settings = settings or get_settings()
    cancellation = cancellation or asyncio.Event()
    cache_root = settings.cache_directory

    filings = await resolve_catalog(
        db,
        client,
        category=category,
        subcategory=subcategory,
        mode=CollectMode.ONLY_PENDING,
        provider_ids=provider_ids,
        file_type=BDCFileKind.TABULAR.value,
        cache_directory=settings.data_directory,
        refresh=refresh,
    )
    report = SyncReport(filings=filings)
    if not filings:
        logger.info("Nothing to synchronize")
        return report

    report.fetch = await fetch_filings(
        client,
        filings,
        cache_root,
        concurrency=settings.download_concurrency,
        cancellation=cancellation,
        skip_cache=skip_cache,
        false_positive_rate=settings.bloom_false_positive_rate,
    )

    failed_ids = {failure.filing.file_id for failure in report.fetch.failures}
    loadable = [filing for filing in filings if filing.file_id not in failed_ids]

    report.load = await load_filings(db, loadable, cache_root, cancellation)

    logger.info(
        f"Synchronized {len(report.load.synchronized)} of {len(filings)} files "
        f"({report.load.records_inserted} records)"
    )
    return report


async def index_locations(
    db: Session,
    store: GeoIndexStore,
    settings: Optional[Settings] = None,
    mode: Union[CollectMode, str] = CollectMode.ONLY_SYNCHRONIZED,
    provider_ids: Optional[Sequence[int]] = None,
    reset: bool = True,
    cancellation: Optional[asyncio.Event] = None,
) -> IndexReport:
    """Rebuild the locations table from the converted partitions."""
    settings = settings or get_settings()

    filings = collect_filings(
        db,
        BDCFileCategory.PROVIDER,
        BDCProviderSubCategory.FIXED_BROADBAND,
        mode,
        provider_ids=provider_ids,
        file_type=BDCFileKind.TABULAR.value,
    )

    indexer = LocationIndexer(
        store,
        db,
        settings.cache_directory,
        write_pool_capacity=settings.write_pool_capacity,
        read_concurrency=settings.partition_read_concurrency,
        cancellation=cancellation,
    )
    if reset:
        await indexer.reset()

    report = await indexer.index_filings(filings)
    await indexer.write_locations(report.state_codes)

    if report.failures:
        logger.error(f"Skipped {len(report.failures)} files with invalid partitions: {report.failures}")
    return report
