"""
File catalog resolution.

Refreshes the ``bdc_file`` table from the upstream filing index and
collects the latest revision of every (provider, state) filing on one side
of the synchronized marker.

A filing name that lacks its vintage/revision stamp aborts the refresh:
nothing downstream can be dated without it.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from broadband_sync.core.models import BDCFile
from broadband_sync.sources.fcc_bdc.common import (
    BDCFileCategory,
    BDCFilingDataType,
    BDCProviderSubCategory,
    CollectMode,
    FilingDescriptor,
    parse_raw_filing,
)
from broadband_sync.sources.fcc_bdc.errors import BDCError

logger = logging.getLogger(__name__)


def _enum_value(value: Any) -> str:
    return getattr(value, "value", value)


def filing_dates_cache_path(cache_directory: Union[str, Path], filing_type: BDCFilingDataType) -> Path:
    return Path(cache_directory) / "fcc" / "bdc" / f"{_enum_value(filing_type)}-dates.json"


def _parse_as_of_date(value: str) -> datetime:
    return datetime.fromisoformat(str(value)[:10])


async def retrieve_filing_dates(
    client,
    filing_type: BDCFilingDataType = BDCFilingDataType.AVAILABILITY,
    cache_directory: Optional[Union[str, Path]] = None,
    skip_cache: bool = False,
) -> List[datetime]:
    """
    Filing dates published for a data type, newest first.

    The list is cached as JSON under ``cache_directory`` when one is given.
    """
    cache_path = filing_dates_cache_path(cache_directory, filing_type) if cache_directory else None

    if cache_path and not skip_cache and cache_path.exists():
        try:
            cached = json.loads(cache_path.read_text())
            logger.debug("Using cached available dates")
            return [_parse_as_of_date(value) for value in cached]
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable date cache {cache_path}: {e}")

    logger.info("Fetching available dates...")
    entries = await client.list_as_of_dates()

    wanted = _enum_value(filing_type)
    dates = sorted(
        {
            _parse_as_of_date(entry["as_of_date"])
            for entry in entries
            if entry.get("data_type") == wanted and entry.get("as_of_date")
        },
        reverse=True,
    )

    if cache_path:
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        cache_path.write_text(json.dumps([d.date().isoformat() for d in dates], indent=2))

    return dates


async def retrieve_availability_files(
    client,
    as_of_date: datetime,
    category: Union[BDCFileCategory, str],
    subcategory: Union[BDCProviderSubCategory, str],
) -> List[Dict[str, Any]]:
    """Raw availability filing entries of one filing date."""
    return await client.list_availability_files(
        as_of_date,
        category=_enum_value(category),
        subcategory=_enum_value(subcategory),
    )


def upsert_filings(db: Session, filings: Iterable[FilingDescriptor]) -> Tuple[int, int]:
    """
    Insert new filings and refresh known ones.

    ``synchronized_at`` of an existing row is never touched.

    Returns:
        (inserted, updated)
    """
    inserted = updated = 0

    for filing in filings:
        values = filing.to_record()
        existing = db.get(BDCFile, filing.file_id)
        if existing is None:
            db.add(BDCFile(**values))
            inserted += 1
        else:
            for key, value in values.items():
                setattr(existing, key, value)
            updated += 1

    db.commit()
    return inserted, updated


async def refresh_catalog(
    db: Session,
    client,
    category: Union[BDCFileCategory, str] = BDCFileCategory.PROVIDER,
    subcategory: Union[BDCProviderSubCategory, str] = BDCProviderSubCategory.FIXED_BROADBAND,
    as_of_date: Optional[datetime] = None,
    cache_directory: Optional[Union[str, Path]] = None,
    skip_cache: bool = False,
) -> List[FilingDescriptor]:
    """
    Pull the upstream filing index into ``bdc_file``.

    Args:
        as_of_date: Filing date to list (defaults to the newest one)

    Raises:
        FilingNameError: A filing name cannot be dated (fatal)
        BDCError: No filing dates are published
    """
    if as_of_date is None:
        dates = await retrieve_filing_dates(client, cache_directory=cache_directory, skip_cache=skip_cache)
        if not dates:
            raise BDCError("The BDC API did not list any availability filing dates")
        as_of_date = dates[0]

    raw_files = await retrieve_availability_files(client, as_of_date, category, subcategory)
    filings = [parse_raw_filing(raw) for raw in raw_files]

    inserted, updated = upsert_filings(db, filings)
    logger.info(
        f"Catalog refreshed for {as_of_date.date()}: {len(filings)} files "
        f"({inserted} new, {updated} updated)"
    )
    return filings


def collect_filings(
    db: Session,
    category: Union[BDCFileCategory, str] = BDCFileCategory.PROVIDER,
    subcategory: Union[BDCProviderSubCategory, str] = BDCProviderSubCategory.FIXED_BROADBAND,
    mode: Union[CollectMode, str] = CollectMode.ONLY_PENDING,
    provider_ids: Optional[Sequence[int]] = None,
    file_type: Optional[str] = None,
) -> List[FilingDescriptor]:
    """
    Latest revision of each (provider, state, file type) filing, filtered by
    sync state. The tabular and geospatial filings of one provider and state
    share a revision, so they are ranked separately.

    Ordered by state code, then declared record count.
    """
    mode = CollectMode(mode)

    ranked = select(
        BDCFile.file_id,
        func.row_number()
        .over(
            partition_by=(BDCFile.provider_id, BDCFile.state_code, BDCFile.file_type),
            order_by=BDCFile.revision.desc(),
        )
        .label("rn"),
    ).where(
        BDCFile.category == _enum_value(category),
        BDCFile.subcategory == _enum_value(subcategory),
    )
    if provider_ids:
        ranked = ranked.where(BDCFile.provider_id.in_(list(provider_ids)))
    if file_type:
        ranked = ranked.where(BDCFile.file_type == file_type)
    ranked = ranked.subquery()

    query = (
        db.query(BDCFile)
        .join(ranked, ranked.c.file_id == BDCFile.file_id)
        .filter(ranked.c.rn == 1)
    )
    if mode == CollectMode.ONLY_PENDING:
        query = query.filter(BDCFile.synchronized_at.is_(None))
    else:
        query = query.filter(BDCFile.synchronized_at.isnot(None))

    rows = query.order_by(BDCFile.state_code, BDCFile.record_count, BDCFile.file_id).all()
    return [FilingDescriptor.from_row(row) for row in rows]


async def resolve_catalog(
    db: Session,
    client,
    category: Union[BDCFileCategory, str] = BDCFileCategory.PROVIDER,
    subcategory: Union[BDCProviderSubCategory, str] = BDCProviderSubCategory.FIXED_BROADBAND,
    mode: Union[CollectMode, str] = CollectMode.ONLY_PENDING,
    provider_ids: Optional[Sequence[int]] = None,
    file_type: Optional[str] = None,
    as_of_date: Optional[datetime] = None,
    cache_directory: Optional[Union[str, Path]] = None,
    refresh: bool = True,
) -> List[FilingDescriptor]:
    """Refresh the catalog (unless ``refresh`` is False), then collect filings."""
    if refresh:
        await refresh_catalog(
            db,
            client,
            category=category,
            subcategory=subcategory,
            as_of_date=as_of_date,
            cache_directory=cache_directory,
        )

    filings = collect_filings(db, category, subcategory, mode, provider_ids, file_type)
    logger.info(f"Found {len(filings)} {CollectMode(mode).value} files")
    return filings
