"""
Command-line entry point.

Usage:
    python -m broadband_sync catalog
    python -m broadband_sync sync --provider-id 130077
    python -m broadband_sync fetch 123456
    python -m broadband_sync index-locations
    python -m broadband_sync export-geojson 06 out/06.geojsons --level block --level tract
    python -m broadband_sync export-provider-geojson out/geojson
    python -m broadband_sync build-provider-static out/providers

Env vars:
    FCC_MAP_USERNAME / FCC_MAP_API_KEY  Required for catalog, sync and fetch
    DATABASE_URL                        Spatial store (SQLite)
    REDIS_URL                           Scratch store of index-locations
    LOG_LEVEL                           Default INFO
"""
import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from broadband_sync.core.config import MissingFCCCredentialsError, get_settings
from broadband_sync.core.database import SpatialStoreError, create_tables, get_session_factory
from broadband_sync.core.models import BDCFile
from broadband_sync.sources.fcc_bdc.block_aggregator import GeographyLevel, TilingHints, write_state_geojson
from broadband_sync.sources.fcc_bdc.catalog import refresh_catalog, collect_filings
from broadband_sync.sources.fcc_bdc.client import BDCClient
from broadband_sync.sources.fcc_bdc.common import (
    BDCFileCategory,
    BDCFileKind,
    BDCProviderSubCategory,
    BDCStateSubCategory,
    BDCSummarySubCategory,
    CollectMode,
    FilingDescriptor,
)
from broadband_sync.sources.fcc_bdc.converter import write_provider_availability
from broadband_sync.sources.fcc_bdc.errors import BDCError
from broadband_sync.sources.fcc_bdc.fetcher import download_filing
from broadband_sync.sources.fcc_bdc.geojson_export import SATELLITE_PROVIDER_IDS, export_provider_geojson
from broadband_sync.sources.fcc_bdc.geometry import SpatialiteGeometryProvider
from broadband_sync.sources.fcc_bdc.ingest import index_locations, sync_availability
from broadband_sync.sources.fcc_bdc.metadata import normalize_state_code
from broadband_sync.sources.fcc_bdc.paths import partition_path, state_partition_paths
from broadband_sync.sources.fcc_bdc.provider_directory import build_provider_directory
from broadband_sync.sources.fcc_bdc.scratch import GeoIndexStore

logger = logging.getLogger("broadband_sync")


def _open_session():
    create_tables()
    return get_session_factory()()


async def run_catalog(args) -> int:
    settings = get_settings()
    as_of_date = datetime.fromisoformat(args.as_of_date) if args.as_of_date else None

    db = _open_session()
    try:
        async with BDCClient.from_settings(settings) as client:
            await refresh_catalog(
                db,
                client,
                category=args.category,
                subcategory=args.subcategory,
                as_of_date=as_of_date,
                cache_directory=settings.data_directory,
                skip_cache=args.skip_cache,
            )
        filings = collect_filings(db, args.category, args.subcategory, args.mode, file_type=args.file_type)
    finally:
        db.close()

    for filing in filings:
        print(f"{filing.file_id}\t{filing.state_code}\t{filing.provider_id}\t{filing.record_count}\t{filing.file_name}")
    logger.info(f"{len(filings)} {args.mode} files")
    return 0


async def run_fetch(args) -> int:
    settings = get_settings()
    db = _open_session()
    try:
        row = db.get(BDCFile, args.file_id)
        if row is None:
            logger.error(f"File {args.file_id} is not in the catalog, run 'catalog' first")
            return 1
        filing = FilingDescriptor.from_row(row)
    finally:
        db.close()

    cache_root = settings.cache_directory
    async with BDCClient.from_settings(settings) as client:
        archive, downloaded = await download_filing(client, filing, cache_root, skip_cache=args.skip_cache)

    logger.info(f"{'Downloaded' if downloaded else 'Cached'}: {archive}")

    if filing.is_tabular:
        status = await asyncio.to_thread(
            write_provider_availability,
            archive,
            partition_path(cache_root, filing),
            filing.provider_id,
            filing.record_count,
            args.skip_cache,
            settings.bloom_false_positive_rate,
        )
        logger.info(f"Partition {status.value}: {partition_path(cache_root, filing)}")
    return 0


async def run_sync(args) -> int:
    settings = get_settings()
    cancellation = asyncio.Event()

    db = _open_session()
    try:
        async with BDCClient.from_settings(settings) as client:
            report = await sync_availability(
                db,
                client,
                settings,
                category=args.category,
                subcategory=args.subcategory,
                provider_ids=args.provider_id,
                refresh=not args.no_refresh,
                skip_cache=args.skip_cache,
                cancellation=cancellation,
            )
    finally:
        db.close()

    return 1 if report.failed_files else 0


async def run_index_locations(args) -> int:
    settings = get_settings()
    cancellation = asyncio.Event()

    db = _open_session()
    try:
        async with GeoIndexStore.from_settings(settings) as store:
            report = await index_locations(
                db,
                store,
                settings,
                mode=args.mode,
                provider_ids=args.provider_id,
                reset=not args.keep_existing,
                cancellation=cancellation,
            )
    finally:
        db.close()

    return 1 if report.failures else 0


async def run_export_geojson(args) -> int:
    settings = get_settings()
    partitions: Optional[List[Path]] = None
    if args.synchronized_only:
        db = _open_session()
        try:
            filings = collect_filings(
                db,
                mode=CollectMode.ONLY_SYNCHRONIZED,
                provider_ids=[args.provider_id] if args.provider_id else None,
                file_type=BDCFileKind.TABULAR.value,
            )
        finally:
            db.close()
        partitions = state_partition_paths(settings.cache_directory, args.state, filings)

    geometry_provider = SpatialiteGeometryProvider.from_settings(settings)
    count = await write_state_geojson(
        args.state,
        args.output,
        geometry_provider,
        levels=args.level or [GeographyLevel.BLOCK.value],
        partition_paths=partitions,
        cache_root=settings.cache_directory,
        provider_id=args.provider_id,
        hints=TilingHints.from_settings(settings),
        simplify_tolerance=settings.geometry_simplify_tolerance,
    )
    logger.info(f"Wrote {count} features to {args.output}")
    return 0


async def run_export_provider_geojson(args) -> int:
    settings = get_settings()
    geometry_provider = SpatialiteGeometryProvider.from_settings(settings)

    db = _open_session()
    try:
        report = await export_provider_geojson(
            db,
            args.out_directory,
            geometry_provider,
            settings.cache_directory,
            levels=args.level or [level.value for level in GeographyLevel],
            provider_ids=args.provider_id,
            exclude_provider_ids=() if args.include_satellite else SATELLITE_PROVIDER_IDS,
            hints=TilingHints.from_settings(settings),
            simplify_tolerance=settings.geometry_simplify_tolerance,
        )
    finally:
        db.close()

    logger.info(f"Exported {len(report.written)} files ({len(report.skipped)} already present)")
    return 0


async def run_build_provider_static(args) -> int:
    db = _open_session()
    try:
        build_provider_directory(db, args.out_directory)
    finally:
        db.close()
    return 0


def _state_code(value: str) -> str:
    try:
        return normalize_state_code(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _add_level_argument(parser: argparse.ArgumentParser, default_help: str) -> None:
    parser.add_argument(
        "--level",
        action="append",
        choices=[level.value for level in GeographyLevel],
        help=f"Geography level to write (repeatable, default {default_help})",
    )


def _add_catalog_arguments(parser: argparse.ArgumentParser) -> None:
    subcategories = sorted({
        member.value
        for enum_type in (BDCProviderSubCategory, BDCStateSubCategory, BDCSummarySubCategory)
        for member in enum_type
    })
    parser.add_argument(
        "--category",
        default=BDCFileCategory.PROVIDER.value,
        choices=[member.value for member in BDCFileCategory],
    )
    parser.add_argument(
        "--subcategory",
        default=BDCProviderSubCategory.FIXED_BROADBAND.value,
        choices=subcategories,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="broadband_sync",
        description="Synchronize FCC Broadband Data Collection filings",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    catalog = subparsers.add_parser("catalog", help="Refresh and list the filing catalog")
    _add_catalog_arguments(catalog)
    catalog.add_argument("--as-of-date", help="Filing date (YYYY-MM-DD), defaults to the newest")
    catalog.add_argument(
        "--mode",
        choices=[mode.value for mode in CollectMode],
        default=CollectMode.ONLY_PENDING.value,
    )
    catalog.add_argument(
        "--file-type",
        choices=[kind.value for kind in BDCFileKind],
        default=BDCFileKind.TABULAR.value,
    )
    catalog.add_argument("--skip-cache", action="store_true", help="Ignore the cached filing dates")
    catalog.set_defaults(handler=run_catalog)

    fetch = subparsers.add_parser("fetch", help="Download and convert a single filing")
    fetch.add_argument("file_id", type=int)
    fetch.add_argument("--skip-cache", action="store_true", help="Download and convert again")
    fetch.set_defaults(handler=run_fetch)

    sync = subparsers.add_parser("sync", help="Fetch, convert and load every pending filing")
    _add_catalog_arguments(sync)
    sync.add_argument("--provider-id", type=int, action="append", help="Restrict to a provider (repeatable)")
    sync.add_argument("--no-refresh", action="store_true", help="Use the catalog as stored")
    sync.add_argument("--skip-cache", action="store_true", help="Ignore cached archives and partitions")
    sync.set_defaults(handler=run_sync)

    index = subparsers.add_parser("index-locations", help="Rebuild the locations table")
    index.add_argument(
        "--mode",
        choices=[mode.value for mode in CollectMode],
        default=CollectMode.ONLY_SYNCHRONIZED.value,
    )
    index.add_argument("--provider-id", type=int, action="append")
    index.add_argument("--keep-existing", action="store_true", help="Do not clear the index first")
    index.set_defaults(handler=run_index_locations)

    export = subparsers.add_parser("export-geojson", help="Write the GeoJSON features of a state")
    export.add_argument("state", type=_state_code, help="State FIPS code or USPS abbreviation")
    export.add_argument("output", type=Path)
    export.add_argument("--provider-id", type=int, help="Restrict to one provider")
    export.add_argument(
        "--synchronized-only",
        action="store_true",
        help="Only read partitions of synchronized filings",
    )
    _add_level_argument(export, "block")
    export.set_defaults(handler=run_export_geojson)

    provider_export = subparsers.add_parser(
        "export-provider-geojson",
        help="Write one GeoJSON file per synchronized provider and state, skipping existing files",
    )
    provider_export.add_argument("out_directory", type=Path)
    provider_export.add_argument("--provider-id", type=int, action="append", help="Restrict to a provider (repeatable)")
    provider_export.add_argument("--include-satellite", action="store_true", help="Also export satellite providers")
    _add_level_argument(provider_export, "all")
    provider_export.set_defaults(handler=run_export_provider_geojson)

    static = subparsers.add_parser("build-provider-static", help="Write the static provider directory")
    static.add_argument("out_directory", type=Path)
    static.set_defaults(handler=run_build_provider_static)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return asyncio.run(args.handler(args))
    except (MissingFCCCredentialsError, SpatialStoreError, BDCError) as e:
        logger.error(str(e))
        return 2
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
