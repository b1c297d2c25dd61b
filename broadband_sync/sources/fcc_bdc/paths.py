"""
Cache layout of downloaded archives and converted partitions.

    <cache_root>/<state>/providers/<provider_id>/<category>/<subcategory>/
        <file_name>.zip
        <file_name>.parquet
        <file_name>.parquet.bloom
"""

from pathlib import Path
from typing import Iterable, List, Optional, Union

from broadband_sync.sources.fcc_bdc.common import FilingDescriptor
from broadband_sync.sources.fcc_bdc.metadata import slugify

ARCHIVE_SUFFIX = ".zip"
PARTITION_SUFFIX = ".parquet"
FILTER_SUFFIX = ".bloom"

PathLike = Union[str, Path]


def filing_cache_directory(cache_root: PathLike, filing: FilingDescriptor) -> Path:
    return (
        Path(cache_root)
        / filing.state_code
        / "providers"
        / str(filing.provider_id)
        / slugify(filing.category)
        / slugify(filing.subcategory)
    )


def archive_path(cache_root: PathLike, filing: FilingDescriptor) -> Path:
    return filing_cache_directory(cache_root, filing) / f"{filing.file_name}{ARCHIVE_SUFFIX}"


def partition_path(cache_root: PathLike, filing: FilingDescriptor) -> Path:
    return filing_cache_directory(cache_root, filing) / f"{filing.file_name}{PARTITION_SUFFIX}"


def filter_path(partition: PathLike) -> Path:
    """Bloom filter sidecar of a partition."""
    partition = Path(partition)
    return partition.with_name(partition.name + FILTER_SUFFIX)


def state_partition_paths(
    cache_root: PathLike,
    state_code: str,
    filings: Optional[Iterable[FilingDescriptor]] = None,
) -> List[Path]:
    """
    Partitions cached for a state.

    When ``filings`` is given only their partitions are returned (if present
    on disk); otherwise every partition under the state's directory is.
    """
    if filings is not None:
        paths = [
            partition_path(cache_root, filing)
            for filing in filings
            if filing.state_code == state_code and filing.is_tabular
        ]
        return sorted(path for path in paths if path.exists())

    state_directory = Path(cache_root) / state_code
    if not state_directory.exists():
        return []
    return sorted(state_directory.glob(f"providers/*/*/*/*{PARTITION_SUFFIX}"))
