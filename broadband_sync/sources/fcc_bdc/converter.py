"""
Conversion of downloaded filing archives into columnar partitions.

A cached partition is reused only when its row count equals the filing's
declared record count; anything else (interrupted run, truncated file) is
deleted and converted again from the archive.
"""

import enum
import logging
from pathlib import Path
from typing import Union

from broadband_sync.sources.fcc_bdc.errors import PartitionCorruptError
from broadband_sync.sources.fcc_bdc.parsing import read_archive_records
from broadband_sync.sources.fcc_bdc.partitions import (
    DEFAULT_FALSE_POSITIVE_RATE,
    PartitionWriter,
    read_row_count,
    remove_partition,
)

logger = logging.getLogger(__name__)


class ConversionStatus(str, enum.Enum):
    CACHED = "cached"
    CONVERTED = "converted"


def check_partition_valid(partition_path: Union[str, Path], expected_row_count: int) -> bool:
    """True when the partition exists, is readable and has the expected rows."""
    row_count = read_row_count(partition_path)
    return row_count is not None and row_count == expected_row_count


def verify_partition(partition_path: Union[str, Path], expected_row_count: int) -> int:
    """
    Check a partition against its declared row count.

    Raises:
        PartitionCorruptError: Missing, unreadable or wrong row count
    """
    row_count = read_row_count(partition_path)
    if row_count != expected_row_count:
        raise PartitionCorruptError(Path(partition_path), expected_row_count, row_count)
    return row_count


def write_provider_availability(
    archive_path: Union[str, Path],
    partition_path: Union[str, Path],
    provider_id: int,
    record_count: int,
    skip_cache: bool = False,
    false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
) -> ConversionStatus:
    """
    Convert a filing archive into a partition.

    Args:
        archive_path: Downloaded zip archive
        partition_path: Destination partition (deterministic per filing)
        provider_id: Provider stamped on every record
        record_count: Declared record count of the filing
        skip_cache: Convert even when a valid partition exists
        false_positive_rate: Bloom filter target rate

    Returns:
        ConversionStatus.CACHED or ConversionStatus.CONVERTED

    Raises:
        ConversionError: Archive could not be parsed
        PartitionCorruptError: Converted row count differs from record_count
    """
    partition_path = Path(partition_path)

    if not skip_cache:
        if check_partition_valid(partition_path, record_count):
            logger.debug(f"Using cached partition {partition_path.name}")
            return ConversionStatus.CACHED
        if partition_path.exists():
            logger.info(f"Partition {partition_path.name} is stale, regenerating")

    remove_partition(partition_path)

    with PartitionWriter(
        partition_path,
        expected_rows=record_count,
        false_positive_rate=false_positive_rate,
    ) as writer:
        for record in read_archive_records(archive_path, provider_id):
            writer.append(record)

    try:
        verify_partition(partition_path, record_count)
    except PartitionCorruptError:
        remove_partition(partition_path)
        raise

    logger.info(f"Converted {partition_path.name}: {record_count} records")
    return ConversionStatus.CONVERTED
