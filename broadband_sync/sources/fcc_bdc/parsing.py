"""
Parsing of provider availability CSV filings.

A fixed broadband filing is a zip archive holding one CSV file:

    frn,provider_id,brand_name,location_id,technology,
    max_advertised_download_speed,max_advertised_upload_speed,low_latency,
    business_residential_code,state_usps,block_geoid,h3_res8_id

Columns are located by header name. ``provider_id`` comes from the filing,
not the row, so every record of a partition shares it.
"""

import csv
import io
import logging
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, TextIO, Union

from broadband_sync.sources.fcc_bdc.errors import ConversionError
from broadband_sync.sources.fcc_bdc.schema import AvailabilityRecord, encode_geoid

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = (
    "location_id",
    "technology",
    "max_advertised_download_speed",
    "max_advertised_upload_speed",
    "low_latency",
    "business_residential_code",
    "block_geoid",
)


@contextmanager
def open_single_member(archive_path: Union[str, Path]) -> Iterator[TextIO]:
    """
    Open the only file of a filing archive as text.

    Raises:
        ConversionError: Archive is unreadable or does not hold exactly one file
    """
    try:
        archive = zipfile.ZipFile(archive_path)
    except (zipfile.BadZipFile, OSError) as e:
        raise ConversionError(f"Could not open archive {archive_path}: {e}") from e

    with archive:
        members = [info for info in archive.infolist() if not info.is_dir()]
        if len(members) != 1:
            raise ConversionError(
                f"Expected a single file in {Path(archive_path).name}, found {len(members)}"
            )
        with archive.open(members[0]) as raw:
            yield io.TextIOWrapper(raw, encoding="utf-8", newline="")


def _column_index(header: Iterable[str]) -> Dict[str, int]:
    index = {name.strip().lower(): position for position, name in enumerate(header)}
    missing = [name for name in REQUIRED_COLUMNS if name not in index]
    if missing:
        raise ConversionError(f"Filing is missing columns: {', '.join(missing)}")
    return index


def take_availability_lines(lines: Iterable[str], provider_id: int) -> Iterator[AvailabilityRecord]:
    """
    Parse CSV lines (header first) into availability records, in file order.

    Raises:
        ConversionError: Missing header columns or a malformed row
    """
    reader = csv.reader(lines)
    try:
        header = next(reader)
    except StopIteration:
        return

    columns = _column_index(header)
    location = columns["location_id"]
    technology = columns["technology"]
    download = columns["max_advertised_download_speed"]
    upload = columns["max_advertised_upload_speed"]
    low_latency = columns["low_latency"]
    business_residential = columns["business_residential_code"]
    block = columns["block_geoid"]

    for row in reader:
        if not row:
            continue
        try:
            yield AvailabilityRecord(
                provider_id=provider_id,
                location_id=int(row[location]),
                technology_code=int(row[technology]),
                max_advertised_download_speed=int(row[download] or 0),
                max_advertised_upload_speed=int(row[upload] or 0),
                low_latency=row[low_latency].strip() == "1",
                business_residential_code=row[business_residential].strip()[:1],
                geoid=encode_geoid(row[block]),
            )
        except (IndexError, ValueError) as e:
            raise ConversionError(f"Malformed availability row {reader.line_num}: {e}") from e


def read_archive_records(archive_path: Union[str, Path], provider_id: int) -> Iterator[AvailabilityRecord]:
    """Stream the records of a filing archive without extracting it to disk."""
    with open_single_member(archive_path) as handle:
        yield from take_availability_lines(handle, provider_id)
