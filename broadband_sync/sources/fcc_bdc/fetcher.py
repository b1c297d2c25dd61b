"""
Rate-limited download of filing archives.

Downloads run through take_in_parallel with at most ``concurrency`` in
flight. Every ``concurrency`` completions the fetcher awaits the client's
cooldown checkpoint, so a throttle seen by any request pauses scheduling for
all of them. A failing file is recorded in the report and never aborts its
siblings.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from broadband_sync.core.parallel import take_in_parallel
from broadband_sync.sources.fcc_bdc.common import BDCFilingDataType, FilingDescriptor
from broadband_sync.sources.fcc_bdc.converter import ConversionStatus, write_provider_availability
from broadband_sync.sources.fcc_bdc.partitions import DEFAULT_FALSE_POSITIVE_RATE
from broadband_sync.sources.fcc_bdc.paths import archive_path, partition_path

logger = logging.getLogger(__name__)


@dataclass
class FetchFailure:
    filing: FilingDescriptor
    error: str


@dataclass
class FetchReport:
    """Outcome of one fetch run."""

    downloaded: List[FilingDescriptor] = field(default_factory=list)
    cached: List[FilingDescriptor] = field(default_factory=list)
    converted: List[FilingDescriptor] = field(default_factory=list)
    failures: List[FetchFailure] = field(default_factory=list)
    peak_in_flight: int = 0

    @property
    def succeeded(self) -> List[FilingDescriptor]:
        return self.downloaded + self.cached

    @property
    def failed_files(self) -> List[str]:
        return [failure.filing.file_name for failure in self.failures]


class DownloadProgress:
    """Logs download progress in 25% steps."""

    def __init__(self, label: str, step: int = 25):
        self.label = label
        self.step = step
        self._next_mark = step

    def __call__(self, received: int, total: Optional[int]) -> None:
        if not total:
            return
        percent = received * 100 // total
        if percent >= self._next_mark:
            logger.debug(f"{self.label}: {percent}% of {total} bytes")
            self._next_mark = (percent // self.step + 1) * self.step


async def download_filing(
    client,
    filing: FilingDescriptor,
    cache_root: Union[str, Path],
    skip_cache: bool = False,
    data_type: BDCFilingDataType = BDCFilingDataType.AVAILABILITY,
) -> Tuple[Path, bool]:
    """
    Download one filing archive unless it is already cached.

    Returns:
        (archive path, True if downloaded / False if served from cache)
    """
    destination = archive_path(cache_root, filing)

    if not skip_cache and destination.exists():
        logger.debug(f"Using cached archive {destination.name}")
        return destination, False

    logger.debug(f"Downloading file {filing.file_name} ({filing.file_id}) of type {data_type}")
    await client.download_file(
        filing.file_id,
        destination,
        data_type=data_type,
        on_progress=DownloadProgress(filing.file_name),
    )
    return destination, True


async def fetch_filings(
    client,
    filings: Iterable[FilingDescriptor],
    cache_root: Union[str, Path],
    concurrency: int = 10,
    cancellation: Optional[asyncio.Event] = None,
    skip_cache: bool = False,
    convert: bool = True,
    false_positive_rate: float = DEFAULT_FALSE_POSITIVE_RATE,
) -> FetchReport:
    """
    Download (and optionally convert) a batch of filings.

    Args:
        client: BDCClient (anything with download_file/cooldown_checkpoint)
        filings: Filings to fetch
        cache_root: Archive/partition cache root
        concurrency: Maximum downloads in flight
        cancellation: Shared cancellation signal
        skip_cache: Re-download and re-convert cached files
        convert: Convert tabular archives into partitions

    Returns:
        FetchReport with per-file outcomes and the failure list
    """
    report = FetchReport()
    in_flight = 0

    async def fetch_one(filing: FilingDescriptor) -> FilingDescriptor:
        nonlocal in_flight
        in_flight += 1
        report.peak_in_flight = max(report.peak_in_flight, in_flight)
        try:
            archive, downloaded = await download_filing(client, filing, cache_root, skip_cache)
            (report.downloaded if downloaded else report.cached).append(filing)

            if convert and filing.is_tabular:
                status = await asyncio.to_thread(
                    write_provider_availability,
                    archive,
                    partition_path(cache_root, filing),
                    filing.provider_id,
                    filing.record_count,
                    skip_cache,
                    false_positive_rate,
                )
                if status == ConversionStatus.CONVERTED:
                    report.converted.append(filing)
        except Exception as e:
            logger.warning(f"Failed to fetch {filing.file_name}: {e}")
            report.failures.append(FetchFailure(filing=filing, error=str(e)))
        finally:
            in_flight -= 1
        return filing

    completed = 0
    async for _ in take_in_parallel(filings, concurrency, fetch_one, cancellation):
        completed += 1
        if completed % concurrency == 0:
            await client.cooldown_checkpoint()

    logger.info(
        f"Fetched {completed} files: {len(report.downloaded)} downloaded, "
        f"{len(report.cached)} cached, {len(report.converted)} converted"
    )
    if report.failures:
        logger.error(f"Failed to download {len(report.failures)} files.")
        logger.error(f"Failed files: {report.failed_files}")

    return report
