"""
Unit tests for the rate-limited fetcher.

The client is a stub that writes a generated archive instead of calling the
Broadband Map API.
"""
import asyncio

import pytest

from broadband_sync.sources.fcc_bdc.fetcher import DownloadProgress, download_filing, fetch_filings
from broadband_sync.sources.fcc_bdc.partitions import read_row_count
from broadband_sync.sources.fcc_bdc.paths import archive_path, partition_path


class StubDownloadClient:
    def __init__(self, archive_writer, rows, delay=0.01, fail_ids=()):
        self.archive_writer = archive_writer
        self.rows = rows
        self.delay = delay
        self.fail_ids = set(fail_ids)
        self.active = 0
        self.peak = 0
        self.downloads = []
        self.checkpoints = 0

    async def download_file(self, file_id, destination, data_type=None, gis_type=None, on_progress=None):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if file_id in self.fail_ids:
                raise ConnectionError(f"connection reset for {file_id}")
            self.archive_writer(destination, self.rows)
            self.downloads.append(file_id)
            size = destination.stat().st_size
            if on_progress:
                on_progress(size, size)
            return size
        finally:
            self.active -= 1

    async def cooldown_checkpoint(self):
        self.checkpoints += 1


def filings_for(filing_factory, count, record_count=3):
    return [
        filing_factory(file_id=5000 + i, provider_id=100 + i, record_count=record_count)
        for i in range(count)
    ]


class TestDownloadFiling:
    @pytest.mark.asyncio
    async def test_downloads_into_cache_layout(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows)
        filing = filing_factory()

        path, downloaded = await download_filing(client, filing, cache_root)

        assert downloaded is True
        assert path == archive_path(cache_root, filing)
        assert path.parts[-6:-1] == ("06", "providers", "130077", "provider", "fixed-broadband")
        assert path.name == f"{filing.file_name}.zip"

    @pytest.mark.asyncio
    async def test_cached_archive_is_reused(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows)
        filing = filing_factory()
        await download_filing(client, filing, cache_root)

        _, downloaded = await download_filing(client, filing, cache_root)

        assert downloaded is False
        assert client.downloads == [filing.file_id]

    @pytest.mark.asyncio
    async def test_skip_cache_downloads_again(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows)
        filing = filing_factory()
        await download_filing(client, filing, cache_root)

        _, downloaded = await download_filing(client, filing, cache_root, skip_cache=True)

        assert downloaded is True
        assert len(client.downloads) == 2


class TestFetchFilings:
    @pytest.mark.asyncio
    async def test_concurrency_bound(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows, delay=0.02)
        filings = filings_for(filing_factory, 35)

        report = await fetch_filings(client, filings, cache_root, concurrency=10, convert=False)

        assert len(report.downloaded) == 35
        assert client.peak <= 10
        assert report.peak_in_flight <= 10
        assert report.peak_in_flight == 10

    @pytest.mark.asyncio
    async def test_cooldown_checkpoint_every_k_completions(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows, delay=0)
        filings = filings_for(filing_factory, 25)

        await fetch_filings(client, filings, cache_root, concurrency=10, convert=False)

        assert client.checkpoints == 2

    @pytest.mark.asyncio
    async def test_failures_are_collected_not_raised(self, cache_root, filing_factory, archive_writer, sample_rows):
        filings = filings_for(filing_factory, 5)
        client = StubDownloadClient(archive_writer, sample_rows, fail_ids={5001, 5003})

        report = await fetch_filings(client, filings, cache_root, concurrency=2, convert=False)

        assert sorted(f.file_id for f in report.downloaded) == [5000, 5002, 5004]
        assert sorted(failure.filing.file_id for failure in report.failures) == [5001, 5003]
        assert "connection reset" in report.failures[0].error
        assert len(report.failed_files) == 2

    @pytest.mark.asyncio
    async def test_converts_tabular_archives(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows)
        filings = filings_for(filing_factory, 2)

        report = await fetch_filings(client, filings, cache_root)

        assert len(report.converted) == 2
        for filing in filings:
            assert read_row_count(partition_path(cache_root, filing)) == 3

    @pytest.mark.asyncio
    async def test_second_run_is_served_from_cache(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows)
        filings = filings_for(filing_factory, 3)
        await fetch_filings(client, filings, cache_root)

        report = await fetch_filings(client, filings, cache_root)

        assert len(report.cached) == 3
        assert report.converted == []
        assert len(client.downloads) == 3

    @pytest.mark.asyncio
    async def test_conversion_mismatch_is_a_failure(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows)
        filings = filings_for(filing_factory, 1, record_count=10)

        report = await fetch_filings(client, filings, cache_root)

        assert report.converted == []
        assert len(report.failures) == 1
        assert not partition_path(cache_root, filings[0]).exists()

    @pytest.mark.asyncio
    async def test_geospatial_files_are_not_converted(self, cache_root, filing_factory, archive_writer, sample_rows):
        client = StubDownloadClient(archive_writer, sample_rows)
        filing = filing_factory(file_type="gis")

        report = await fetch_filings(client, [filing], cache_root)

        assert len(report.downloaded) == 1
        assert report.converted == []


class TestDownloadProgress:
    def test_logs_each_step_once(self, caplog):
        progress = DownloadProgress("file", step=25)

        with caplog.at_level("DEBUG", logger="broadband_sync.sources.fcc_bdc.fetcher"):
            for received in range(0, 101, 5):
                progress(received, 100)
            progress(10, None)

        messages = [record.getMessage() for record in caplog.records]
        assert len(messages) == 4
        assert messages[0].startswith("file: 25%")
