"""
Pytest configuration and shared fixtures.
"""
import csv
import io
import zipfile
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from broadband_sync.core.config import reset_settings
from broadband_sync.core.models import Base
from broadband_sync.core.rate_limiter import RateLimiterService, reset_rate_limiter
from broadband_sync.sources.fcc_bdc.common import FilingDescriptor


CSV_HEADER = [
    "frn",
    "provider_id",
    "brand_name",
    "location_id",
    "technology",
    "max_advertised_download_speed",
    "max_advertised_upload_speed",
    "low_latency",
    "business_residential_code",
    "state_usps",
    "block_geoid",
    "h3_res8_id",
]


@pytest.fixture(scope="function")
def clean_env(monkeypatch):
    """
    Clean environment for testing.

    Removes all app-related env vars to ensure clean state.
    """
    env_vars = [
        "DATABASE_URL",
        "FCC_MAP_USERNAME",
        "FCC_MAP_API_KEY",
        "FCC_REQUESTS_PER_MINUTE",
        "DATA_DIRECTORY",
        "REDIS_URL",
        "SCRATCH_DATABASE",
        "DOWNLOAD_CONCURRENCY",
        "WRITE_POOL_CAPACITY",
        "BLOOM_FALSE_POSITIVE_RATE",
        "GEOJSON_MIN_ZOOM",
        "GEOJSON_MAX_ZOOM",
        "LOG_LEVEL",
        "RUN_INTEGRATION_TESTS",
        "MAX_RETRIES",
        "RETRY_BACKOFF_FACTOR",
        "REQUIRE_SPATIAL_EXTENSION",
        "SPATIALITE_MODULE",
        "PARTITION_READ_CONCURRENCY",
        "GEOMETRY_DATABASE_URL",
        "GEOMETRY_SIMPLIFY_TOLERANCE",
        "GEOJSON_LAYER",
    ]
    for var in env_vars:
        monkeypatch.delenv(var, raising=False)

    # Reset settings singleton
    reset_settings()

    yield

    # Reset again after test
    reset_settings()


@pytest.fixture(scope="function")
def test_db():
    """
    Create an in-memory SQLite database for testing.

    Fresh database for each test. The SpatiaLite extension is not loaded;
    none of the tables need spatial functions.
    """
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def rate_limiter():
    """A private rate limiter so tests never share buckets or cooldowns."""
    reset_rate_limiter()
    yield RateLimiterService()
    reset_rate_limiter()


@pytest.fixture
def cache_root(tmp_path) -> Path:
    root = tmp_path / "cache"
    root.mkdir()
    return root


# =============================================================================
# Filing fixtures
# =============================================================================

def make_filing(
    file_id: int = 1001,
    provider_id: int = 130077,
    state_code: str = "06",
    record_count: int = 3,
    file_type: str = "csv",
    provider_name: str = "Acme Broadband",
    revision: datetime = datetime(2023, 11, 14),
    vintage: datetime = datetime(2023, 6, 1),
    technology_codes=frozenset({10, 50}),
    synchronized_at=None,
    file_name: str = None,
) -> FilingDescriptor:
    """Build a FilingDescriptor with sensible defaults."""
    if file_name is None:
        stamp = f"J{vintage.year % 100:02d}_{revision.strftime('%d%b%Y').lower()}"
        file_name = f"bdc_{state_code}_{provider_id}_{file_id}_fixed_broadband_{stamp}"
    return FilingDescriptor(
        file_id=file_id,
        file_name=file_name,
        file_type=file_type,
        provider_id=provider_id,
        provider_name=provider_name,
        category="Provider",
        subcategory="Fixed Broadband",
        state_code=state_code,
        record_count=record_count,
        revision=revision,
        vintage=vintage,
        technology_codes=frozenset(technology_codes),
        synchronized_at=synchronized_at,
    )


def availability_csv(rows) -> str:
    """
    Render availability rows as filing CSV text.

    Each row is (location_id, technology, download, upload, low_latency,
    business_residential_code, block_geoid).
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for location_id, technology, download, upload, low_latency, brc, geoid in rows:
        writer.writerow([
            "0001234567", "130077", "Acme", location_id, technology,
            download, upload, low_latency, brc, "CA", geoid, "8828308281fffff",
        ])
    return buffer.getvalue()


def write_archive(path: Path, rows, member_name: str = "availability.csv") -> Path:
    """Write a single-member filing archive."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(member_name, availability_csv(rows))
    return path


@pytest.fixture
def filing_factory():
    return make_filing


@pytest.fixture
def archive_writer():
    return write_archive


@pytest.fixture
def csv_renderer():
    return availability_csv


@pytest.fixture
def sample_rows():
    """Three records over two blocks of Alameda County, CA."""
    return [
        (1000001, 10, 25, 3, 1, "R", "060014001001000"),
        (1000002, 50, 940, 880, 1, "X", "060014001001000"),
        (1000003, 50, 1000, 1000, 0, "B", "060014001002000"),
    ]
