"""
Unit tests for configuration module.

Tests run WITHOUT .env file and WITHOUT FCC credentials.
"""
from pathlib import Path

import pytest

from broadband_sync.core.config import (
    Settings,
    get_settings,
    reset_settings,
    MissingFCCCredentialsError,
)


@pytest.mark.unit
def test_config_has_safe_defaults(clean_env):
    """Startup works with no environment at all."""
    settings = Settings(_env_file=None)

    assert settings.database_url.startswith("sqlite:///")
    assert settings.fcc_requests_per_minute == 10
    assert settings.download_concurrency == 10
    assert settings.partition_read_concurrency == 10
    assert settings.write_pool_capacity == 30_000
    assert settings.scratch_database == 10
    assert settings.bloom_false_positive_rate == 0.01


@pytest.mark.unit
def test_config_credentials_optional_for_startup(clean_env):
    """FCC credentials are optional for app startup."""
    settings = Settings(_env_file=None)
    assert settings.fcc_map_username is None
    assert settings.fcc_map_api_key is None


@pytest.mark.unit
def test_config_credentials_required_for_sync(clean_env):
    """Credentials are required when calling require_fcc_credentials()."""
    settings = Settings(_env_file=None)

    with pytest.raises(MissingFCCCredentialsError) as exc_info:
        settings.require_fcc_credentials()

    assert "FCC_MAP_USERNAME and FCC_MAP_API_KEY are required" in str(exc_info.value)
    assert "https://broadbandmap.fcc.gov" in str(exc_info.value)


@pytest.mark.unit
def test_config_partial_credentials_rejected(clean_env, monkeypatch):
    monkeypatch.setenv("FCC_MAP_USERNAME", "analyst@example.com")

    settings = Settings(_env_file=None)

    with pytest.raises(MissingFCCCredentialsError):
        settings.require_fcc_credentials()


@pytest.mark.unit
def test_config_credentials_from_env(clean_env, monkeypatch):
    monkeypatch.setenv("FCC_MAP_USERNAME", "analyst@example.com")
    monkeypatch.setenv("FCC_MAP_API_KEY", "token123")

    settings = Settings(_env_file=None)

    assert settings.require_fcc_credentials() == ("analyst@example.com", "token123")


@pytest.mark.unit
def test_config_concurrency_validation(clean_env, monkeypatch):
    """Concurrency must be between 1 and 50."""
    monkeypatch.setenv("DOWNLOAD_CONCURRENCY", "0")
    with pytest.raises(Exception):
        Settings(_env_file=None)

    monkeypatch.setenv("DOWNLOAD_CONCURRENCY", "51")
    with pytest.raises(Exception):
        Settings(_env_file=None)

    monkeypatch.setenv("DOWNLOAD_CONCURRENCY", "5")
    settings = Settings(_env_file=None)
    assert settings.download_concurrency == 5


@pytest.mark.unit
def test_config_false_positive_rate_bounds(clean_env, monkeypatch):
    monkeypatch.setenv("BLOOM_FALSE_POSITIVE_RATE", "0")
    with pytest.raises(Exception):
        Settings(_env_file=None)

    monkeypatch.setenv("BLOOM_FALSE_POSITIVE_RATE", "0.001")
    assert Settings(_env_file=None).bloom_false_positive_rate == 0.001


@pytest.mark.unit
def test_config_log_level_validation(clean_env, monkeypatch):
    """Log level must be valid, and is uppercased."""
    monkeypatch.setenv("LOG_LEVEL", "INVALID")
    with pytest.raises(Exception):
        Settings(_env_file=None)

    monkeypatch.setenv("LOG_LEVEL", "debug")
    settings = Settings(_env_file=None)
    assert settings.log_level == "DEBUG"


@pytest.mark.unit
def test_config_zoom_range_validation(clean_env, monkeypatch):
    monkeypatch.setenv("GEOJSON_MIN_ZOOM", "12")
    monkeypatch.setenv("GEOJSON_MAX_ZOOM", "8")
    with pytest.raises(Exception):
        Settings(_env_file=None)


@pytest.mark.unit
def test_config_cache_directory(clean_env, monkeypatch, tmp_path):
    monkeypatch.setenv("DATA_DIRECTORY", str(tmp_path))

    settings = Settings(_env_file=None)

    assert settings.cache_directory == Path(tmp_path) / "scratch" / "fcc" / "bdc"


@pytest.mark.unit
def test_get_settings_singleton(clean_env):
    """get_settings() returns the same instance until reset."""
    settings1 = get_settings()
    settings2 = get_settings()
    assert settings1 is settings2

    reset_settings()
    settings3 = get_settings()
    assert settings3 is not settings1
