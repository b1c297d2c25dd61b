"""
Configuration module with strict validation.

Key principles:
- Startup does NOT require FCC credentials
- Real catalog/download operations DO require them (fail early with clear error)
- All rate limits, concurrency and pool settings are configurable
- Safe defaults for all optional settings
"""
from pathlib import Path
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MissingFCCCredentialsError(Exception):
    """Raised when FCC API access is requested without a username/API key."""
    pass


class Settings(BaseSettings):
    """Application settings with validation.

    Loads from environment variables and .env file.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Spatial store (embedded SQLite + SpatiaLite)
    database_url: str = Field(
        default="sqlite:///data/bdc/bdc.sqlite3",
        description="SQLAlchemy URL of the spatial store"
    )

    spatialite_module: str = Field(
        default="mod_spatialite",
        description="Name of the SpatiaLite loadable extension"
    )

    require_spatial_extension: bool = Field(
        default=True,
        description="Fail fast when the spatial extension cannot be loaded"
    )

    # FCC Broadband Map API (OPTIONAL for startup, REQUIRED for sync)
    fcc_map_username: Optional[str] = Field(
        default=None,
        description="FCC Broadband Map account username"
    )

    fcc_map_api_key: Optional[str] = Field(
        default=None,
        description="FCC Broadband Map API token (hash_value header)"
    )

    fcc_requests_per_minute: int = Field(
        default=10,
        ge=1,
        le=600,
        description="Requests per minute before the client enforces a cooldown"
    )

    # Local cache
    data_directory: Path = Field(
        default=Path("data"),
        description="Root directory for archives, partitions and outputs"
    )

    # Scratch key-value store
    redis_url: str = Field(
        default="redis://localhost:6379",
        description="Redis URL of the scratch store"
    )

    scratch_database: int = Field(
        default=10,
        ge=0,
        le=15,
        description="Redis database index used for the location index"
    )

    # Concurrency and backpressure
    download_concurrency: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum concurrent filing downloads"
    )

    partition_read_concurrency: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum concurrent partition reads while indexing"
    )

    write_pool_capacity: int = Field(
        default=30_000,
        ge=1,
        description="Maximum outstanding scratch-store writes"
    )

    # Retry Configuration
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Maximum number of retries for failed API requests"
    )

    retry_backoff_factor: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Exponential backoff factor for retries"
    )

    # Columnar partitions
    bloom_false_positive_rate: float = Field(
        default=0.01,
        gt=0.0,
        lt=1.0,
        description="Target false positive rate of partition Bloom filters"
    )

    # Geometry and GeoJSON export
    geometry_database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL of the census block geometry store"
    )

    geometry_simplify_tolerance: float = Field(
        default=0.0,
        ge=0.0,
        description="Douglas-Peucker tolerance applied to block geometry (0 disables)"
    )

    geojson_min_zoom: int = Field(default=10, ge=0, le=24)
    geojson_max_zoom: int = Field(default=14, ge=0, le=24)
    geojson_layer: str = Field(default="census_blocks")

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # Testing
    run_integration_tests: bool = Field(
        default=False,
        description="Enable integration tests (requires FCC credentials and network)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v_upper

    @field_validator("geojson_max_zoom")
    @classmethod
    def validate_zoom_range(cls, v: int, info) -> int:
        """Max zoom may not be below min zoom."""
        min_zoom = info.data.get("geojson_min_zoom")
        if min_zoom is not None and v < min_zoom:
            raise ValueError("geojson_max_zoom must be >= geojson_min_zoom")
        return v

    def require_fcc_credentials(self) -> tuple:
        """
        Get the FCC username and API key, raising a clear error if missing.

        Call this at the START of any operation that talks to the FCC API.

        Raises:
            MissingFCCCredentialsError: If either value is not configured

        Returns:
            tuple: (username, api_key)
        """
        if not self.fcc_map_username or not self.fcc_map_api_key:
            raise MissingFCCCredentialsError(
                "FCC_MAP_USERNAME and FCC_MAP_API_KEY are required for BDC operations. "
                "Please set them in your .env file or environment variables. "
                "Generate a token at: https://broadbandmap.fcc.gov/login"
            )
        return self.fcc_map_username, self.fcc_map_api_key

    @property
    def cache_directory(self) -> Path:
        """Root of the archive/partition cache."""
        return self.data_directory / "scratch" / "fcc" / "bdc"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create the global settings instance.

    This pattern allows:
    - Easy testing (can reset settings between tests)
    - Lazy loading (only loads when first accessed)
    - Singleton pattern (same instance used everywhere)
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the global settings instance.

    Useful for testing to ensure clean state between tests.
    """
    global _settings
    _settings = None
