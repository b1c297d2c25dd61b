"""
Spatial store connection and session management.

The store is an embedded SQLite database with the SpatiaLite extension.
Every new DBAPI connection loads the extension and applies the WAL/page
pragmas; failing to load the extension is fatal when
``require_spatial_extension`` is set.
"""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import sessionmaker

from broadband_sync.core.config import get_settings
from broadband_sync.core.models import Base

logger = logging.getLogger(__name__)


class SpatialStoreError(RuntimeError):
    """The spatial store is unreachable or misconfigured. Always fatal."""


SQLITE_PRAGMAS = {
    "journal_mode": "WAL",
    "auto_vacuum": "INCREMENTAL",
    "page_size": 4096,
    "cache_size": 10000,
}

# ---------------------------------------------------------------------------
# Singleton engine & session factory: created once, reused everywhere
# ---------------------------------------------------------------------------
_engine: Optional[Engine] = None
_SessionLocal = None


def _install_sqlite_hooks(engine: Engine, spatialite_module: Optional[str]) -> None:
    """Load SpatiaLite and apply pragmas on every new connection."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        if spatialite_module:
            try:
                dbapi_connection.enable_load_extension(True)
                dbapi_connection.load_extension(spatialite_module)
                dbapi_connection.enable_load_extension(False)
            except Exception as e:
                raise SpatialStoreError(
                    f"Could not load spatial extension '{spatialite_module}': {e}"
                ) from e

        cursor = dbapi_connection.cursor()
        try:
            for pragma, value in SQLITE_PRAGMAS.items():
                cursor.execute(f"PRAGMA {pragma}={value}")
        finally:
            cursor.close()


def build_engine(
    database_url: str,
    spatialite_module: Optional[str] = None,
    echo: bool = False,
) -> Engine:
    """
    Create an engine for a SQLite spatial store.

    Args:
        database_url: SQLAlchemy URL (sqlite only)
        spatialite_module: Extension to load on connect (None skips loading)
        echo: Log SQL statements

    Raises:
        SpatialStoreError: URL is not SQLite or the store cannot be opened
    """
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite":
        raise SpatialStoreError(f"Spatial store must be SQLite, got '{url.get_backend_name()}'")

    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, echo=echo)
    _install_sqlite_hooks(engine, spatialite_module)

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SpatialStoreError:
        raise
    except Exception as e:
        raise SpatialStoreError(f"Could not open spatial store {database_url}: {e}") from e

    return engine


def get_engine() -> Engine:
    """
    Get the shared spatial store engine (singleton).

    Created once and reused for the lifetime of the process.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        module = settings.spatialite_module if settings.require_spatial_extension else None
        _engine = build_engine(settings.database_url, spatialite_module=module)
        logger.info(f"Spatial store ready: {settings.database_url}")
    return _engine


def create_tables(engine: Optional[Engine] = None) -> None:
    """
    Create all spatial store tables if they don't exist.

    Idempotent - safe to call multiple times.
    """
    if engine is None:
        engine = get_engine()

    logger.info("Creating spatial store tables if they don't exist...")
    Base.metadata.create_all(bind=engine)
    logger.info("Spatial store tables ready")


def get_session_factory():
    """Get the shared session factory (singleton)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SessionLocal


def reset_engine() -> None:
    """Dispose of the shared engine (for testing)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
