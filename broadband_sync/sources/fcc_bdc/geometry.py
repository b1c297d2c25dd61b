"""
Census block geometry lookup.

The geometry provider is external to the pipeline: anything with an async
``find_geometry(geoid) -> bytes`` (WKB) works. The default implementation
reads a TIGER tabulation block table from a SpatiaLite database.
"""

import asyncio
import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Tuple

from shapely import wkb
from shapely.errors import GEOSException
from shapely.geometry import MultiPolygon, Polygon, mapping
from shapely.ops import unary_union
from sqlalchemy import text
from sqlalchemy.engine import Engine

from broadband_sync.core.config import Settings, get_settings
from broadband_sync.core.database import SpatialStoreError, build_engine
from broadband_sync.sources.fcc_bdc.errors import GeometryLookupError

logger = logging.getLogger(__name__)


class GeometryProvider(Protocol):
    async def find_geometry(self, geoid: str) -> bytes:
        """WKB geometry of a census block; raises GeometryLookupError."""
        ...


class SpatialiteGeometryProvider:
    """
    Reads block polygons from a SpatiaLite TIGER database.

    Blocks split over several rows are unioned by the database.
    """

    def __init__(
        self,
        engine: Engine,
        table: str = "tabulation_block",
        geoid_column: str = "GEOID",
        geometry_column: str = "GEOMETRY",
    ):
        self.engine = engine
        self._query = text(
            f"SELECT AsBinary(ST_Union({geometry_column})) AS geometry "
            f"FROM {table} WHERE {geoid_column} = :geoid"
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SpatialiteGeometryProvider":
        settings = settings or get_settings()
        if not settings.geometry_database_url:
            raise SpatialStoreError("GEOMETRY_DATABASE_URL is required to look up block geometry")
        engine = build_engine(settings.geometry_database_url, spatialite_module=settings.spatialite_module)
        return cls(engine)

    def _lookup(self, geoid: str) -> Optional[bytes]:
        with self.engine.connect() as conn:
            row = conn.execute(self._query, {"geoid": geoid}).first()
        return bytes(row.geometry) if row and row.geometry is not None else None

    async def find_geometry(self, geoid: str) -> bytes:
        try:
            geometry = await asyncio.to_thread(self._lookup, geoid)
        except Exception as e:
            raise GeometryLookupError(geoid, str(e)) from e
        if geometry is None:
            raise GeometryLookupError(geoid)
        return geometry


class StaticGeometryProvider:
    """Geometry from an in-memory GEOID -> WKB mapping."""

    def __init__(self, geometries: Mapping[str, bytes]):
        self.geometries = dict(geometries)

    async def find_geometry(self, geoid: str) -> bytes:
        try:
            return self.geometries[geoid]
        except KeyError:
            raise GeometryLookupError(geoid) from None


def _load_wkb(data: bytes, geoid: str):
    try:
        return wkb.loads(bytes(data))
    except (GEOSException, ValueError, TypeError) as e:
        raise GeometryLookupError(geoid, f"invalid WKB: {e}") from e


def _as_multipolygon(geometry, geoid: str) -> MultiPolygon:
    if isinstance(geometry, Polygon):
        return MultiPolygon([geometry])
    if isinstance(geometry, MultiPolygon):
        return geometry
    raise GeometryLookupError(geoid, f"expected a polygon, got {geometry.geom_type}")


def _simplified(geometry: MultiPolygon, simplify_tolerance: float) -> MultiPolygon:
    if simplify_tolerance <= 0:
        return geometry
    simplified = geometry.simplify(simplify_tolerance, preserve_topology=True)
    if isinstance(simplified, Polygon):
        simplified = MultiPolygon([simplified])
    if isinstance(simplified, MultiPolygon) and not simplified.is_empty:
        return simplified
    return geometry


def wkb_to_geojson(data: bytes, simplify_tolerance: float = 0.0, geoid: str = "?") -> Dict[str, Any]:
    """
    Convert WKB into a GeoJSON MultiPolygon geometry.

    Raises:
        GeometryLookupError: Not a (multi)polygon or not decodable
    """
    geometry = _as_multipolygon(_load_wkb(data, geoid), geoid)
    return mapping(_simplified(geometry, simplify_tolerance))


def union_to_geojson(
    blocks: Iterable[Tuple[str, bytes]],
    simplify_tolerance: float = 0.0,
    geoid: str = "?",
) -> Dict[str, Any]:
    """
    Dissolve block polygons into one MultiPolygon (tract and county features).

    Args:
        blocks: (block GEOID, WKB) pairs
        simplify_tolerance: Applied after the union
        geoid: GEOID of the resulting area, for error messages

    Raises:
        GeometryLookupError: A block is not a polygon, or there are no blocks
    """
    polygons = [_as_multipolygon(_load_wkb(data, block), block) for block, data in blocks]
    if not polygons:
        raise GeometryLookupError(geoid, "no block geometry to union")

    try:
        dissolved = unary_union(polygons)
    except GEOSException as e:
        raise GeometryLookupError(geoid, f"union failed: {e}") from e

    return mapping(_simplified(_as_multipolygon(dissolved, geoid), simplify_tolerance))
