"""
Census block aggregation and newline-delimited GeoJSON export.

Records of the converted partitions are folded per block GEOID into a
BlockAggregate (provider, location and technology sets plus max speeds),
joined with the block polygon and written one Feature per line:

    {"type": "Feature", "id": 60014001001, "geometry": {...},
     "properties": {"geoid": "060014001001", "provider_ids": [...], ...,
                    "tippecanoe": {"minzoom": 10, "maxzoom": 14, "layer": "census_blocks"}}}

Tract and county features fold the aggregates of their blocks (GEOID
prefixes of 11 and 5 digits) and dissolve the block polygons with shapely.

Partitions whose Bloom filters rule out the requested block or provider are
skipped without being read.
"""

import asyncio
import enum
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Set, Tuple, Union

import pyarrow as pa

from broadband_sync.core.config import Settings, get_settings
from broadband_sync.sources.fcc_bdc.geometry import GeometryProvider, union_to_geojson, wkb_to_geojson
from broadband_sync.sources.fcc_bdc.metadata import get_state_label
from broadband_sync.sources.fcc_bdc.partitions import iter_batches, load_filters
from broadband_sync.sources.fcc_bdc.paths import state_partition_paths
from broadband_sync.sources.fcc_bdc.schema import decode_geoid, encode_geoid

logger = logging.getLogger(__name__)

AGGREGATE_COLUMNS = [
    "provider_id",
    "location_id",
    "technology_code",
    "max_advertised_download_speed",
    "max_advertised_upload_speed",
    "geoid",
]


@dataclass
class BlockAggregate:
    """Folded availability of one census block."""

    geoid: str
    provider_ids: Set[int] = field(default_factory=set)
    location_ids: Set[int] = field(default_factory=set)
    technology_codes: Set[int] = field(default_factory=set)
    max_advertised_download_speed: int = 0
    max_advertised_upload_speed: int = 0
    record_count: int = 0

    def fold(
        self,
        provider_id: int,
        location_id: int,
        technology_code: int,
        download_speed: int,
        upload_speed: int,
    ) -> None:
        self.provider_ids.add(provider_id)
        self.location_ids.add(location_id)
        self.technology_codes.add(technology_code)
        self.max_advertised_download_speed = max(self.max_advertised_download_speed, download_speed)
        self.max_advertised_upload_speed = max(self.max_advertised_upload_speed, upload_speed)
        self.record_count += 1

    def merge(self, other: "BlockAggregate") -> None:
        self.provider_ids |= other.provider_ids
        self.location_ids |= other.location_ids
        self.technology_codes |= other.technology_codes
        self.max_advertised_download_speed = max(
            self.max_advertised_download_speed, other.max_advertised_download_speed
        )
        self.max_advertised_upload_speed = max(self.max_advertised_upload_speed, other.max_advertised_upload_speed)
        self.record_count += other.record_count

    def to_properties(self) -> Dict[str, Any]:
        return {
            "geoid": self.geoid,
            "provider_ids": sorted(self.provider_ids),
            "location_ids": sorted(self.location_ids),
            "technology_codes": sorted(self.technology_codes),
            "max_advertised_download_speed": self.max_advertised_download_speed,
            "max_advertised_upload_speed": self.max_advertised_upload_speed,
        }


@dataclass(frozen=True)
class TilingHints:
    min_zoom: int = 10
    max_zoom: int = 14
    layer: str = "census_blocks"

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "TilingHints":
        settings = settings or get_settings()
        return cls(settings.geojson_min_zoom, settings.geojson_max_zoom, settings.geojson_layer)

    def to_dict(self) -> Dict[str, Any]:
        return {"minzoom": self.min_zoom, "maxzoom": self.max_zoom, "layer": self.layer}


class GeographyLevel(str, enum.Enum):
    """Census geography a feature describes, keyed by its GEOID prefix length."""
    BLOCK = "block"
    TRACT = "tract"
    COUNTY = "county"

    @property
    def geoid_length(self) -> int:
        return GEOID_LENGTHS[self]


GEOID_LENGTHS = {
    GeographyLevel.BLOCK: 15,
    GeographyLevel.TRACT: 11,
    GeographyLevel.COUNTY: 5,
}

ALL_LEVELS: Tuple[GeographyLevel, ...] = tuple(GeographyLevel)

# Coarser levels render at lower zooms with coarser outlines
AREA_TILING = {
    GeographyLevel.TRACT: TilingHints(9, 11, "bdc_tract"),
    GeographyLevel.COUNTY: TilingHints(2, 8, "bdc_county"),
}

AREA_SIMPLIFY_TOLERANCE = {
    GeographyLevel.TRACT: 0.00001,
    GeographyLevel.COUNTY: 0.0001,
}


@dataclass
class AreaAggregate(BlockAggregate):
    """Blocks of one tract or county folded together."""

    level: GeographyLevel = GeographyLevel.TRACT
    block_geoids: Set[str] = field(default_factory=set)

    def to_properties(self) -> Dict[str, Any]:
        properties = super().to_properties()
        properties["level"] = self.level.value
        properties["block_count"] = len(self.block_geoids)
        return properties


def rollup_aggregates(
    block_aggregates: Dict[str, BlockAggregate],
    level: Union[GeographyLevel, str],
) -> Dict[str, AreaAggregate]:
    """Fold block aggregates into tract or county aggregates, ordered by GEOID."""
    level = GeographyLevel(level)
    if level == GeographyLevel.BLOCK:
        raise ValueError("Blocks are not rolled up")

    areas: Dict[str, AreaAggregate] = {}
    for block_geoid, aggregate in block_aggregates.items():
        area_geoid = block_geoid[: level.geoid_length]
        area = areas.get(area_geoid)
        if area is None:
            area = areas[area_geoid] = AreaAggregate(geoid=area_geoid, level=level)
        area.merge(aggregate)
        area.block_geoids.add(block_geoid)

    return {geoid: areas[geoid] for geoid in sorted(areas)}


def _partition_may_match(path: Path, geoid: Optional[bytes], provider_id: Optional[int]) -> bool:
    filters = load_filters(path)
    if filters is None:
        return True
    if geoid is not None and not filters.might_contain("geoid", geoid):
        return False
    if provider_id is not None and not filters.might_contain("provider_id", provider_id):
        return False
    return True


def _fold_batch(
    batch: pa.RecordBatch,
    aggregates: Dict[str, BlockAggregate],
    geoid: Optional[bytes] = None,
    provider_id: Optional[int] = None,
) -> None:
    columns = [batch.column(name).to_pylist() for name in AGGREGATE_COLUMNS]
    for provider, location, technology, download, upload, encoded in zip(*columns):
        if encoded is None:
            continue
        if geoid is not None and encoded != geoid:
            continue
        if provider_id is not None and provider != provider_id:
            continue
        key = decode_geoid(encoded)
        aggregate = aggregates.get(key)
        if aggregate is None:
            aggregate = aggregates[key] = BlockAggregate(geoid=key)
        aggregate.fold(provider, location, technology, download, upload)


def aggregate_block(
    geoid: str,
    partition_paths: Iterable[Union[str, Path]],
    provider_id: Optional[int] = None,
) -> Optional[BlockAggregate]:
    """
    Fold every record of one block across the given partitions.

    Returns:
        The aggregate, or None when no partition holds the block
    """
    encoded = encode_geoid(geoid)
    aggregates: Dict[str, BlockAggregate] = {}

    for path in partition_paths:
        path = Path(path)
        if not _partition_may_match(path, encoded, provider_id):
            continue
        for batch in iter_batches(path, columns=AGGREGATE_COLUMNS):
            _fold_batch(batch, aggregates, geoid=encoded, provider_id=provider_id)

    return aggregates.get(decode_geoid(encoded))


def collect_state_aggregates(
    partition_paths: Iterable[Union[str, Path]],
    provider_id: Optional[int] = None,
) -> Dict[str, BlockAggregate]:
    """Fold every record of the given partitions, one aggregate per block, ordered by GEOID."""
    aggregates: Dict[str, BlockAggregate] = {}

    for path in partition_paths:
        path = Path(path)
        if not _partition_may_match(path, None, provider_id):
            continue
        for batch in iter_batches(path, columns=AGGREGATE_COLUMNS):
            _fold_batch(batch, aggregates, provider_id=provider_id)

    return {geoid: aggregates[geoid] for geoid in sorted(aggregates)}


@dataclass
class PartitionStatistics:
    block_geoids: Set[str] = field(default_factory=set)
    location_ids: Set[int] = field(default_factory=set)
    technology_codes: Set[int] = field(default_factory=set)
    speeds: Set[Tuple[int, int]] = field(default_factory=set)
    record_count: int = 0


def collect_partition_statistics(path: Union[str, Path]) -> PartitionStatistics:
    """Distinct blocks, locations, technologies and speed tiers of one partition."""
    stats = PartitionStatistics()
    for batch in iter_batches(path, columns=AGGREGATE_COLUMNS):
        columns = [batch.column(name).to_pylist() for name in AGGREGATE_COLUMNS]
        for _, location, technology, download, upload, encoded in zip(*columns):
            stats.location_ids.add(location)
            stats.technology_codes.add(technology)
            stats.speeds.add((download, upload))
            if encoded is not None:
                stats.block_geoids.add(decode_geoid(encoded))
            stats.record_count += 1
    return stats


async def create_block_feature(
    geoid: str,
    aggregate: BlockAggregate,
    geometry_provider: GeometryProvider,
    hints: Optional[TilingHints] = None,
    simplify_tolerance: float = 0.0,
) -> Dict[str, Any]:
    """
    Build the GeoJSON Feature of one block.

    Raises:
        GeometryLookupError: The block has no usable geometry
    """
    hints = hints or TilingHints()
    data = await geometry_provider.find_geometry(geoid)
    geometry = wkb_to_geojson(data, simplify_tolerance, geoid=geoid)

    properties = aggregate.to_properties()
    properties["tippecanoe"] = hints.to_dict()

    return {
        "type": "Feature",
        "id": int(geoid),
        "geometry": geometry,
        "properties": properties,
    }


async def create_area_feature(
    aggregate: AreaAggregate,
    geometry_provider: GeometryProvider,
    hints: Optional[TilingHints] = None,
    simplify_tolerance: Optional[float] = None,
) -> Dict[str, Any]:
    """
    Build the GeoJSON Feature of a tract or county: the union of its blocks.

    Raises:
        GeometryLookupError: A member block has no usable geometry
    """
    level = aggregate.level
    hints = hints or AREA_TILING[level]
    if simplify_tolerance is None:
        simplify_tolerance = AREA_SIMPLIFY_TOLERANCE[level]

    blocks = [
        (block_geoid, await geometry_provider.find_geometry(block_geoid))
        for block_geoid in sorted(aggregate.block_geoids)
    ]
    geometry = await asyncio.to_thread(union_to_geojson, blocks, simplify_tolerance, aggregate.geoid)

    properties = aggregate.to_properties()
    properties["tippecanoe"] = hints.to_dict()

    return {
        "type": "Feature",
        "id": int(aggregate.geoid),
        "geometry": geometry,
        "properties": properties,
    }


class FeatureStream:
    """
    Newline-delimited GeoJSON output with an explicit completion future.

    ``completion`` resolves with the feature count when the stream is closed
    and is rejected with the first error passed to ``fail()``. The file is
    written to a temporary sibling and only renamed into place on close.
    """

    def __init__(self, destination: Union[str, Path]):
        self.destination = Path(destination)
        self.temp_path = self.destination.with_name(self.destination.name + ".part")
        self.destination.parent.mkdir(parents=True, exist_ok=True)
        self.completion: asyncio.Future = asyncio.get_running_loop().create_future()
        self.features_written = 0
        self._handle = open(self.temp_path, "w", encoding="utf-8")

    @property
    def closed(self) -> bool:
        return self.completion.done()

    def write(self, feature: Dict[str, Any]) -> None:
        if self.closed:
            raise RuntimeError(f"Stream {self.destination.name} is already closed")
        self._handle.write(json.dumps(feature, separators=(",", ":")))
        self._handle.write("\n")
        self.features_written += 1

    def close(self) -> None:
        if self.closed:
            return
        try:
            self._handle.close()
            os.replace(self.temp_path, self.destination)
        except OSError as e:
            self.fail(e)
            return
        self.completion.set_result(self.features_written)

    def fail(self, error: BaseException) -> None:
        if self.closed:
            return
        self._handle.close()
        if self.temp_path.exists():
            self.temp_path.unlink()
        self.completion.set_exception(error)


async def _level_features(
    level: GeographyLevel,
    aggregates: Dict[str, BlockAggregate],
    geometry_provider: GeometryProvider,
    hints: Optional[TilingHints],
    simplify_tolerance: float,
):
    if level == GeographyLevel.BLOCK:
        for geoid, aggregate in aggregates.items():
            yield await create_block_feature(geoid, aggregate, geometry_provider, hints, simplify_tolerance)
        return

    for area in rollup_aggregates(aggregates, level).values():
        yield await create_area_feature(area, geometry_provider)


async def write_state_geojson(
    state_code: str,
    destination: Union[str, Path],
    geometry_provider: GeometryProvider,
    levels: Sequence[Union[GeographyLevel, str]] = (GeographyLevel.BLOCK,),
    partition_paths: Optional[Sequence[Union[str, Path]]] = None,
    cache_root: Optional[Union[str, Path]] = None,
    provider_id: Optional[int] = None,
    hints: Optional[TilingHints] = None,
    simplify_tolerance: float = 0.0,
) -> int:
    """
    Stream the features of a state, one per line, level after level.

    Block features use ``hints`` and ``simplify_tolerance``; tract and county
    features dissolve their blocks and use the fixed zoom band and tolerance
    of their level.

    Args:
        state_code: Two-digit state FIPS code
        destination: Output .geojsons file
        geometry_provider: Block geometry lookup
        levels: Geography levels to write, in order
        partition_paths: Partitions to read (defaults to the state's cache)
        cache_root: Cache root used when partition_paths is not given
        provider_id: Restrict the export to one provider

    Returns:
        Number of features written

    Raises:
        GeometryLookupError: A block has no geometry (aborts the export)
    """
    levels = [GeographyLevel(level) for level in levels]
    if partition_paths is None:
        if cache_root is None:
            cache_root = get_settings().cache_directory
        partition_paths = state_partition_paths(cache_root, state_code)

    label = get_state_label(state_code)
    if not partition_paths:
        logger.info(f"No partitions cached for {label}, nothing to export")
        return 0

    aggregates = await asyncio.to_thread(collect_state_aggregates, partition_paths, provider_id)
    logger.info(
        f"Writing {len(aggregates)} blocks for {label} to {destination} "
        f"({', '.join(level.value for level in levels)})"
    )

    stream = FeatureStream(destination)
    try:
        for level in levels:
            async for feature in _level_features(level, aggregates, geometry_provider, hints, simplify_tolerance):
                stream.write(feature)
    except Exception as e:
        logger.error(f"GeoJSON export for {label} aborted: {e}")
        stream.fail(e)
    else:
        stream.close()

    return await stream.completion


async def write_state_block_geojson(
    state_code: str,
    destination: Union[str, Path],
    geometry_provider: GeometryProvider,
    partition_paths: Optional[Sequence[Union[str, Path]]] = None,
    cache_root: Optional[Union[str, Path]] = None,
    provider_id: Optional[int] = None,
    hints: Optional[TilingHints] = None,
    simplify_tolerance: float = 0.0,
) -> int:
    """Stream one Feature per census block of a state (see write_state_geojson)."""
    return await write_state_geojson(
        state_code,
        destination,
        geometry_provider,
        levels=(GeographyLevel.BLOCK,),
        partition_paths=partition_paths,
        cache_root=cache_root,
        provider_id=provider_id,
        hints=hints,
        simplify_tolerance=simplify_tolerance,
    )
