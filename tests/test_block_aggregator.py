"""
Unit tests for census block aggregation and GeoJSON export.
"""
import json

import pytest
from shapely.geometry import Point, Polygon, box

from broadband_sync.sources.fcc_bdc.block_aggregator import (
    AreaAggregate,
    BlockAggregate,
    GeographyLevel,
    TilingHints,
    aggregate_block,
    collect_partition_statistics,
    collect_state_aggregates,
    create_area_feature,
    create_block_feature,
    rollup_aggregates,
    write_state_block_geojson,
    write_state_geojson,
)
from broadband_sync.sources.fcc_bdc.converter import write_provider_availability
from broadband_sync.sources.fcc_bdc.errors import GeometryLookupError
from broadband_sync.sources.fcc_bdc.geometry import StaticGeometryProvider, union_to_geojson, wkb_to_geojson
from broadband_sync.sources.fcc_bdc.paths import archive_path, partition_path, state_partition_paths

BLOCK_A = "060014001001000"
BLOCK_B = "060014001002000"
TRACT = "06001400100"
COUNTY = "06001"


@pytest.fixture
def convert(cache_root, archive_writer):
    def _convert(filing, rows):
        archive = archive_writer(archive_path(cache_root, filing), rows)
        path = partition_path(cache_root, filing)
        write_provider_availability(archive, path, filing.provider_id, len(rows))
        return path
    return _convert


@pytest.fixture
def state_partitions(convert, filing_factory):
    """Two providers in California, sharing one block."""
    first = convert(filing_factory(file_id=1, provider_id=1, record_count=2), [
        (1000001, 10, 25, 3, 1, "R", BLOCK_A),
        (1000003, 50, 1000, 1000, 0, "B", BLOCK_B),
    ])
    second = convert(filing_factory(file_id=2, provider_id=2, record_count=2), [
        (1000001, 50, 940, 880, 1, "R", BLOCK_A),
        (1000002, 50, 940, 880, 1, "R", BLOCK_A),
    ])
    return [first, second]


@pytest.fixture
def geometry_provider():
    square = box(-122.27, 37.80, -122.26, 37.81)
    return StaticGeometryProvider({BLOCK_A: square.wkb, BLOCK_B: square.wkb})


class TestAggregateBlock:
    def test_folds_every_provider_of_the_block(self, state_partitions):
        aggregate = aggregate_block(BLOCK_A, state_partitions)

        assert aggregate.provider_ids == {1, 2}
        assert aggregate.technology_codes == {10, 50}
        assert aggregate.location_ids == {1000001, 1000002}
        assert aggregate.max_advertised_download_speed == 940
        assert aggregate.max_advertised_upload_speed == 880
        assert aggregate.record_count == 3

    def test_short_geoid_is_padded(self, convert, filing_factory):
        path = convert(filing_factory(file_id=3, provider_id=1, record_count=2), [
            (1, 10, 25, 3, 1, "R", "060014001001"),
            (2, 50, 940, 880, 1, "R", "060014001001"),
        ])

        aggregate = aggregate_block("060014001001", [path])

        assert aggregate.geoid == "000060014001001"
        assert aggregate.technology_codes == {10, 50}
        assert aggregate.max_advertised_download_speed == 940

    def test_restricted_to_provider(self, state_partitions):
        aggregate = aggregate_block(BLOCK_A, state_partitions, provider_id=2)

        assert aggregate.provider_ids == {2}
        assert aggregate.technology_codes == {50}

    def test_unknown_block(self, state_partitions):
        assert aggregate_block("410010001001000", state_partitions) is None


class TestCollectStateAggregates:
    def test_one_aggregate_per_block_in_geoid_order(self, state_partitions):
        aggregates = collect_state_aggregates(state_partitions)

        assert list(aggregates) == [BLOCK_A, BLOCK_B]
        assert aggregates[BLOCK_A].provider_ids == {1, 2}
        assert aggregates[BLOCK_B].provider_ids == {1}

    def test_provider_filter_prunes_partitions(self, state_partitions):
        aggregates = collect_state_aggregates(state_partitions, provider_id=2)

        assert list(aggregates) == [BLOCK_A]

    def test_partition_statistics(self, state_partitions):
        stats = collect_partition_statistics(state_partitions[0])

        assert stats.block_geoids == {BLOCK_A, BLOCK_B}
        assert stats.technology_codes == {10, 50}
        assert stats.speeds == {(25, 3), (1000, 1000)}
        assert stats.record_count == 2


class TestBlockFeature:
    @pytest.mark.asyncio
    async def test_feature_shape(self, geometry_provider):
        aggregate = BlockAggregate(geoid=BLOCK_A)
        aggregate.fold(2, 1000001, 50, 940, 880)
        aggregate.fold(1, 1000001, 10, 25, 3)

        feature = await create_block_feature(BLOCK_A, aggregate, geometry_provider, TilingHints(9, 13, "blocks"))

        assert feature["type"] == "Feature"
        assert feature["id"] == 60014001001000
        assert feature["geometry"]["type"] == "MultiPolygon"
        properties = feature["properties"]
        assert properties["provider_ids"] == [1, 2]
        assert properties["technology_codes"] == [10, 50]
        assert properties["max_advertised_download_speed"] == 940
        assert properties["tippecanoe"] == {"minzoom": 9, "maxzoom": 13, "layer": "blocks"}

    @pytest.mark.asyncio
    async def test_missing_geometry(self):
        with pytest.raises(GeometryLookupError):
            await create_block_feature(BLOCK_A, BlockAggregate(geoid=BLOCK_A), StaticGeometryProvider({}))

    def test_non_polygon_geometry_rejected(self):
        with pytest.raises(GeometryLookupError, match="expected a polygon"):
            wkb_to_geojson(Point(0, 0).wkb, geoid=BLOCK_A)

    def test_invalid_wkb_rejected(self):
        with pytest.raises(GeometryLookupError):
            wkb_to_geojson(b"\x00\x01", geoid=BLOCK_A)

    def test_simplification_keeps_multipolygon(self):
        polygon = Polygon([(0, 0), (0.5, 0.0001), (1, 0), (1, 1), (0, 1)])

        geometry = wkb_to_geojson(polygon.wkb, simplify_tolerance=0.01)

        assert geometry["type"] == "MultiPolygon"
        assert len(geometry["coordinates"][0][0]) == 5


class TestWriteStateBlockGeojson:
    @pytest.mark.asyncio
    async def test_streams_one_feature_per_line(self, state_partitions, geometry_provider, tmp_path):
        destination = tmp_path / "out" / "06.geojsons"

        count = await write_state_block_geojson("06", destination, geometry_provider, partition_paths=state_partitions)

        lines = destination.read_text().splitlines()
        assert count == 2
        assert len(lines) == 2
        features = [json.loads(line) for line in lines]
        assert [f["properties"]["geoid"] for f in features] == [BLOCK_A, BLOCK_B]
        assert destination.read_text().endswith("\n")
        assert not (tmp_path / "out" / "06.geojsons.part").exists()

    @pytest.mark.asyncio
    async def test_reads_state_cache_by_default(self, state_partitions, geometry_provider, cache_root, tmp_path):
        assert state_partition_paths(cache_root, "06") == sorted(state_partitions)

        count = await write_state_block_geojson(
            "06", tmp_path / "06.geojsons", geometry_provider, cache_root=cache_root
        )

        assert count == 2

    @pytest.mark.asyncio
    async def test_geometry_failure_rejects_completion(self, state_partitions, tmp_path):
        destination = tmp_path / "06.geojsons"
        square = box(0, 0, 1, 1)
        provider = StaticGeometryProvider({BLOCK_A: square.wkb})

        with pytest.raises(GeometryLookupError):
            await write_state_block_geojson("06", destination, provider, partition_paths=state_partitions)

        assert not destination.exists()
        assert not (tmp_path / "06.geojsons.part").exists()

    @pytest.mark.asyncio
    async def test_no_partitions(self, geometry_provider, cache_root, tmp_path):
        destination = tmp_path / "41.geojsons"

        count = await write_state_block_geojson("41", destination, geometry_provider, cache_root=cache_root)

        assert count == 0
        assert not destination.exists()


class TestRollupAggregates:
    def test_blocks_fold_into_tract_and_county(self, state_partitions):
        aggregates = collect_state_aggregates(state_partitions)

        tracts = rollup_aggregates(aggregates, GeographyLevel.TRACT)
        counties = rollup_aggregates(aggregates, "county")

        assert list(tracts) == [TRACT]
        assert list(counties) == [COUNTY]
        tract = tracts[TRACT]
        assert tract.block_geoids == {BLOCK_A, BLOCK_B}
        assert tract.provider_ids == {1, 2}
        assert tract.location_ids == {1000001, 1000002, 1000003}
        assert tract.max_advertised_download_speed == 1000
        assert tract.record_count == 4
        assert counties[COUNTY].level == GeographyLevel.COUNTY

    def test_separate_tracts_stay_apart(self):
        first = BlockAggregate(geoid=BLOCK_A)
        first.fold(1, 1, 50, 100, 20)
        other = BlockAggregate(geoid="060014002001000")
        other.fold(2, 2, 10, 25, 3)

        tracts = rollup_aggregates({BLOCK_A: first, other.geoid: other}, GeographyLevel.TRACT)

        assert list(tracts) == [TRACT, "06001400200"]
        assert tracts[TRACT].provider_ids == {1}

    def test_blocks_are_not_rolled_up(self):
        with pytest.raises(ValueError):
            rollup_aggregates({}, GeographyLevel.BLOCK)


class TestAreaFeature:
    def test_union_dissolves_adjacent_blocks(self):
        left = box(0, 0, 1, 1)
        right = box(1, 0, 2, 1)

        geometry = union_to_geojson([(BLOCK_A, left.wkb), (BLOCK_B, right.wkb)], geoid=TRACT)

        assert geometry["type"] == "MultiPolygon"
        assert len(geometry["coordinates"]) == 1

    def test_union_without_blocks(self):
        with pytest.raises(GeometryLookupError, match="no block geometry"):
            union_to_geojson([], geoid=TRACT)

    @pytest.mark.asyncio
    async def test_tract_feature_uses_level_tiling(self):
        provider = StaticGeometryProvider({BLOCK_A: box(0, 0, 1, 1).wkb, BLOCK_B: box(1, 0, 2, 1).wkb})
        tract = AreaAggregate(geoid=TRACT, level=GeographyLevel.TRACT, block_geoids={BLOCK_A, BLOCK_B})
        tract.fold(1, 1000001, 50, 940, 880)

        feature = await create_area_feature(tract, provider)

        assert feature["id"] == 6001400100
        assert feature["geometry"]["type"] == "MultiPolygon"
        properties = feature["properties"]
        assert properties["geoid"] == TRACT
        assert properties["level"] == "tract"
        assert properties["block_count"] == 2
        assert properties["tippecanoe"] == {"minzoom": 9, "maxzoom": 11, "layer": "bdc_tract"}

    @pytest.mark.asyncio
    async def test_county_feature_missing_block(self):
        county = AreaAggregate(geoid=COUNTY, level=GeographyLevel.COUNTY, block_geoids={BLOCK_A, BLOCK_B})
        provider = StaticGeometryProvider({BLOCK_A: box(0, 0, 1, 1).wkb})

        with pytest.raises(GeometryLookupError):
            await create_area_feature(county, provider)


class TestWriteStateGeojson:
    @pytest.mark.asyncio
    async def test_levels_written_in_order(self, state_partitions, geometry_provider, tmp_path):
        destination = tmp_path / "06.geojsons"

        count = await write_state_geojson(
            "06", destination, geometry_provider,
            levels=["block", "tract", "county"], partition_paths=state_partitions,
        )

        features = [json.loads(line) for line in destination.read_text().splitlines()]
        assert count == 4
        assert [f["properties"]["geoid"] for f in features] == [BLOCK_A, BLOCK_B, TRACT, COUNTY]
        assert [f["properties"]["tippecanoe"]["layer"] for f in features[2:]] == ["bdc_tract", "bdc_county"]
        assert features[3]["properties"]["provider_ids"] == [1, 2]

    @pytest.mark.asyncio
    async def test_county_only_for_one_provider(self, state_partitions, geometry_provider, tmp_path):
        destination = tmp_path / "06.geojsons"

        count = await write_state_geojson(
            "06", destination, geometry_provider,
            levels=[GeographyLevel.COUNTY], partition_paths=state_partitions, provider_id=2,
        )

        feature = json.loads(destination.read_text())
        assert count == 1
        assert feature["properties"]["provider_ids"] == [2]
        assert feature["properties"]["block_count"] == 1
