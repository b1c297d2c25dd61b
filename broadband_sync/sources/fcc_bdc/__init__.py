"""
FCC Broadband Data Collection (BDC) source adapter.

Pipeline:
- catalog: filing index -> bdc_file (pending vs synchronized)
- fetcher / converter: archives -> Parquet partitions with Bloom filters
- location_indexer: partitions -> state/block/location index -> locations
- bulk_loader: partitions -> bsl_availability
- block_aggregator: partitions -> block, tract and county GeoJSON features
- geojson_export: one GeoJSON file per synchronized provider and state
- provider_directory: providers_base + rollups -> static JSON directory

Data source:
- FCC Broadband Map public API: https://broadbandmap.fcc.gov/api/public

Requires a Broadband Map username and API token (FCC_MAP_USERNAME, FCC_MAP_API_KEY).

License: Public domain (U.S. government data)
"""

from broadband_sync.sources.fcc_bdc.client import BDCClient
from broadband_sync.sources.fcc_bdc.common import FilingDescriptor, parse_raw_filing
from broadband_sync.sources.fcc_bdc import metadata

__all__ = ["BDCClient", "FilingDescriptor", "parse_raw_filing", "metadata"]
