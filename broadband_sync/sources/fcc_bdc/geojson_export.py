"""
Batch GeoJSON export: one .geojsons file per synchronized provider and state.

Files are named ``<provider_id>_<state_code>_<provider_name>.geojsons``. A
file that already exists is skipped, so an interrupted run resumes where it
stopped. Satellite providers claim whole states and are left out by default.
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from broadband_sync.sources.fcc_bdc.block_aggregator import (
    ALL_LEVELS,
    GeographyLevel,
    TilingHints,
    write_state_geojson,
)
from broadband_sync.sources.fcc_bdc.catalog import collect_filings
from broadband_sync.sources.fcc_bdc.common import BDCFileKind, CollectMode, FilingDescriptor
from broadband_sync.sources.fcc_bdc.geometry import GeometryProvider
from broadband_sync.sources.fcc_bdc.metadata import get_state_label
from broadband_sync.sources.fcc_bdc.paths import state_partition_paths
from broadband_sync.sources.fcc_bdc.provider_directory import normalize_name

logger = logging.getLogger(__name__)

SATELLITE_PROVIDER_IDS: FrozenSet[int] = frozenset({
    290111,  # Viasat, Inc.
    130627,  # Hughes Network Systems, LLC
    430076,  # Space Exploration Technologies Corp.
    460087,  # UnWired Broadband Holding LLC
})

GEOJSON_SUFFIX = ".geojsons"

_WHITESPACE = re.compile(r"\s+")


@dataclass
class ExportReport:
    written: Dict[Path, int] = field(default_factory=dict)
    skipped: List[Path] = field(default_factory=list)

    @property
    def feature_count(self) -> int:
        return sum(self.written.values())


def provider_output_name(provider_id: int, state_code: str, provider_name: Optional[str]) -> str:
    """
    >>> provider_output_name(130077, "06", "Acme Fiber, Inc.")
    '130077_06_acme_fiber_inc.geojsons'
    """
    label = _WHITESPACE.sub("_", normalize_name(provider_name) or "").lower() or "provider"
    return f"{provider_id}_{state_code}_{label}{GEOJSON_SUFFIX}"


def group_by_provider_state(
    filings: Iterable[FilingDescriptor],
    exclude_provider_ids: Iterable[int] = (),
) -> Dict[int, Dict[str, List[FilingDescriptor]]]:
    """Tabular filings grouped by provider, then state (both ascending)."""
    excluded = set(exclude_provider_ids)
    grouped: Dict[int, Dict[str, List[FilingDescriptor]]] = defaultdict(lambda: defaultdict(list))
    for filing in filings:
        if filing.provider_id in excluded or not filing.is_tabular:
            continue
        grouped[filing.provider_id][filing.state_code].append(filing)

    return {
        provider_id: {state: grouped[provider_id][state] for state in sorted(grouped[provider_id])}
        for provider_id in sorted(grouped)
    }


async def export_provider_geojson(
    db: Session,
    out_directory: Union[str, Path],
    geometry_provider: GeometryProvider,
    cache_root: Union[str, Path],
    levels: Sequence[Union[GeographyLevel, str]] = ALL_LEVELS,
    provider_ids: Optional[Sequence[int]] = None,
    exclude_provider_ids: Iterable[int] = SATELLITE_PROVIDER_IDS,
    hints: Optional[TilingHints] = None,
    simplify_tolerance: float = 0.0,
) -> ExportReport:
    """
    Write every synchronized provider's features, one file per state.

    Providers and states are processed one at a time. A geometry failure
    aborts the run; files finished before it stay in place and are skipped
    on the next run.
    """
    out_directory = Path(out_directory)
    out_directory.mkdir(parents=True, exist_ok=True)

    filings = collect_filings(
        db,
        mode=CollectMode.ONLY_SYNCHRONIZED,
        provider_ids=provider_ids,
        file_type=BDCFileKind.TABULAR.value,
    )
    grouped = group_by_provider_state(filings, exclude_provider_ids)
    logger.info(f"Exporting GeoJSON for {len(grouped)} providers to {out_directory}")

    report = ExportReport()
    for provider_id, states in grouped.items():
        for state_code, state_filings in states.items():
            destination = out_directory / provider_output_name(
                provider_id, state_code, state_filings[0].provider_name
            )
            if destination.exists():
                logger.info(f"Skipping {destination.name}, already exported")
                report.skipped.append(destination)
                continue

            partitions = state_partition_paths(cache_root, state_code, state_filings)
            if not partitions:
                logger.warning(
                    f"Provider {provider_id} in {get_state_label(state_code)} has no cached partitions"
                )
                continue

            report.written[destination] = await write_state_geojson(
                state_code,
                destination,
                geometry_provider,
                levels=levels,
                partition_paths=partitions,
                provider_id=provider_id,
                hints=hints,
                simplify_tolerance=simplify_tolerance,
            )

    logger.info(
        f"GeoJSON export complete: {len(report.written)} written, "
        f"{len(report.skipped)} skipped, {report.feature_count} features"
    )
    return report
