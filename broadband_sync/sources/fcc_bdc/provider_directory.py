"""
Static provider directory.

Builds one JSON document per provider from the raw provider registry
(``providers_base``) and the synchronized filing rollups, classifies the
provider by name, and writes the document into five lookup trees:

    by/id/<provider_id>/index.json
    by/technology/<technology_code>/<provider_id>.json
    by/state/<state_fips>/<provider_id>.json
    by/frn/<frn>.json
    by/tag/<tag>/<provider_id>.json

Only providers with at least one synchronized filing are written.
"""

import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from sqlalchemy import text
from sqlalchemy.orm import Session

from broadband_sync.sources.fcc_bdc.catalog import collect_filings
from broadband_sync.sources.fcc_bdc.common import (
    BDCFileCategory,
    BDCFileKind,
    BDCProviderSubCategory,
    CollectMode,
)
from broadband_sync.sources.fcc_bdc.metadata import STATE_NAMES

logger = logging.getLogger(__name__)


TAG_ORDER = ("ilec", "clec", "association", "telephone", "rural", "coop", "municipal", "state")

# Tags an incumbent carrier never receives
INCUMBENT_SUPPRESSED_TAGS = frozenset({"rural", "coop", "municipal", "state"})

ASSOCIATION_PATTERN = re.compile(r"ASSOCIATION|ASSN")
TELEPHONE_PATTERN = re.compile(r"TELEPHONE| PHONE")
RURAL_PATTERN = re.compile(r"RURAL")
COOP_PATTERN = re.compile(r"COOP|CO-OPERATIVE")
MUNICIPAL_PATTERN = re.compile(r"STATE|COUNTY|CITY|MUNICIPAL|UTILITY|TOWN|VILLAGE|BOROUGH|PARISH|TOWNSHIP")
STATE_NAME_PATTERN = re.compile("|".join(re.escape(name.upper()) for name in STATE_NAMES.values()))

NAME_PATTERNS = {
    "association": ASSOCIATION_PATTERN,
    "telephone": TELEPHONE_PATTERN,
    "rural": RURAL_PATTERN,
    "coop": COOP_PATTERN,
    "municipal": MUNICIPAL_PATTERN,
    "state": STATE_NAME_PATTERN,
}

PROVIDER_ROWS_SQL = text("""
    SELECT provider_id, frn, provider_name, holding_company, operation_type
    FROM providers_base
    ORDER BY provider_id, holding_company, provider_name
""")


def normalize_name(value: Optional[str]) -> Optional[str]:
    """Strip '.', ',' and '/', collapse double spaces."""
    if value is None:
        return None
    for character in (".", ",", "/"):
        value = value.replace(character, "")
    while "  " in value:
        value = value.replace("  ", " ")
    return value.strip()


def extract_dba(name: Optional[str]) -> Optional[str]:
    """The doing-business-as part of 'ACME LLC DBA Acme Fiber', if any."""
    if not name:
        return None
    position = name.upper().find(" DBA ")
    if position < 0:
        return None
    return name[position + len(" DBA "):].strip() or None


def classify_name(provider_name: Optional[str], holding_company: Optional[str] = None) -> Set[str]:
    """Name-derived tags of one registry row."""
    comparison_name = f"{(provider_name or '').upper()} {(holding_company or '').upper()}"
    return {tag for tag, pattern in NAME_PATTERNS.items() if pattern.search(comparison_name)}


def classify_operation_type(operation_type: Optional[str]) -> Set[str]:
    value = (operation_type or "").upper()
    if value == "ILEC":
        return {"ilec"}
    if value == "NON-ILEC":
        return {"clec"}
    return set()


def finalize_tags(tags: Iterable[str]) -> List[str]:
    """Apply incumbent suppression and order tags."""
    tags = set(tags)
    if "ilec" in tags:
        tags -= INCUMBENT_SUPPRESSED_TAGS
    return [tag for tag in TAG_ORDER if tag in tags]


@dataclass
class ProviderDirectoryEntry:
    provider_id: int
    holding_company: Optional[str] = None
    frns: Set[str] = field(default_factory=set)
    divisions_by_frn: Dict[str, str] = field(default_factory=dict)
    doing_business_as_by_frn: Dict[str, str] = field(default_factory=dict)
    raw_tags: Set[str] = field(default_factory=set)
    technology_codes: Set[int] = field(default_factory=set)
    claimed_record_count_by_state_code: Dict[str, int] = field(default_factory=dict)

    @property
    def tags(self) -> List[str]:
        return finalize_tags(self.raw_tags)

    @property
    def claimed_record_count(self) -> int:
        return sum(self.claimed_record_count_by_state_code.values())

    def add_registry_row(
        self,
        frn: str,
        provider_name: Optional[str],
        holding_company: Optional[str],
        operation_type: Optional[str],
    ) -> None:
        provider_name = normalize_name(provider_name)
        holding_company = normalize_name(holding_company)

        if holding_company and not self.holding_company:
            self.holding_company = holding_company

        self.frns.add(frn)
        if provider_name:
            self.divisions_by_frn.setdefault(frn, provider_name)
            dba = extract_dba(provider_name)
            if dba:
                self.doing_business_as_by_frn.setdefault(frn, dba)

        self.raw_tags |= classify_operation_type(operation_type)
        self.raw_tags |= classify_name(provider_name, holding_company)

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.provider_id,
            "holding_company": self.holding_company,
            "frns": sorted(self.frns),
            "divisions_by_frn": dict(sorted(self.divisions_by_frn.items())),
            "doing_business_as_by_frn": dict(sorted(self.doing_business_as_by_frn.items())),
            "tags": self.tags,
            "technology_codes": sorted(self.technology_codes),
            "claimed_record_count": self.claimed_record_count,
            "claimed_record_count_by_state_code": dict(sorted(self.claimed_record_count_by_state_code.items())),
        }


def collect_provider_entries(
    db: Session,
    category: Union[BDCFileCategory, str] = BDCFileCategory.PROVIDER,
    subcategory: Union[BDCProviderSubCategory, str] = BDCProviderSubCategory.FIXED_BROADBAND,
) -> List[ProviderDirectoryEntry]:
    """Group registry rows by provider and join the synchronized filing rollups."""
    entries: Dict[int, ProviderDirectoryEntry] = {}

    for row in db.execute(PROVIDER_ROWS_SQL):
        provider_id = int(row.provider_id)
        entry = entries.get(provider_id)
        if entry is None:
            entry = entries[provider_id] = ProviderDirectoryEntry(provider_id=provider_id)
        entry.add_registry_row(str(row.frn), row.provider_name, row.holding_company, row.operation_type)

    with_rollups: Set[int] = set()
    for filing in collect_filings(
        db, category, subcategory, CollectMode.ONLY_SYNCHRONIZED, file_type=BDCFileKind.TABULAR.value
    ):
        entry = entries.get(filing.provider_id)
        if entry is None:
            continue
        counts = entry.claimed_record_count_by_state_code
        counts[filing.state_code] = counts.get(filing.state_code, 0) + filing.record_count
        entry.technology_codes |= set(filing.technology_codes)
        with_rollups.add(filing.provider_id)

    return [entries[provider_id] for provider_id in sorted(with_rollups)]


def _write_json(path: Path, serialized: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(serialized, encoding="utf-8")


def write_provider_files(entry: ProviderDirectoryEntry, out_directory: Union[str, Path]) -> None:
    """Write one provider document into every lookup tree."""
    out_directory = Path(out_directory)
    document = entry.to_json()
    serialized = json.dumps(document, indent="\t")
    file_name = f"{entry.provider_id}.json"

    _write_json(out_directory / "by" / "id" / str(entry.provider_id) / "index.json", serialized)

    for technology_code in document["technology_codes"]:
        _write_json(out_directory / "by" / "technology" / str(technology_code) / file_name, serialized)

    for state_code in document["claimed_record_count_by_state_code"]:
        _write_json(out_directory / "by" / "state" / state_code / file_name, serialized)

    for frn in document["frns"]:
        _write_json(out_directory / "by" / "frn" / f"{frn}.json", serialized)

    for tag in document["tags"]:
        _write_json(out_directory / "by" / "tag" / tag / file_name, serialized)


def clean_directory(directory: Union[str, Path]) -> Path:
    directory = Path(directory)
    if directory.exists():
        shutil.rmtree(directory)
    directory.mkdir(parents=True)
    return directory


def build_provider_directory(db: Session, out_directory: Union[str, Path]) -> int:
    """
    Regenerate the static provider directory.

    Returns:
        Number of providers written
    """
    out_directory = clean_directory(out_directory)
    entries = collect_provider_entries(db)

    for entry in entries:
        write_provider_files(entry, out_directory)

    logger.info(f"Wrote {len(entries)} providers to {out_directory}")
    return len(entries)
