"""
Filing catalog types shared by every BDC pipeline stage.

A filing name ends with a vintage and revision stamp, e.g.
``bdc_06_Cable_fixed_broadband_J23_14nov2023``:

- ``J23``: vintage, June 2023 (``D`` is December)
- ``14nov2023``: revision, published 14 November 2023
"""

import enum
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from broadband_sync.sources.fcc_bdc.errors import FilingNameError


class BDCFilingDataType(str, enum.Enum):
    """What kind of data a filing holds."""
    AVAILABILITY = "availability"
    CHALLENGE = "challenge"


class BDCFileKind(str, enum.Enum):
    """Format of a filing archive."""
    TABULAR = "csv"
    GEOSPATIAL = "gis"


class BDCFileCategory(str, enum.Enum):
    PROVIDER = "Provider"
    SUMMARY = "Summary"
    STATE = "State"


class BDCProviderSubCategory(str, enum.Enum):
    FIXED_BROADBAND = "Fixed Broadband"
    MOBILE_BROADBAND = "Mobile Broadband"
    MOBILE_VOICE = "Mobile Voice"
    SUPPORTING_DATA = "Supporting Data"


class BDCStateSubCategory(str, enum.Enum):
    FIXED_BROADBAND = "Fixed Broadband"
    MOBILE_BROADBAND = "Mobile Broadband"
    MOBILE_VOICE = "Mobile Voice"


class BDCSummarySubCategory(str, enum.Enum):
    BROADBAND_SUMMARY_BY_GEOGRAPHY = "Broadband Summary by Geography Type"
    PROVIDER_SUMMARY_BY_GEOGRAPHY = "Provider Summary by Geography Type"
    PROVIDER_SUMMARY_FIXED_BROADBAND = "Provider Summary - Fixed Broadband"
    PROVIDER_SUMMARY_MOBILE_BROADBAND = "Provider Summary - Mobile Broadband"


class CollectMode(str, enum.Enum):
    """Which side of the synchronized marker to collect."""
    ONLY_PENDING = "only-pending"
    ONLY_SYNCHRONIZED = "only-synchronized"


FILING_NAME_PATTERN = re.compile(r"([A-Z])(\d+)_(\d{2})([a-z]{3})(\d{4})$")

MONTH_ABBREVIATIONS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

VINTAGE_MONTH_LETTERS = {
    "J": 6,   # June
    "D": 12,  # December
}


def parse_filing_timestamps(file_name: str) -> Tuple[datetime, datetime]:
    """
    Parse the revision and vintage dates embedded in a filing name.

    Returns:
        (revision, vintage)

    Raises:
        FilingNameError: Name does not end with a vintage/revision stamp
    """
    match = FILING_NAME_PATTERN.search(file_name)
    if not match:
        raise FilingNameError(file_name)

    vintage_letter, vintage_year, revision_day, revision_month, revision_year = match.groups()

    vintage_month = VINTAGE_MONTH_LETTERS.get(vintage_letter)
    month = MONTH_ABBREVIATIONS.get(revision_month)
    if vintage_month is None or month is None:
        raise FilingNameError(file_name)

    try:
        revision = datetime(int(revision_year), month, int(revision_day))
        vintage = datetime(int(f"20{vintage_year}"), vintage_month, 1)
    except ValueError as e:
        raise FilingNameError(file_name) from e

    return revision, vintage


def parse_technology_codes(value: Any) -> FrozenSet[int]:
    """Parse a comma separated technology code list ("10,40,50")."""
    if value is None:
        return frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(int(code) for code in value)
    value = str(value).strip("[] ")
    return frozenset(int(code) for code in str(value).split(",") if code.strip())


@dataclass(frozen=True)
class FilingDescriptor:
    """One upstream filing of the BDC catalog."""

    file_id: int
    file_name: str
    file_type: str
    provider_id: int
    provider_name: str
    category: str
    subcategory: str
    state_code: str
    record_count: int
    revision: datetime
    vintage: datetime
    technology_codes: FrozenSet[int] = field(default_factory=frozenset)
    synchronized_at: Optional[datetime] = None

    @property
    def is_tabular(self) -> bool:
        return self.file_type == BDCFileKind.TABULAR.value

    @property
    def is_synchronized(self) -> bool:
        return self.synchronized_at is not None

    def mark_synchronized(self, when: datetime) -> "FilingDescriptor":
        return replace(self, synchronized_at=when)

    @classmethod
    def from_row(cls, row: Any) -> "FilingDescriptor":
        """Build from a bdc_file model instance or result row."""
        return cls(
            file_id=int(row.file_id),
            file_name=row.file_name,
            file_type=row.file_type,
            provider_id=int(row.provider_id),
            provider_name=row.provider_name,
            category=row.category,
            subcategory=row.subcategory,
            state_code=str(row.state_code).zfill(2),
            record_count=int(row.record_count),
            revision=_as_datetime(row.revision),
            vintage=_as_datetime(row.vintage),
            technology_codes=parse_technology_codes(row.technology_codes),
            synchronized_at=_as_datetime(row.synchronized_at) if row.synchronized_at else None,
        )

    def to_record(self) -> Dict[str, Any]:
        """Column values for the bdc_file table."""
        return {
            "file_id": self.file_id,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "provider_id": self.provider_id,
            "provider_name": self.provider_name,
            "category": self.category,
            "subcategory": self.subcategory,
            "state_code": self.state_code,
            "technology_codes": sorted(self.technology_codes) or None,
            "record_count": self.record_count,
            "revision": self.revision,
            "vintage": self.vintage,
        }


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    # SQLite hands back text from raw SQL queries
    return datetime.fromisoformat(str(value))


def parse_raw_filing(raw: Mapping[str, Any]) -> FilingDescriptor:
    """
    Parse one entry of the listAvailabilityData response.

    Raises:
        FilingNameError: file_name lacks the vintage/revision stamp
        KeyError / ValueError: entry is missing required fields
    """
    file_name = raw["file_name"]
    revision, vintage = parse_filing_timestamps(file_name)

    return FilingDescriptor(
        file_id=int(raw["file_id"]),
        file_name=file_name,
        file_type=str(raw.get("file_type") or BDCFileKind.TABULAR.value).lower(),
        provider_id=int(raw["provider_id"]),
        provider_name=raw.get("provider_name") or "",
        category=raw["category"],
        subcategory=raw["subcategory"],
        state_code=str(raw["state_fips"]).zfill(2),
        record_count=int(raw.get("record_count") or 0),
        revision=revision,
        vintage=vintage,
        technology_codes=parse_technology_codes(raw.get("technology_code")),
    )

