"""
Fixed schema of converted availability partitions.

Every partition carries the same columns in the same order. The census
block GEOID is stored as 15 raw ASCII bytes (``fixed_size_binary(15)``) so
block equality is a binary comparison. Fields flagged ``bloom_filter`` get
an approximate-membership filter in the partition's sidecar.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import pyarrow as pa

GEOID_WIDTH = 15


@dataclass(frozen=True)
class FieldSpec:
    name: str
    arrow_type: pa.DataType
    nullable: bool = False
    bloom_filter: bool = False

    def to_arrow(self) -> pa.Field:
        return pa.field(self.name, self.arrow_type, nullable=self.nullable)


AVAILABILITY_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("provider_id", pa.uint32(), bloom_filter=True),
    FieldSpec("location_id", pa.uint64()),
    FieldSpec("technology_code", pa.uint16(), bloom_filter=True),
    FieldSpec("max_advertised_download_speed", pa.uint32(), bloom_filter=True),
    FieldSpec("max_advertised_upload_speed", pa.uint32(), bloom_filter=True),
    FieldSpec("low_latency", pa.bool_()),
    FieldSpec("business_residential_code", pa.string()),
    FieldSpec("geoid", pa.binary(GEOID_WIDTH), nullable=True, bloom_filter=True),
)

AVAILABILITY_SCHEMA = pa.schema([spec.to_arrow() for spec in AVAILABILITY_FIELDS])

COLUMN_NAMES: List[str] = [spec.name for spec in AVAILABILITY_FIELDS]

FILTER_FIELDS: List[str] = [spec.name for spec in AVAILABILITY_FIELDS if spec.bloom_filter]


def encode_geoid(value: Optional[str]) -> Optional[bytes]:
    """Zero-pad a block GEOID to 15 digits and encode it (None stays None)."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if len(value) > GEOID_WIDTH or not value.isdigit():
        raise ValueError(f"Invalid block GEOID: {value!r}")
    return value.zfill(GEOID_WIDTH).encode("ascii")


def decode_geoid(value: Optional[bytes]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return bytes(value).decode("ascii")


@dataclass(frozen=True)
class AvailabilityRecord:
    """One availability row of a provider filing."""

    provider_id: int
    location_id: int
    technology_code: int
    max_advertised_download_speed: int
    max_advertised_upload_speed: int
    low_latency: bool
    business_residential_code: str
    geoid: Optional[bytes] = None

    @property
    def block_geoid(self) -> Optional[str]:
        return decode_geoid(self.geoid)

    @classmethod
    def from_mapping(cls, row: Dict[str, Any]) -> "AvailabilityRecord":
        return cls(**{name: row[name] for name in COLUMN_NAMES})

    def to_mapping(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in COLUMN_NAMES}
