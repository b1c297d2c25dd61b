"""
Pipeline error types for BDC synchronization.

HTTP failures use the APIError hierarchy from broadband_sync.core.api_errors;
spatial store failures raise broadband_sync.core.database.SpatialStoreError.
"""
from pathlib import Path
from typing import Optional


class BDCError(Exception):
    """Base class for BDC pipeline errors."""
    pass


class FilingNameError(BDCError):
    """
    A filing name does not carry the vintage/revision suffix.

    Fatal: nothing date dependent can proceed without it.
    """

    def __init__(self, file_name: str):
        self.file_name = file_name
        super().__init__(f"Invalid BDC file name: {file_name}")


class ConversionError(BDCError):
    """An archive could not be converted into a columnar partition."""
    pass


class PartitionCorruptError(ConversionError):
    """A partition's row count does not match the filing's declared count."""

    def __init__(self, partition_path: Path, expected: int, actual: Optional[int]):
        self.partition_path = Path(partition_path)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Partition {self.partition_path.name} has {actual} rows, expected {expected}"
        )


class GeometryLookupError(BDCError):
    """No geometry could be found for a census block."""

    def __init__(self, geoid: str, reason: str = "not found"):
        self.geoid = geoid
        super().__init__(f"Geometry lookup failed for block {geoid}: {reason}")
