"""
SQLAlchemy models for the spatial store.

- bdc_file: the upstream filing catalog plus the synchronized-at marker
- bsl_availability: one row per provider/location/technology availability fact
- locations: census block <-> broadband serviceable location join
- providers_base: raw provider registry rows used by the provider directory
"""
from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class BDCFile(Base):
    """
    One filing listed by the BDC catalog.

    ``synchronized_at`` is set exactly once, after the filing's records were
    inserted into bsl_availability.
    """
    __tablename__ = "bdc_file"

    file_id = Column(Integer, primary_key=True, autoincrement=False)
    file_name = Column(Text, nullable=False)
    file_type = Column(String(8), nullable=False, index=True)
    provider_id = Column(Integer, nullable=False, index=True)
    provider_name = Column(Text, nullable=False)
    category = Column(String(50), nullable=False)
    subcategory = Column(String(100), nullable=False)
    state_code = Column(String(2), nullable=False)
    technology_codes = Column(JSON, nullable=True)  # sorted list of ints
    record_count = Column(Integer, nullable=False, index=True)

    revision = Column(DateTime, nullable=False, index=True)
    vintage = Column(DateTime, nullable=False, index=True)
    synchronized_at = Column(DateTime, nullable=True, index=True)

    __table_args__ = (
        Index("idx_bdc_file_category", "category", "subcategory"),
        Index("idx_bdc_file_provider_state", "provider_id", "state_code"),
    )

    def __repr__(self) -> str:
        return (
            f"<BDCFile(file_id={self.file_id}, provider_id={self.provider_id}, "
            f"state_code={self.state_code}, synchronized_at={self.synchronized_at})>"
        )


class BSLAvailability(Base):
    """Availability of one technology at one broadband serviceable location."""
    __tablename__ = "bsl_availability"

    state_code = Column(String(2), primary_key=True)
    provider_id = Column(Integer, primary_key=True, autoincrement=False)
    location_id = Column(Integer, primary_key=True, autoincrement=False)
    technology_code = Column(Integer, primary_key=True, autoincrement=False)
    business_residential_code = Column(String(1), primary_key=True)

    max_advertised_download_speed = Column(Integer, nullable=False)
    max_advertised_upload_speed = Column(Integer, nullable=False)
    low_latency = Column(Boolean, nullable=False)
    block_geoid = Column(String(15), nullable=True, index=True)

    revision = Column(Date, nullable=False)
    vintage = Column(Date, nullable=False)


class Location(Base):
    """Census block membership of a broadband serviceable location."""
    __tablename__ = "locations"

    geoid = Column(String(15), primary_key=True)
    location_id = Column(Integer, primary_key=True, autoincrement=False)

    __table_args__ = (Index("idx_locations_location_id", "location_id"),)


class ProviderRecord(Base):
    """
    Raw provider registry row (one per provider/FRN/name combination).

    operation_type is 'ILEC' for incumbent carriers and 'Non-ILEC' otherwise.
    """
    __tablename__ = "providers_base"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(Integer, nullable=False, index=True)
    frn = Column(String(10), nullable=False)
    provider_name = Column(Text, nullable=False)
    holding_company = Column(Text, nullable=True)
    operation_type = Column(String(20), nullable=True)

    __table_args__ = (
        UniqueConstraint("provider_id", "frn", "provider_name", name="uq_provider_frn_name"),
    )
