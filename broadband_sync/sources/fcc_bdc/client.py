"""
FCC Broadband Data Collection (BDC) public API client.

Official API:
https://broadbandmap.fcc.gov/data-download

Authentication:
- ``username`` header: Broadband Map account username
- ``hash_value`` header: API token generated in the account settings

Rate limits:
- Roughly 10 requests per minute per token; throttled requests get HTTP 429
"""

import enum
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from broadband_sync.core.config import Settings, get_settings
from broadband_sync.core.http_client import BaseAPIClient, ProgressCallback
from broadband_sync.core.rate_limiter import RateLimiterService
from broadband_sync.sources.fcc_bdc.common import BDCFilingDataType

logger = logging.getLogger(__name__)


class BDCGISFileType(enum.IntEnum):
    SHAPEFILE = 1
    GEOPACKAGE = 2


class BDCClient(BaseAPIClient):
    """
    HTTP client for the BDC public API.

    Inherits retry logic, backoff, shared rate limiting and error handling
    from BaseAPIClient.
    """

    SOURCE_NAME = "fcc_bdc"
    BASE_URL = "https://broadbandmap.fcc.gov/api/public"

    def __init__(
        self,
        username: str,
        api_key: str,
        requests_per_minute: int = 10,
        max_concurrency: int = 10,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        rate_limiter: Optional[RateLimiterService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the BDC client.

        Args:
            username: Broadband Map account username
            api_key: Broadband Map API token
            requests_per_minute: Token bucket refill rate
            max_concurrency: Maximum concurrent requests
            max_retries: Maximum attempts for failed requests
            backoff_factor: Exponential backoff multiplier
        """
        self.username = username
        self.api_key = api_key

        super().__init__(
            max_retries=max_retries,
            backoff_factor=backoff_factor,
            timeout=600.0,  # state-wide archives are large
            connect_timeout=30.0,
            rate_limiter=rate_limiter,
            transport=transport,
        )

        self.rate_limiter.configure_source(
            self.SOURCE_NAME,
            requests_per_second=requests_per_minute / 60,
            burst_capacity=requests_per_minute,
            concurrent_limit=max_concurrency,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, **kwargs) -> "BDCClient":
        """
        Build a client from settings.

        Raises:
            MissingFCCCredentialsError: Username or API key not configured
        """
        settings = settings or get_settings()
        username, api_key = settings.require_fcc_credentials()
        return cls(
            username=username,
            api_key=api_key,
            requests_per_minute=settings.fcc_requests_per_minute,
            max_concurrency=settings.download_concurrency,
            max_retries=settings.max_retries,
            backoff_factor=settings.retry_backoff_factor,
            **kwargs,
        )

    def _build_headers(self) -> Dict[str, str]:
        """Build request headers with the account credentials."""
        return {
            "Accept": "application/json",
            "User-Agent": "broadband-sync/1.0 (BDC Synchronization)",
            "username": self.username,
            "hash_value": self.api_key,
        }

    async def list_as_of_dates(self) -> List[Dict[str, Any]]:
        """List filing dates: ``[{"data_type": ..., "as_of_date": ...}]``."""
        body = await self.get("map/listAsOfDates", resource_id="as_of_dates")
        return body.get("data") or []

    async def list_availability_files(
        self,
        as_of_date: datetime,
        category: Optional[str] = None,
        subcategory: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """List the availability filings published for a filing date."""
        date_param = as_of_date.strftime("%Y-%m-%d")
        params = {}
        if category:
            params["category"] = category
        if subcategory:
            params["subcategory"] = subcategory

        logger.info(f"Listing files for {category} {subcategory} as of {date_param}")

        body = await self.get(
            f"map/downloads/listAvailabilityData/{date_param}",
            params=params or None,
            resource_id=f"availability_files_{date_param}",
        )
        return body.get("data") or []

    async def download_file(
        self,
        file_id: int,
        destination: Path,
        data_type: BDCFilingDataType = BDCFilingDataType.AVAILABILITY,
        gis_type: Optional[BDCGISFileType] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Download a filing archive to ``destination``.

        Returns:
            Number of bytes written
        """
        url = f"map/downloads/downloadFile/{BDCFilingDataType(data_type).value}/{file_id}"
        if gis_type is not None:
            url = f"{url}/{int(gis_type)}"

        return await self.download(
            url,
            destination,
            resource_id=f"file_{file_id}",
            on_progress=on_progress,
        )
