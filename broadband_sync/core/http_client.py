"""
Base HTTP client with retry logic, shared rate limiting and error handling.

Every request goes through the process-wide token bucket of the client's
source (``acquire()``/``release()``). A throttled response starts a shared
cooldown instead of a private sleep, so all concurrent callers pause together
and batch loops can await ``cooldown_checkpoint()`` between batches.
"""
import asyncio
import logging
import os
import random
from abc import ABC
from pathlib import Path
from typing import Callable, Dict, Optional, Any

import httpx

from broadband_sync.core.api_errors import (
    APIError,
    RetryableError,
    RateLimitError,
    FatalError,
    classify_http_error,
)
from broadband_sync.core.rate_limiter import RateLimiterService, get_rate_limiter

logger = logging.getLogger(__name__)

# (bytes_received, total_bytes or None)
ProgressCallback = Callable[[int, Optional[int]], None]


class BaseAPIClient(ABC):
    """
    Base class for upstream API clients.

    Provides unified:
    - HTTP request handling with retry logic
    - Exponential backoff with jitter
    - Token bucket rate limiting with a shared cooldown
    - Streaming downloads with progress callbacks
    - Standardized error classification

    Subclasses should:
    - Set SOURCE_NAME and BASE_URL class attributes
    - Implement API-specific methods that call get()/download()
    - Override _build_headers() for authentication
    """

    SOURCE_NAME: str = "unknown"
    BASE_URL: str = ""

    DEFAULT_TIMEOUT: float = 300.0
    DEFAULT_CONNECT_TIMEOUT: float = 30.0
    DEFAULT_MAX_RETRIES: int = 3
    DEFAULT_BACKOFF_FACTOR: float = 2.0
    DEFAULT_MAX_BACKOFF: float = 60.0
    DEFAULT_JITTER_FACTOR: float = 0.25
    DOWNLOAD_CHUNK_SIZE: int = 1 << 20

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        rate_limiter: Optional[RateLimiterService] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the API client.

        Args:
            max_retries: Maximum attempts for failed requests
            backoff_factor: Exponential backoff multiplier
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            rate_limiter: Shared limiter (defaults to the process-wide one)
            transport: Optional httpx transport (used by tests)
        """
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            f"Initialized {self.SOURCE_NAME} client: "
            f"max_retries={self.max_retries}, backoff_factor={backoff_factor}"
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.BASE_URL,
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                follow_redirects=True,
                headers=self._build_headers(),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.debug(f"{self.SOURCE_NAME} client closed")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _build_headers(self) -> Dict[str, str]:
        """Build request headers. Override to add authentication."""
        return {
            "Accept": "application/json",
            "User-Agent": f"broadband-sync/{self.SOURCE_NAME}-client",
        }

    async def cooldown_checkpoint(self) -> None:
        """Await the shared cooldown of this client's source, if any."""
        await self.rate_limiter.wait_for_cooldown(self.SOURCE_NAME)

    async def _backoff(self, attempt: int, base_delay: float = 1.0) -> None:
        """Exponential backoff with jitter."""
        delay = min(base_delay * (self.backoff_factor ** attempt), self.DEFAULT_MAX_BACKOFF)
        jitter = delay * self.DEFAULT_JITTER_FACTOR * (2 * random.random() - 1)
        delay_with_jitter = max(0.1, delay + jitter)

        logger.debug(f"Backing off for {delay_with_jitter:.2f}s (attempt {attempt + 1})")
        await asyncio.sleep(delay_with_jitter)

    def _check_api_error(self, data: Any, resource_id: str) -> Optional[APIError]:
        """
        Check a parsed JSON body for API-level errors.

        Override in subclass to handle API-specific error formats.
        """
        if isinstance(data, dict) and data.get("error"):
            error_msg = data.get("error")
            if isinstance(error_msg, dict):
                error_msg = error_msg.get("message", str(error_msg))
            return FatalError(message=str(error_msg), source=self.SOURCE_NAME, response_data=data)
        return None

    async def _with_retries(self, resource_id: str, attempt_func):
        """
        Run ``attempt_func`` under the rate limiter with retry/backoff.

        Rate limit responses start the shared cooldown and are retried once
        it expires, skipping the backoff sleep. They still count against
        ``max_retries``.
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            async with self.rate_limiter.limit(self.SOURCE_NAME):
                try:
                    logger.debug(
                        f"[{self.SOURCE_NAME}] {resource_id} "
                        f"(attempt {attempt + 1}/{self.max_retries})"
                    )
                    return await attempt_func()

                except httpx.HTTPStatusError as e:
                    response = e.response
                    try:
                        body = response.text
                    except httpx.ResponseNotRead:
                        body = ""
                    error = classify_http_error(
                        response.status_code,
                        body,
                        self.SOURCE_NAME,
                        retry_after=response.headers.get("Retry-After"),
                    )
                    last_error = error

                    if isinstance(error, RateLimitError):
                        self.rate_limiter.start_cooldown(self.SOURCE_NAME, error.retry_after)
                        continue

                    if not error.retryable or attempt >= self.max_retries - 1:
                        raise error

                    logger.warning(f"[{self.SOURCE_NAME}] Retryable HTTP error: {error}")

                except httpx.RequestError as e:
                    last_error = e
                    if attempt >= self.max_retries - 1:
                        raise RetryableError(
                            message=f"Request failed for {resource_id}: {e}",
                            source=self.SOURCE_NAME,
                        ) from e
                    logger.warning(
                        f"[{self.SOURCE_NAME}] Request error (attempt {attempt + 1}): {e}"
                    )

                except APIError as e:
                    last_error = e
                    if not e.retryable or attempt >= self.max_retries - 1:
                        raise
                    logger.warning(f"[{self.SOURCE_NAME}] Retryable API error: {e}")

            await self._backoff(attempt)

        if isinstance(last_error, APIError):
            raise last_error
        raise APIError(
            message=f"Failed to fetch {resource_id} after {self.max_retries} attempts",
            source=self.SOURCE_NAME,
        )

    async def get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        resource_id: str = "unknown",
    ) -> Any:
        """
        Make a GET request and return the parsed JSON body.

        Raises:
            APIError: On unrecoverable errors
        """
        client = await self._get_client()

        async def attempt():
            response = await client.get(url, params=params)
            response.raise_for_status()
            data = response.json()
            api_error = self._check_api_error(data, resource_id)
            if api_error:
                raise api_error
            logger.debug(f"[{self.SOURCE_NAME}] Successfully fetched {resource_id}")
            return data

        return await self._with_retries(resource_id, attempt)

    async def download(
        self,
        url: str,
        destination: Path,
        params: Optional[Dict[str, Any]] = None,
        resource_id: str = "unknown",
        on_progress: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Stream a response body to ``destination``.

        The body is written to a sibling temporary file and renamed into
        place once complete, so an interrupted download never leaves a
        truncated archive under the final name.

        Returns:
            Number of bytes written
        """
        client = await self._get_client()
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial_path = destination.with_name(destination.name + ".part")

        async def attempt() -> int:
            received = 0
            async with client.stream("GET", url, params=params) as response:
                response.raise_for_status()
                total = response.headers.get("Content-Length")
                total_bytes = int(total) if total and total.isdigit() else None

                with open(partial_path, "wb") as handle:
                    async for chunk in response.aiter_bytes(self.DOWNLOAD_CHUNK_SIZE):
                        handle.write(chunk)
                        received += len(chunk)
                        if on_progress:
                            on_progress(received, total_bytes)

            os.replace(partial_path, destination)
            logger.debug(f"[{self.SOURCE_NAME}] Downloaded {resource_id}: {received} bytes")
            return received

        try:
            return await self._with_retries(resource_id, attempt)
        finally:
            if partial_path.exists():
                partial_path.unlink()
