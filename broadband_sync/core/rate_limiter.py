"""
Token bucket rate limiter shared by every request of an upstream client.

Each source gets one bucket. ``acquire()`` blocks until a token and a
concurrency slot are available; ``release()`` returns the slot. When the
upstream answers with a throttle (HTTP 429) the client calls
``start_cooldown()``, which pauses every caller of that source until the
cooldown expires. ``wait_for_cooldown()`` is the cooperative checkpoint that
batch loops await between batches.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Any
from dataclasses import dataclass
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


# The Broadband Map allows roughly 10 requests per minute per token.
DEFAULT_RATE_LIMITS: Dict[str, Dict[str, Any]] = {
    "fcc_bdc": {
        "requests_per_second": 10 / 60,
        "burst_capacity": 10,
        "concurrent_limit": 10,
        "description": "FCC Broadband Map public API: ~10 requests/minute",
    },
    "default": {
        "requests_per_second": 1.0,
        "burst_capacity": 5,
        "concurrent_limit": 3,
        "description": "Default rate limit for unknown sources",
    },
}


@dataclass
class TokenBucket:
    """
    Token bucket for rate limiting.

    Tokens are added at a fixed rate (requests_per_second) up to a maximum
    (burst_capacity). Each request consumes one token.
    """

    source: str
    requests_per_second: float
    burst_capacity: int
    concurrent_limit: int

    tokens: float = 0.0
    last_refill: float = 0.0
    current_concurrent: int = 0

    total_requests: int = 0
    total_throttled: int = 0

    def __post_init__(self):
        """Initialize with full bucket."""
        self.tokens = float(self.burst_capacity)
        self.last_refill = time.monotonic()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.burst_capacity, self.tokens + elapsed * self.requests_per_second)
        self.last_refill = now

    def try_acquire(self) -> bool:
        """
        Try to take a token and a concurrency slot.

        Returns:
            True if acquired, False if rate limited
        """
        self._refill()

        if self.current_concurrent >= self.concurrent_limit:
            self.total_throttled += 1
            return False

        if self.tokens < 1.0:
            self.total_throttled += 1
            return False

        self.tokens -= 1.0
        self.current_concurrent += 1
        self.total_requests += 1
        return True

    def release(self) -> None:
        """Release concurrent slot after request completes."""
        self.current_concurrent = max(0, self.current_concurrent - 1)

    def wait_time(self) -> float:
        """Seconds until a token is available (0 if one is available now)."""
        self._refill()

        if self.tokens >= 1.0 and self.current_concurrent < self.concurrent_limit:
            return 0.0

        tokens_needed = 1.0 - self.tokens
        if tokens_needed <= 0:
            tokens_needed = 0.01  # waiting on a concurrency slot

        return tokens_needed / self.requests_per_second


class RateLimitExceeded(Exception):
    """Raised when rate limit is exceeded and timeout occurs."""

    pass


class RateLimiterService:
    """
    Per-source rate limiter with a shared cooldown.

    Usage:
        async with limiter.limit("fcc_bdc"):
            response = await client.get(url)
    """

    def __init__(self):
        self._buckets: Dict[str, TokenBucket] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cooldown_until: Dict[str, float] = {}

    def _get_bucket(self, source: str) -> TokenBucket:
        if source not in self._buckets:
            config = DEFAULT_RATE_LIMITS.get(source, DEFAULT_RATE_LIMITS["default"])
            self._buckets[source] = TokenBucket(
                source=source,
                requests_per_second=config["requests_per_second"],
                burst_capacity=config["burst_capacity"],
                concurrent_limit=config["concurrent_limit"],
            )
        return self._buckets[source]

    def _get_lock(self, source: str) -> asyncio.Lock:
        if source not in self._locks:
            self._locks[source] = asyncio.Lock()
        return self._locks[source]

    def configure_source(
        self,
        source: str,
        requests_per_second: float,
        burst_capacity: int,
        concurrent_limit: int,
    ) -> None:
        """Replace the bucket of a source."""
        self._buckets[source] = TokenBucket(
            source=source,
            requests_per_second=requests_per_second,
            burst_capacity=burst_capacity,
            concurrent_limit=concurrent_limit,
        )
        logger.info(
            f"Configured rate limit for '{source}': "
            f"{requests_per_second:.3f} rps, burst={burst_capacity}, concurrent={concurrent_limit}"
        )

    # ------------------------------------------------------------------
    # Cooldown
    # ------------------------------------------------------------------

    def start_cooldown(self, source: str, seconds: float) -> None:
        """Pause every caller of ``source`` for ``seconds``."""
        until = time.monotonic() + seconds
        if until > self._cooldown_until.get(source, 0.0):
            self._cooldown_until[source] = until
            logger.warning(f"[{source}] Cooldown started for {seconds:.1f}s")

    def cooldown_remaining(self, source: str) -> float:
        """Seconds left in the current cooldown (0 if none)."""
        remaining = self._cooldown_until.get(source, 0.0) - time.monotonic()
        return max(0.0, remaining)

    def is_cooling_down(self, source: str) -> bool:
        return self.cooldown_remaining(source) > 0

    async def wait_for_cooldown(self, source: str) -> None:
        """Cooperative checkpoint: returns immediately unless a cooldown is active."""
        remaining = self.cooldown_remaining(source)
        if remaining <= 0:
            return
        while remaining > 0:
            await asyncio.sleep(remaining)
            remaining = self.cooldown_remaining(source)
        logger.info(f"[{source}] Cooldown ended")

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    async def acquire(self, source: str, timeout: Optional[float] = None) -> bool:
        """
        Acquire rate limit permission for a source.

        Args:
            source: Data source name
            timeout: Maximum seconds to wait (None waits forever)

        Returns:
            True if acquired, False if timed out
        """
        bucket = self._get_bucket(source)
        lock = self._get_lock(source)
        start_time = time.monotonic()

        while True:
            await self.wait_for_cooldown(source)

            async with lock:
                if not self.is_cooling_down(source) and bucket.try_acquire():
                    return True
                wait_time = max(bucket.wait_time(), self.cooldown_remaining(source))

            elapsed = time.monotonic() - start_time
            if timeout is not None and elapsed + wait_time > timeout:
                logger.warning(f"Rate limit timeout for source '{source}' after {elapsed:.1f}s")
                return False

            await asyncio.sleep(min(wait_time, 0.5))

    def release(self, source: str) -> None:
        """Release rate limit slot after request completes."""
        if source in self._buckets:
            self._buckets[source].release()

    @asynccontextmanager
    async def limit(self, source: str, timeout: Optional[float] = None):
        """
        Async context manager around acquire()/release().

        Raises:
            RateLimitExceeded: If timeout waiting for rate limit
        """
        acquired = await self.acquire(source, timeout)
        if not acquired:
            raise RateLimitExceeded(f"Rate limit exceeded for source '{source}'")
        try:
            yield
        finally:
            self.release(source)

    def get_stats(self, source: str) -> Dict[str, Any]:
        """Get rate limit statistics for a source."""
        bucket = self._get_bucket(source)
        return {
            "source": source,
            "requests_per_second": bucket.requests_per_second,
            "burst_capacity": bucket.burst_capacity,
            "concurrent_limit": bucket.concurrent_limit,
            "current_tokens": round(bucket.tokens, 2),
            "current_concurrent": bucket.current_concurrent,
            "total_requests": bucket.total_requests,
            "total_throttled": bucket.total_throttled,
            "cooldown_remaining": round(self.cooldown_remaining(source), 2),
        }


_rate_limiter: Optional[RateLimiterService] = None


def get_rate_limiter() -> RateLimiterService:
    """Get the process-wide rate limiter (singleton)."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiterService()
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global rate limiter (for testing)."""
    global _rate_limiter
    _rate_limiter = None
