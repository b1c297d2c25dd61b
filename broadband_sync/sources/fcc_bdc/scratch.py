"""
Scratch key-value store of the location index (Redis).

Keys (all in one numeric Redis database, flushed between runs):

- ``state:<fips>``        set of block GEOIDs seen in the state
- ``geoid:<geoid>``       set of location IDs in the block
- ``counter:state:<fips>`` number of records indexed for the state

Set insertion is idempotent, so re-indexing a record is harmless.
"""

import logging
from typing import AsyncIterator, Optional, Union

import redis.asyncio as redis

from broadband_sync.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def state_key(state_code: str) -> str:
    return f"state:{state_code}"


def geoid_key(geoid: str) -> str:
    return f"geoid:{geoid}"


def counter_key(key: str) -> str:
    return f"counter:{key}"


class GeoIndexStore:
    """
    Set/counter operations of the location index.

    The Redis client is injected, so tests can pass a fakeredis client.
    """

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "GeoIndexStore":
        settings = settings or get_settings()
        client = redis.from_url(
            settings.redis_url,
            db=settings.scratch_database,
            decode_responses=True,
        )
        logger.info(f"Scratch store: {settings.redis_url} (db {settings.scratch_database})")
        return cls(client)

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def flush(self) -> None:
        """Drop everything in the scratch database."""
        await self.client.flushdb()

    async def add_to_set(self, key: str, value: Union[str, int]) -> int:
        return await self.client.sadd(key, str(value))

    async def set_size(self, key: str) -> int:
        return await self.client.scard(key)

    async def pop_set(self, key: str) -> AsyncIterator[str]:
        """Pop members of a set until it is empty."""
        while True:
            value = await self.client.spop(key)
            if value is None:
                return
            yield value

    async def increment_count(self, key: str, amount: int = 1) -> int:
        return await self.client.incrby(counter_key(key), amount)

    async def get_count(self, key: str) -> int:
        value = await self.client.get(counter_key(key))
        return int(value) if value else 0

    async def state_codes(self) -> list:
        """States with at least one indexed block."""
        codes = set()
        async for key in self.client.scan_iter(match=state_key("*")):
            codes.add(key.split(":", 1)[1])
        return sorted(codes)

    async def index_location(self, state_code: str, geoid: str, location_id: Union[str, int]) -> None:
        """Record one location: state -> block, block -> location, state counter."""
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.sadd(state_key(state_code), geoid)
            pipe.sadd(geoid_key(geoid), str(location_id))
            pipe.incrby(counter_key(state_key(state_code)), 1)
            await pipe.execute()
