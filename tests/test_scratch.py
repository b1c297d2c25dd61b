"""
Unit tests for the scratch key-value store (fakeredis backed).
"""
import fakeredis
import pytest

from broadband_sync.sources.fcc_bdc.scratch import GeoIndexStore, counter_key, geoid_key, state_key


def make_store() -> GeoIndexStore:
    return GeoIndexStore(fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True))


class TestKeys:
    def test_key_layout(self):
        assert state_key("06") == "state:06"
        assert geoid_key("060014001001000") == "geoid:060014001001000"
        assert counter_key(state_key("06")) == "counter:state:06"


class TestGeoIndexStore:
    @pytest.mark.asyncio
    async def test_set_insertion_is_idempotent(self):
        store = make_store()

        await store.add_to_set("geoid:060014001001000", 1000001)
        await store.add_to_set("geoid:060014001001000", "1000001")

        assert await store.set_size("geoid:060014001001000") == 1

    @pytest.mark.asyncio
    async def test_index_location_dedups_but_counts_records(self):
        store = make_store()

        await store.index_location("06", "060014001001000", 1000001)
        await store.index_location("06", "060014001001000", 1000001)

        assert await store.set_size(state_key("06")) == 1
        assert await store.set_size(geoid_key("060014001001000")) == 1
        assert await store.get_count(state_key("06")) == 2

    @pytest.mark.asyncio
    async def test_pop_set_drains(self):
        store = make_store()
        for location_id in (1, 2, 3):
            await store.add_to_set("geoid:x", location_id)

        popped = [value async for value in store.pop_set("geoid:x")]

        assert sorted(popped) == ["1", "2", "3"]
        assert await store.set_size("geoid:x") == 0

    @pytest.mark.asyncio
    async def test_counters(self):
        store = make_store()

        assert await store.get_count("state:06") == 0
        assert await store.increment_count("state:06", 5) == 5
        assert await store.increment_count("state:06") == 6

    @pytest.mark.asyncio
    async def test_state_codes_and_flush(self):
        store = make_store()
        await store.index_location("41", "410010001001000", 7)
        await store.index_location("06", "060014001001000", 8)

        assert await store.state_codes() == ["06", "41"]

        await store.flush()
        assert await store.state_codes() == []
