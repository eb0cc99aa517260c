import pytest

from utils.cache import MemoryStore


@pytest.mark.asyncio
async def test_values_expire_after_ttl(store, clock):
    await store.set("k", {"a": 1}, ttl=10)
    assert await store.get("k") == {"a": 1}

    clock.advance(11)
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_default_ttl_applies_when_none_given(clock):
    store = MemoryStore(default_ttl=60, clock=clock)
    await store.set("k", 1)
    clock.advance(59)
    assert await store.get("k") == 1
    clock.advance(2)
    assert await store.get("k") is None


@pytest.mark.asyncio
async def test_set_if_absent_claims_once(store, clock):
    assert await store.set_if_absent("claim", 1, ttl=5) is True
    assert await store.set_if_absent("claim", 2, ttl=5) is False
    assert await store.get("claim") == 1

    clock.advance(6)
    assert await store.set_if_absent("claim", 3, ttl=5) is True


@pytest.mark.asyncio
async def test_queue_is_fifo(store):
    for i in range(3):
        await store.enqueue("q", {"id": i})
    assert await store.queue_length("q") == 3
    assert [await store.dequeue("q") for _ in range(4)] == [{"id": 0}, {"id": 1}, {"id": 2}, None]


@pytest.mark.asyncio
async def test_remove_from_queue(store):
    await store.enqueue("q", {"id": "a", "priority": 1})
    await store.enqueue("q", {"id": "b", "priority": 2})
    assert await store.remove_from_queue("q", {"id": "a", "priority": 1}) == 1
    assert await store.queue_items("q") == [{"id": "b", "priority": 2}]


@pytest.mark.asyncio
async def test_history_is_capped_and_newest_first(store):
    for ts in range(5):
        await store.push_history("h", ts, {"n": ts}, max_len=3)
    assert await store.history("h", 10) == [{"n": 4}, {"n": 3}, {"n": 2}]
    assert await store.history("h", 1) == [{"n": 4}]


@pytest.mark.asyncio
async def test_sets_and_keys(store):
    await store.sadd("active", "o1")
    await store.sadd("active", "o2")
    await store.srem("active", "o1")
    assert await store.smembers("active") == ["o2"]

    await store.set("order_preview:u_1", 1)
    await store.set("order_preview:u_2", 1)
    await store.set("other", 1)
    assert sorted(await store.keys("order_preview:*")) == ["order_preview:u_1", "order_preview:u_2"]


@pytest.mark.asyncio
async def test_sweep_drops_expired_keys(store, clock):
    await store.set("short", 1, ttl=1)
    await store.set("long", 1, ttl=100)
    clock.advance(2)
    assert await store.sweep() == 1
    assert await store.keys() == ["long"]
