"""
Redis store tests against an in-memory Redis double.

Several ``CacheManager`` instances sharing one server stand in for several
application processes sharing one Redis: each has its own generation
counter and in-flight table, so only the store's tag versions keep them
consistent.
"""
import asyncio

import pytest
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis

from newsdesk.cache import CacheManager, RedisTagStore


def _store(server: FakeServer, tag_ttl: int = 120) -> RedisTagStore:
    client = fake_aioredis.FakeRedis(server=server, decode_responses=True)
    return RedisTagStore(prefix="test", client=client, tag_ttl=tag_ttl)


def _manager(server: FakeServer) -> CacheManager:
    return CacheManager(store=_store(server), prefix="test")


class _Counter:
    def __init__(self, value):
        self.calls = 0
        self.value = value

    async def __call__(self):
        self.calls += 1
        return self.value


# ---------------------------------------------------------------------------
# Store primitives
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_set_get_and_expiry():
    store = _store(FakeServer())
    assert await store.set("test:a", '{"v": 1}', 30, {"articles"}) is True

    assert await store.get("test:a") == '{"v": 1}'
    assert 0 < await store._redis.ttl("test:a") <= 30
    assert await store._redis.smembers("test:tag:articles") == {"test:a"}
    # The tag set outlives every entry it can hold, then goes away.
    assert 30 < await store._redis.ttl("test:tag:articles") <= 120


@pytest.mark.asyncio
async def test_tag_set_expiry_covers_entries_longer_than_the_default():
    store = _store(FakeServer(), tag_ttl=60)
    await store.set("test:a", "1", 600, {"articles"})
    assert 60 < await store._redis.ttl("test:tag:articles") <= 600


@pytest.mark.asyncio
async def test_flush_tags_removes_members_and_bumps_versions():
    store = _store(FakeServer())
    await store.set("test:one", "1", 60, {"articles"})
    await store.set("test:two", "2", 60, {"articles", "featured"})
    await store.set("test:three", "3", 60, {"categories"})

    assert await store.flush_tags({"articles"}) == 2

    assert await store.get("test:one") is None
    assert await store.get("test:two") is None
    assert await store.get("test:three") == "3"
    assert await store._redis.exists("test:tag:articles") == 0
    assert await store.tag_versions({"articles", "categories"}) == {"articles": 1, "categories": 0}


@pytest.mark.asyncio
async def test_flush_of_unknown_tag_still_bumps_its_version():
    store = _store(FakeServer())
    assert await store.flush_tags({"nothing"}) == 0
    assert await store.tag_versions({"nothing"}) == {"nothing": 1}


@pytest.mark.asyncio
async def test_delete_exact_keys():
    store = _store(FakeServer())
    await store.set("test:one", "1", 60, {"articles"})
    await store.set("test:two", "2", 60, {"articles"})
    assert await store.delete(["test:one", "test:missing"]) == 1
    assert await store.delete([]) == 0
    assert await store.get("test:two") == "2"


@pytest.mark.asyncio
async def test_write_with_outdated_versions_is_refused():
    store = _store(FakeServer())
    versions = await store.tag_versions({"articles", "featured"})
    await store.flush_tags({"featured"})

    assert await store.set("test:k", "1", 60, {"articles", "featured"}, versions) is False
    assert await store.get("test:k") is None
    assert await store._redis.exists("test:tag:articles") == 0

    current = await store.tag_versions({"articles", "featured"})
    assert await store.set("test:k", "1", 60, {"articles", "featured"}, current) is True
    assert await store.get("test:k") == "1"


# ---------------------------------------------------------------------------
# Managers sharing one server
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_value_stored_by_one_manager_is_a_hit_for_another():
    server = FakeServer()
    first, second = _manager(server), _manager(server)
    await first.get_or_compute("article:1", {"articles"}, 60, _Counter({"title": "t"}))

    compute = _Counter({"title": "other"})
    assert await second.get_or_compute("article:1", {"articles"}, 60, compute) == {"title": "t"}
    assert compute.calls == 0

    await second.invalidate({"articles"})
    assert await first.get("article:1") is None


@pytest.mark.asyncio
async def test_read_started_before_another_managers_invalidation_is_not_stored():
    server = FakeServer()
    reader, writer, later = _manager(server), _manager(server), _manager(server)
    row = {"title": "old"}
    started = asyncio.Event()
    gate = asyncio.Event()

    async def slow_read():
        snapshot = dict(row)
        started.set()
        await gate.wait()
        return snapshot

    pending = asyncio.create_task(reader.get_or_compute("article:1", {"articles"}, 3600, slow_read))
    await started.wait()

    row["title"] = "new"
    await writer.forget("article:1")
    await writer.invalidate({"articles"})
    gate.set()
    assert await pending == {"title": "old"}

    fresh = _Counter(row)
    assert await later.get_or_compute("article:1", {"articles"}, 3600, fresh) == {"title": "new"}
    assert fresh.calls == 1


# ---------------------------------------------------------------------------
# Redis unavailable
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_unreachable_redis_falls_back_to_compute():
    server = FakeServer()
    server.connected = False
    manager = _manager(server)
    await manager.connect()

    compute = _Counter({"items": []})
    assert await manager.get_or_compute("k", {"articles"}, 60, compute) == {"items": []}
    assert await manager.get_or_compute("k", {"articles"}, 60, compute) == {"items": []}
    assert compute.calls == 2
    assert await manager.invalidate({"articles"}) == 0
    await manager.forget("k")
    assert manager.stats["errors"] >= 4
