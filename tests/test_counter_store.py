import asyncio
import time

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from feedledger.clients.counter_store import InMemoryCounterStore, RedisCounterStore
from feedledger.clients.ledger_cache import SCOPE_GLOBAL, LedgerCache, scope_industry
from feedledger.errors import TransientStoreError


@pytest_asyncio.fixture(params=["memory", "redis"])
async def store(request):
    if request.param == "memory":
        yield InMemoryCounterStore()
    else:
        client = FakeRedis(server=FakeServer(), decode_responses=True)
        yield RedisCounterStore(client)
        await client.aclose()


@pytest.mark.asyncio
async def test_set_membership_reports_changes(store):
    assert await store.sadd("post:p1:likers", "u1") == 1
    assert await store.sadd("post:p1:likers", "u1") == 0
    assert await store.sismember("post:p1:likers", "u1") is True
    assert await store.scard("post:p1:likers") == 1
    assert await store.srem("post:p1:likers", "u1") == 1
    assert await store.srem("post:p1:likers", "u1") == 0
    assert await store.smembers("post:p1:likers") == set()
    assert await store.exists("post:p1:likers") is False


@pytest.mark.asyncio
async def test_hash_counters(store):
    assert await store.hincrby("post:p1:stats", "likes", 1) == 1
    assert await store.hincrby("post:p1:stats", "likes", 2) == 3
    assert await store.hincrby("post:p1:stats", "likes", -1) == 2

    await store.hsetnx_many("post:p1:stats", {"likes": 40, "shares": 5})
    assert await store.hgetall("post:p1:stats") == {"likes": "2", "shares": "5"}

    await store.hset("post:p1:stats", {"likes": 7})
    assert (await store.hgetall("post:p1:stats"))["likes"] == "7"
    assert await store.hgetall("post:missing:stats") == {}


@pytest.mark.asyncio
async def test_sorted_set_ordering_and_trim(store):
    await store.zadd("feed:scope:global", {"a": 1.0, "b": 3.0, "c": 2.0})
    assert await store.zrevrange("feed:scope:global", 0, -1) == ["b", "c", "a"]
    assert await store.zrevrange("feed:scope:global", 0, 0) == ["b"]

    # Keep the two highest
    await store.zremrangebyrank("feed:scope:global", 0, -3)
    assert await store.zrevrange("feed:scope:global", 0, -1) == ["b", "c"]

    assert await store.zrem("feed:scope:global", "b", "zzz") == 1
    assert await store.zrevrange("feed:scope:global", 0, -1) == ["c"]


@pytest.mark.asyncio
async def test_strings_and_keys(store):
    assert await store.get("feed:u1:v") is None
    assert await store.incr("feed:u1:v") == 1
    assert await store.incr("feed:u1:v") == 2
    assert await store.get("feed:u1:v") == "2"

    assert await store.set("job:dedupe:update-feed:post:p1", "1", ex=30, nx=True) is True
    assert await store.set("job:dedupe:update-feed:post:p1", "1", ex=30, nx=True) is False
    assert await store.delete("job:dedupe:update-feed:post:p1") == 1
    assert await store.set("job:dedupe:update-feed:post:p1", "1", ex=30, nx=True) is True

    await store.set("feed:u1:page:2:x", "{}")
    assert sorted(await store.keys("feed:u1:*")) == ["feed:u1:page:2:x", "feed:u1:v"]
    assert await store.delete("feed:u1:v", "feed:u1:page:2:x", "nope") == 2


@pytest.mark.asyncio
async def test_in_memory_expiry():
    store = InMemoryCounterStore()
    await store.set("share:s1:deleted", "1", ex=10, nx=True)
    assert await store.exists("share:s1:deleted") is True

    store._expiry["share:s1:deleted"] = time.monotonic() - 1
    assert await store.get("share:s1:deleted") is None
    assert await store.set("share:s1:deleted", "1", ex=10, nx=True) is True


@pytest.mark.asyncio
async def test_redis_outage_raises_transient_error():
    server = FakeServer()
    store = RedisCounterStore(FakeRedis(server=server, decode_responses=True))
    assert await store.ping() is True

    server.connected = False
    with pytest.raises(TransientStoreError):
        await store.hincrby("post:p1:stats", "likes", 1)
    with pytest.raises(TransientStoreError):
        await store.sadd("post:p1:likers", "u1")


# ─────────────────────── LedgerCache ──────────────────────────────────────


@pytest.mark.asyncio
async def test_like_gate_moves_counter_once(store):
    cache = LedgerCache(store)
    await cache.warm_post("p1", ["u9"], {"likes": 1})

    results = await asyncio.gather(*(cache.add_like("u1", "p1") for _ in range(10)))
    assert results.count(True) == 1
    assert (await cache.post_stats("p1"))["likes"] == 2
    assert await cache.liked_among("u1", ["p1", "p2"]) == {"p1"}

    assert await cache.remove_like("u1", "p1") is True
    assert await cache.remove_like("u1", "p1") is False
    assert (await cache.post_stats("p1"))["likes"] == 1


@pytest.mark.asyncio
async def test_like_gate_moves_author_likes_received(store):
    cache = LedgerCache(store)
    await cache.warm_user("author", [], [], [], {"likes_received": 3})
    await cache.warm_post("p1", ["u9"], {"likes": 1})

    assert await cache.add_like("u1", "p1", author_id="author") is True
    assert await cache.add_like("u1", "p1", author_id="author") is False
    assert (await cache.user_stats("author"))["likes_received"] == 4

    assert await cache.remove_like("u1", "p1", author_id="author") is True
    assert await cache.remove_like("u1", "p1", author_id="author") is False
    assert (await cache.user_stats("author"))["likes_received"] == 3


@pytest.mark.asyncio
async def test_warm_post_seeds_the_reverse_like_index(store):
    cache = LedgerCache(store)
    await cache.warm_post("p1", ["u1", "u2"], {"likes": 2})
    await cache.warm_post("p2", ["u1"], {"likes": 1})

    assert await cache.liked_among("u1", ["p1", "p2", "p3"]) == {"p1", "p2"}
    assert await cache.liked_among("u2", ["p1", "p2"]) == {"p1"}


@pytest.mark.asyncio
async def test_warm_post_never_clobbers_live_counts(store):
    cache = LedgerCache(store)
    await cache.warm_post("p1", [], {"likes": 0})
    await cache.add_like("u1", "p1")

    await cache.warm_post("p1", [], {"likes": 0, "comments": 4})
    stats = await cache.post_stats("p1")
    assert stats["likes"] == 1
    assert stats["comments"] == 0


@pytest.mark.asyncio
async def test_follow_edges_and_requests(store):
    cache = LedgerCache(store)
    assert await cache.add_follow("a", "b") is True
    assert await cache.add_follow("a", "b") is False
    assert await cache.is_following("a", "b") is True
    assert (await cache.user_stats("a"))["following"] == 1
    assert (await cache.user_stats("b"))["followers"] == 1

    assert await cache.add_request("c", "a") is True
    assert await cache.request_ids("c") == {"a"}
    assert await cache.remove_request("c", "a") is True
    assert await cache.has_request("c", "a") is False

    assert await cache.remove_follow("a", "b") is True
    assert (await cache.user_stats("b"))["followers"] == 0


@pytest.mark.asyncio
async def test_scopes_are_trimmed_to_max_size(store):
    cache = LedgerCache(store, scope_max_size=2)
    await cache.update_scopes("p1", 1.0, ["Tech"])
    await cache.update_scopes("p2", 3.0, ["tech"])
    await cache.update_scopes("p3", 2.0, [])

    assert await cache.scope_candidates(SCOPE_GLOBAL, 10) == ["p2", "p3"]
    assert await cache.scope_candidates(scope_industry("TECH"), 10) == ["p2", "p1"]

    await cache.remove_from_scopes("p2", ["tech"])
    assert await cache.scope_candidates(scope_industry("tech"), 10) == ["p1"]

    await cache.clear_scopes()
    assert await cache.scope_candidates(SCOPE_GLOBAL, 10) == []


@pytest.mark.asyncio
async def test_job_claims_and_share_gate(store):
    cache = LedgerCache(store)
    assert await cache.claim_job("update-feed", "post:p1", 30) is True
    assert await cache.claim_job("update-feed", "post:p1", 30) is False
    await cache.release_job("update-feed", "post:p1")
    assert await cache.claim_job("update-feed", "post:p1", 30) is True

    assert await cache.mark_share_deleted("s1", 60) is True
    assert await cache.mark_share_deleted("s1", 60) is False


@pytest.mark.asyncio
async def test_feed_version_bumps(store):
    cache = LedgerCache(store)
    assert await cache.feed_version("u1") == "0"
    assert await cache.bump_feed_version("u1") == 1
    assert await cache.feed_version("u1") == "1"
