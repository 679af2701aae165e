"""
Key layout and domain operations on top of the counter store.

Responsibilities:
  • Likes        — SET post:{post_id}:likers (the membership gate)
                   SET user:{user_id}:liked  (reverse index)
                   HASH post:{post_id}:stats likes/comments/shares/views
  • Follows      — SET user:{user_id}:following / user:{user_id}:followers
                   SET user:{user_id}:requests (pending requesters)
                   HASH user:{user_id}:stats followers/following/likes_received
  • Feed scopes  — ZSET feed:scope:global, feed:scope:industry:{industry}
                   score = ranking score, member = post_id
  • Feed cache   — STRING feed:{user_id}:v (version), cached pages keyed by it
  • Job dedupe   — STRING job:dedupe:{kind}:{key} (SET NX EX)

Counters only move when the membership gate reports a change (SADD/SREM
returned 1), so duplicate or racing like/unlike calls can never push a
counter twice. Everything here is a cache: services/reconcile.py rebuilds it
from the durable record store.
"""
import logging
from typing import Iterable, Optional

from feedledger.clients.counter_store import CounterStore

logger = logging.getLogger(__name__)

POST_STAT_FIELDS = ("likes", "comments", "shares", "views")
USER_STAT_FIELDS = ("followers", "following", "likes_received")

SCOPE_GLOBAL = "feed:scope:global"


def scope_industry(industry: str) -> str:
    return f"feed:scope:industry:{industry.lower()}"


class LedgerCache:
    def __init__(self, store: CounterStore, scope_max_size: int = 1000) -> None:
        self.store = store
        self.scope_max_size = scope_max_size

    # ─────────────────────── Posts / likes ──────────────────────────────────

    async def post_is_warm(self, post_id: str) -> bool:
        return await self.store.exists(f"post:{post_id}:stats")

    async def warm_post(
        self, post_id: str, liker_ids: Iterable[str], counts: dict[str, int]
    ) -> None:
        """
        Seed a cold post from durable state. Likers go in before the stats
        hash so anyone who sees the hash also sees the full gate set; the
        hash fields are HSETNX so a concurrent warm or like is never clobbered.
        """
        likers = list(liker_ids)
        if likers:
            await self.store.sadd(f"post:{post_id}:likers", *likers)
            for liker in likers:
                await self.store.sadd(f"user:{liker}:liked", post_id)
        await self.store.hsetnx_many(
            f"post:{post_id}:stats",
            {f: int(counts.get(f, 0)) for f in POST_STAT_FIELDS},
        )

    async def add_like(
        self, user_id: str, post_id: str, author_id: Optional[str] = None
    ) -> bool:
        """Returns True when this call created the like.

        With ``author_id`` the author's ``likes_received`` moves too; the
        author's stats hash must already be warm.
        """
        if not await self.store.sadd(f"post:{post_id}:likers", user_id):
            return False
        await self.store.sadd(f"user:{user_id}:liked", post_id)
        await self.store.hincrby(f"post:{post_id}:stats", "likes", 1)
        if author_id is not None:
            await self.store.hincrby(f"user:{author_id}:stats", "likes_received", 1)
        return True

    async def remove_like(
        self, user_id: str, post_id: str, author_id: Optional[str] = None
    ) -> bool:
        """Returns True when this call removed an existing like."""
        if not await self.store.srem(f"post:{post_id}:likers", user_id):
            return False
        await self.store.srem(f"user:{user_id}:liked", post_id)
        await self.store.hincrby(f"post:{post_id}:stats", "likes", -1)
        if author_id is not None:
            await self.store.hincrby(f"user:{author_id}:stats", "likes_received", -1)
        return True

    async def has_liked(self, user_id: str, post_id: str) -> bool:
        return await self.store.sismember(f"post:{post_id}:likers", user_id)

    async def liked_among(self, user_id: str, post_ids: Iterable[str]) -> set[str]:
        liked = await self.store.smembers(f"user:{user_id}:liked")
        return liked.intersection(post_ids)

    async def incr_post_stat(self, post_id: str, field: str, amount: int = 1) -> int:
        return await self.store.hincrby(f"post:{post_id}:stats", field, amount)

    async def post_stats(self, post_id: str) -> Optional[dict[str, int]]:
        raw = await self.store.hgetall(f"post:{post_id}:stats")
        if not raw:
            return None
        return {f: int(raw.get(f, 0)) for f in POST_STAT_FIELDS}

    async def batch_post_stats(self, post_ids: list[str]) -> dict[str, dict[str, int]]:
        stats: dict[str, dict[str, int]] = {}
        for pid in post_ids:
            found = await self.post_stats(pid)
            if found is not None:
                stats[pid] = found
        return stats

    async def set_post_state(
        self, post_id: str, liker_ids: Iterable[str], counts: dict[str, int]
    ) -> None:
        """Overwrite a post's cached state (rebuild path only)."""
        await self.store.delete(f"post:{post_id}:likers")
        likers = list(liker_ids)
        if likers:
            await self.store.sadd(f"post:{post_id}:likers", *likers)
        await self.store.hset(
            f"post:{post_id}:stats",
            {f: int(counts.get(f, 0)) for f in POST_STAT_FIELDS},
        )

    async def mark_share_deleted(self, share_id: str, ttl: int) -> bool:
        """SET NX gate so a repeated delete moves the share counter once."""
        return await self.store.set(f"share:{share_id}:deleted", "1", ex=ttl, nx=True)

    async def set_user_liked(self, user_id: str, post_ids: Iterable[str]) -> None:
        await self.store.delete(f"user:{user_id}:liked")
        ids = list(post_ids)
        if ids:
            await self.store.sadd(f"user:{user_id}:liked", *ids)

    # ─────────────────────── Users / follows ────────────────────────────────

    async def user_is_warm(self, user_id: str) -> bool:
        return await self.store.exists(f"user:{user_id}:stats")

    async def warm_user(
        self,
        user_id: str,
        following: Iterable[str],
        followers: Iterable[str],
        requests: Iterable[str],
        counts: dict[str, int],
    ) -> None:
        for suffix, members in (
            ("following", list(following)),
            ("followers", list(followers)),
            ("requests", list(requests)),
        ):
            if members:
                await self.store.sadd(f"user:{user_id}:{suffix}", *members)
        await self.store.hsetnx_many(
            f"user:{user_id}:stats",
            {f: int(counts.get(f, 0)) for f in USER_STAT_FIELDS},
        )

    async def set_user_state(
        self,
        user_id: str,
        following: Iterable[str],
        followers: Iterable[str],
        requests: Iterable[str],
        counts: dict[str, int],
    ) -> None:
        """Overwrite a user's cached graph state (rebuild path only)."""
        await self.store.delete(
            f"user:{user_id}:following",
            f"user:{user_id}:followers",
            f"user:{user_id}:requests",
        )
        await self.warm_user(user_id, following, followers, requests, {})
        await self.store.hset(
            f"user:{user_id}:stats",
            {f: int(counts.get(f, 0)) for f in USER_STAT_FIELDS},
        )

    async def add_follow(self, follower_id: str, followee_id: str) -> bool:
        if not await self.store.sadd(f"user:{follower_id}:following", followee_id):
            return False
        await self.store.sadd(f"user:{followee_id}:followers", follower_id)
        await self.store.hincrby(f"user:{follower_id}:stats", "following", 1)
        await self.store.hincrby(f"user:{followee_id}:stats", "followers", 1)
        return True

    async def remove_follow(self, follower_id: str, followee_id: str) -> bool:
        if not await self.store.srem(f"user:{follower_id}:following", followee_id):
            return False
        await self.store.srem(f"user:{followee_id}:followers", follower_id)
        await self.store.hincrby(f"user:{follower_id}:stats", "following", -1)
        await self.store.hincrby(f"user:{followee_id}:stats", "followers", -1)
        return True

    async def is_following(self, follower_id: str, followee_id: str) -> bool:
        return await self.store.sismember(f"user:{follower_id}:following", followee_id)

    async def following_ids(self, user_id: str) -> set[str]:
        return await self.store.smembers(f"user:{user_id}:following")

    async def add_request(self, followee_id: str, follower_id: str) -> bool:
        return bool(await self.store.sadd(f"user:{followee_id}:requests", follower_id))

    async def remove_request(self, followee_id: str, follower_id: str) -> bool:
        return bool(await self.store.srem(f"user:{followee_id}:requests", follower_id))

    async def has_request(self, followee_id: str, follower_id: str) -> bool:
        return await self.store.sismember(f"user:{followee_id}:requests", follower_id)

    async def request_ids(self, user_id: str) -> set[str]:
        return await self.store.smembers(f"user:{user_id}:requests")

    async def user_stats(self, user_id: str) -> dict[str, int]:
        raw = await self.store.hgetall(f"user:{user_id}:stats")
        return {f: int(raw.get(f, 0)) for f in USER_STAT_FIELDS}

    async def incr_user_stat(self, user_id: str, field: str, amount: int = 1) -> int:
        return await self.store.hincrby(f"user:{user_id}:stats", field, amount)

    # ─────────────────────── Feed scopes (ZSET) ─────────────────────────────

    async def update_scopes(
        self, post_id: str, score: float, industries: Iterable[str]
    ) -> None:
        """
        Upsert a post's ranking score into the global and per-industry pools.
        Pools are trimmed to scope_max_size to bound memory.
        """
        for key in [SCOPE_GLOBAL, *(scope_industry(i) for i in industries)]:
            await self.store.zadd(key, {post_id: score})
            await self.store.zremrangebyrank(key, 0, -(self.scope_max_size + 1))

    async def remove_from_scopes(self, post_id: str, industries: Iterable[str]) -> None:
        for key in [SCOPE_GLOBAL, *(scope_industry(i) for i in industries)]:
            await self.store.zrem(key, post_id)

    async def scope_candidates(self, scope_key: str, limit: int) -> list[str]:
        return await self.store.zrevrange(scope_key, 0, limit - 1)

    async def clear_scopes(self) -> None:
        doomed = await self.store.keys("feed:scope:*")
        await self.store.delete(*doomed)

    # ─────────────────────── Feed page cache ────────────────────────────────

    async def feed_version(self, user_id: str) -> str:
        return await self.store.get(f"feed:{user_id}:v") or "0"

    async def bump_feed_version(self, user_id: str) -> int:
        return await self.store.incr(f"feed:{user_id}:v")

    async def get_cached(self, key: str) -> Optional[str]:
        return await self.store.get(key)

    async def set_cached(self, key: str, payload: str, ttl: int) -> None:
        await self.store.set(key, payload, ex=ttl)

    # ─────────────────────── Job coalescing ─────────────────────────────────

    async def claim_job(self, kind: str, key: str, ttl: int) -> bool:
        """True when no identical job is already waiting."""
        return await self.store.set(f"job:dedupe:{kind}:{key}", "1", ex=ttl, nx=True)

    async def release_job(self, kind: str, key: str) -> None:
        await self.store.delete(f"job:dedupe:{kind}:{key}")
