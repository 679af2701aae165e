"""
Counter store — the hot, in-memory side of the engagement ledger.

`CounterStore` is the small slice of Redis the ledger relies on. Every method
maps to a single Redis command (or one MULTI block), so each call is atomic
on its key; callers never read-modify-write across two calls.

Two implementations satisfy the protocol:
  • RedisCounterStore     — redis.asyncio, used in deployments
  • InMemoryCounterStore  — dict-backed, for tests and local runs

The backend is chosen by `settings.counter_store_backend` at startup
(see `create_counter_store`). Redis failures surface as TransientStoreError
so the write path fails fast instead of silently skipping a counter.
"""
import fnmatch
import logging
import time
from typing import Awaitable, Optional, Protocol, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from feedledger.config import Settings
from feedledger.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CounterStore(Protocol):
    async def ping(self) -> bool: ...

    async def close(self) -> None: ...

    # ── sets ────────────────────────────────────────────────────────────────
    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def sismember(self, key: str, member: str) -> bool: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def scard(self, key: str) -> int: ...

    # ── hashes ──────────────────────────────────────────────────────────────
    async def hincrby(self, key: str, field: str, amount: int = 1) -> int: ...

    async def hsetnx_many(self, key: str, mapping: dict[str, int]) -> None: ...

    async def hset(self, key: str, mapping: dict[str, int]) -> None: ...

    async def hgetall(self, key: str) -> dict[str, str]: ...

    # ── sorted sets ─────────────────────────────────────────────────────────
    async def zadd(self, key: str, mapping: dict[str, float]) -> None: ...

    async def zrem(self, key: str, *members: str) -> int: ...

    async def zrevrange(self, key: str, start: int, stop: int) -> list[str]: ...

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> None: ...

    # ── strings / keys ──────────────────────────────────────────────────────
    async def incr(self, key: str) -> int: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, nx: bool = False
    ) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, pattern: str) -> list[str]: ...


# ─────────────────────────── Redis ────────────────────────────────────────


class RedisCounterStore:
    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisCounterStore":
        client = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
        )
        return cls(client)

    async def _run(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as exc:
            raise TransientStoreError(f"counter store unavailable: {exc}") from exc

    async def ping(self) -> bool:
        return bool(await self._run(self._redis.ping()))

    async def close(self) -> None:
        await self._redis.aclose()

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run(self._redis.sadd(key, *members)))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run(self._redis.srem(key, *members)))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self._run(self._redis.sismember(key, member)))

    async def smembers(self, key: str) -> set[str]:
        return set(await self._run(self._redis.smembers(key)))

    async def scard(self, key: str) -> int:
        return int(await self._run(self._redis.scard(key)))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._run(self._redis.hincrby(key, field, amount)))

    async def hsetnx_many(self, key: str, mapping: dict[str, int]) -> None:
        # MULTI/EXEC so readers never observe a half-seeded hash
        pipe = self._redis.pipeline(transaction=True)
        for field, value in mapping.items():
            pipe.hsetnx(key, field, value)
        await self._run(pipe.execute())

    async def hset(self, key: str, mapping: dict[str, int]) -> None:
        if mapping:
            await self._run(self._redis.hset(key, mapping=mapping))

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(await self._run(self._redis.hgetall(key)))

    async def zadd(self, key: str, mapping: dict[str, float]) -> None:
        if mapping:
            await self._run(self._redis.zadd(key, mapping))

    async def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._run(self._redis.zrem(key, *members)))

    async def zrevrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._run(self._redis.zrevrange(key, start, stop)))

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> None:
        await self._run(self._redis.zremrangebyrank(key, start, stop))

    async def incr(self, key: str) -> int:
        return int(await self._run(self._redis.incr(key)))

    async def get(self, key: str) -> Optional[str]:
        return await self._run(self._redis.get(key))

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        return bool(await self._run(self._redis.set(key, value, ex=ex, nx=nx)))

    async def exists(self, key: str) -> bool:
        return bool(await self._run(self._redis.exists(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run(self._redis.delete(*keys)))

    async def keys(self, pattern: str) -> list[str]:
        found: list[str] = []
        async for key in self._redis.scan_iter(match=pattern, count=500):
            found.append(key)
        return found


# ─────────────────────────── In-memory ────────────────────────────────────


class InMemoryCounterStore:
    """
    Dict-backed store with the same contract as RedisCounterStore.

    No method awaits between reading and writing its key, so every call is
    atomic with respect to other coroutines on the event loop.
    """

    def __init__(self) -> None:
        self._data: dict[str, object] = {}
        self._expiry: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._data

    def _set_of(self, key: str) -> set:
        if not self._alive(key):
            self._data[key] = set()
        return self._data[key]  # type: ignore[return-value]

    def _hash_of(self, key: str) -> dict:
        if not self._alive(key):
            self._data[key] = {}
        return self._data[key]  # type: ignore[return-value]

    def _zset_of(self, key: str) -> dict:
        return self._hash_of(key)

    def _prune(self, key: str) -> None:
        if key in self._data and not self._data[key]:
            del self._data[key]
            self._expiry.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
        self._expiry.clear()

    async def sadd(self, key: str, *members: str) -> int:
        target = self._set_of(key)
        added = len(set(members) - target)
        target.update(members)
        self._prune(key)
        return added

    async def srem(self, key: str, *members: str) -> int:
        target = self._set_of(key)
        removed = len(target & set(members))
        target.difference_update(members)
        self._prune(key)
        return removed

    async def sismember(self, key: str, member: str) -> bool:
        return self._alive(key) and member in self._data[key]  # type: ignore[operator]

    async def smembers(self, key: str) -> set[str]:
        return set(self._data[key]) if self._alive(key) else set()  # type: ignore[call-overload]

    async def scard(self, key: str) -> int:
        return len(self._data[key]) if self._alive(key) else 0  # type: ignore[arg-type]

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        target = self._hash_of(key)
        target[field] = int(target.get(field, 0)) + amount
        return target[field]

    async def hsetnx_many(self, key: str, mapping: dict[str, int]) -> None:
        target = self._hash_of(key)
        for field, value in mapping.items():
            target.setdefault(field, int(value))
        self._prune(key)

    async def hset(self, key: str, mapping: dict[str, int]) -> None:
        target = self._hash_of(key)
        target.update({f: int(v) for f, v in mapping.items()})
        self._prune(key)

    async def hgetall(self, key: str) -> dict[str, str]:
        if not self._alive(key):
            return {}
        return {f: str(v) for f, v in self._data[key].items()}  # type: ignore[union-attr]

    async def zadd(self, key: str, mapping: dict[str, float]) -> None:
        target = self._zset_of(key)
        target.update({m: float(s) for m, s in mapping.items()})
        self._prune(key)

    async def zrem(self, key: str, *members: str) -> int:
        target = self._zset_of(key)
        removed = 0
        for member in members:
            if target.pop(member, None) is not None:
                removed += 1
        self._prune(key)
        return removed

    def _zsorted(self, key: str) -> list[str]:
        if not self._alive(key):
            return []
        items = self._data[key].items()  # type: ignore[union-attr]
        # Redis orders equal scores lexicographically by member
        return [m for m, _ in sorted(items, key=lambda kv: (kv[1], kv[0]))]

    @staticmethod
    def _slice(items: list[str], start: int, stop: int) -> list[str]:
        n = len(items)
        if start < 0:
            start = max(n + start, 0)
        if stop < 0:
            stop = n + stop
        if start > stop or start >= n:
            return []
        return items[start: stop + 1]

    async def zrevrange(self, key: str, start: int, stop: int) -> list[str]:
        return self._slice(list(reversed(self._zsorted(key))), start, stop)

    async def zremrangebyrank(self, key: str, start: int, stop: int) -> None:
        doomed = self._slice(self._zsorted(key), start, stop)
        if doomed:
            await self.zrem(key, *doomed)

    async def incr(self, key: str) -> int:
        current = int(self._data[key]) if self._alive(key) else 0  # type: ignore[call-overload]
        self._data[key] = str(current + 1)
        return current + 1

    async def get(self, key: str) -> Optional[str]:
        return self._data[key] if self._alive(key) else None  # type: ignore[return-value]

    async def set(
        self, key: str, value: str, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        if nx and self._alive(key):
            return False
        self._data[key] = value
        if ex is not None:
            self._expiry[key] = time.monotonic() + ex
        else:
            self._expiry.pop(key, None)
        return True

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                del self._data[key]
                self._expiry.pop(key, None)
                removed += 1
        return removed

    async def keys(self, pattern: str) -> list[str]:
        return [k for k in list(self._data) if self._alive(k) and fnmatch.fnmatchcase(k, pattern)]


def create_counter_store(settings: Settings) -> CounterStore:
    if settings.counter_store_backend == "memory":
        logger.info("Counter store: in-memory")
        return InMemoryCounterStore()
    logger.info("Counter store: Redis at %s:%s", settings.redis_host, settings.redis_port)
    return RedisCounterStore.from_settings(settings)
