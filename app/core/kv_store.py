"""Injectable key-value stores with TTL and atomic increment.

Rate-limit counters and shared caches talk to ``KeyValueStore`` only, so the
Redis-backed store and the in-process store are interchangeable.
"""

import asyncio
import json
import time
from collections.abc import Callable
from typing import Any, Protocol

import redis.asyncio as redis
import structlog

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    """Minimal async store contract used by counters and caches."""

    async def get(self, key: str) -> str | None: ...

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False
    ) -> bool: ...

    async def incrby(self, key: str, amount: int) -> int: ...

    async def expire(self, key: str, ttl: int) -> None: ...

    async def delete(self, *keys: str) -> None: ...


class RedisKeyValueStore:
    """KeyValueStore over a redis.asyncio client (decode_responses=True)."""

    def __init__(self, client: redis.Redis) -> None:  # type: ignore[type-arg]
        self._redis = client

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False
    ) -> bool:
        return bool(await self._redis.set(key, value, ex=ttl, nx=nx))

    async def incrby(self, key: str, amount: int) -> int:
        return int(await self._redis.incrby(key, amount))

    async def expire(self, key: str, ttl: int) -> None:
        await self._redis.expire(key, ttl)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._redis.delete(*keys)


class MemoryKeyValueStore:
    """In-process KeyValueStore; one lock serializes every mutation."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl: int | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False
    ) -> bool:
        async with self._lock:
            if nx and self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl))
            return True

    async def incrby(self, key: str, amount: int) -> int:
        async with self._lock:
            current = self._live(key)
            expires_at = self._data[key][1] if current is not None else None
            new_value = int(current or 0) + amount
            self._data[key] = (str(new_value), expires_at)
            return new_value

    async def expire(self, key: str, ttl: int) -> None:
        async with self._lock:
            current = self._live(key)
            if current is not None:
                self._data[key] = (current, self._expiry(ttl))

    async def delete(self, *keys: str) -> None:
        async with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def sweep(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        expired = [
            k for k, (_, exp) in self._data.items() if exp is not None and exp <= now
        ]
        for key in expired:
            del self._data[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)


class SnapshotCache:
    """Short-lived JSON snapshot cache keyed by user id.

    Stale or missing entries are simply recomputed by the caller, so
    invalidation races only cost an extra load.
    """

    def __init__(self, store: MemoryKeyValueStore, ttl: int, sweep_interval: int) -> None:
        self._store = store
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._sweeper: asyncio.Task[None] | None = None

    @staticmethod
    def _key(user_id: str) -> str:
        return f"user_data:{user_id}"

    async def get(self, user_id: str) -> dict[str, Any] | None:
        raw = await self._store.get(self._key(user_id))
        return json.loads(raw) if raw is not None else None

    async def put(self, user_id: str, snapshot: dict[str, Any]) -> None:
        await self._store.set(self._key(user_id), json.dumps(snapshot), ttl=self._ttl)

    async def invalidate(self, user_id: str) -> None:
        await self._store.delete(self._key(user_id))

    def start(self) -> None:
        """Begin the periodic sweep on the running loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            removed = self._store.sweep()
            if removed:
                logger.debug("Swept expired user snapshots", removed=removed)
