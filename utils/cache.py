"""
utils/cache.py
--------------
The shared cache / queue store.

Two interchangeable back-ends with one async API:

* ``MemoryStore`` – single-process store guarded by an ``asyncio.Lock``.
  Keys expire lazily on access and eagerly on ``sweep()``.
* ``RedisStore``  – ``redis.asyncio`` client; expiry is native.

Every key carries a TTL (``default_ttl`` when the caller passes none) so a
crashed worker never leaves state behind forever.  Values are stored as
JSON, callers never share mutable objects through the store.
"""
from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL = 24 * 60 * 60


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, sort_keys=True)


def _loads(raw: Optional[str]) -> Any:
    return json.loads(raw) if raw is not None else None


class MemoryStore:
    """In-process TTL store (tests, single-worker deployments)."""

    def __init__(self, default_ttl: int = DEFAULT_TTL,
                 clock: Callable[[], float] = time.time) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    # ---------------------------- internals ------------------------------ #
    def _alive(self, key: str) -> bool:
        exp = self._expiry.get(key)
        if exp is not None and exp <= self._clock():
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            return False
        return key in self._data

    def _touch(self, key: str, ttl: Optional[float]) -> None:
        self._expiry[key] = self._clock() + (ttl if ttl is not None else self.default_ttl)

    # ------------------------------ values ------------------------------- #
    async def get(self, key: str) -> Any:
        async with self._lock:
            if not self._alive(key):
                return None
            return _loads(self._data[key])

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        async with self._lock:
            self._data[key] = _dumps(value)
            self._touch(key, ttl)

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        async with self._lock:
            if self._alive(key):
                return False
            self._data[key] = _dumps(value)
            self._touch(key, ttl)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            self._expiry.pop(key, None)
            return self._data.pop(key, None) is not None

    async def expire(self, key: str, ttl: float) -> bool:
        async with self._lock:
            if not self._alive(key):
                return False
            self._touch(key, ttl)
            return True

    async def keys(self, pattern: str = "*") -> List[str]:
        async with self._lock:
            return [k for k in list(self._data) if self._alive(k) and fnmatch.fnmatchcase(k, pattern)]

    # ------------------------------ queues ------------------------------- #
    async def enqueue(self, queue: str, item: Any, ttl: Optional[float] = None) -> int:
        async with self._lock:
            if not self._alive(queue):
                self._data[queue] = []
            self._data[queue].append(_dumps(item))
            self._touch(queue, ttl)
            return len(self._data[queue])

    async def dequeue(self, queue: str) -> Any:
        async with self._lock:
            if not self._alive(queue) or not self._data[queue]:
                return None
            return _loads(self._data[queue].pop(0))

    async def queue_length(self, queue: str) -> int:
        async with self._lock:
            return len(self._data[queue]) if self._alive(queue) else 0

    async def queue_items(self, queue: str) -> List[Any]:
        async with self._lock:
            return [_loads(raw) for raw in self._data[queue]] if self._alive(queue) else []

    async def remove_from_queue(self, queue: str, item: Any) -> int:
        async with self._lock:
            if not self._alive(queue):
                return 0
            raw = _dumps(item)
            before = len(self._data[queue])
            self._data[queue] = [r for r in self._data[queue] if r != raw]
            return before - len(self._data[queue])

    # ------------------------------- sets -------------------------------- #
    async def sadd(self, key: str, member: str, ttl: Optional[float] = None) -> None:
        async with self._lock:
            if not self._alive(key):
                self._data[key] = set()
            self._data[key].add(member)
            self._touch(key, ttl)

    async def srem(self, key: str, member: str) -> None:
        async with self._lock:
            if self._alive(key):
                self._data[key].discard(member)

    async def smembers(self, key: str) -> List[str]:
        async with self._lock:
            return sorted(self._data[key]) if self._alive(key) else []

    # ------------------------------ history ------------------------------ #
    async def push_history(self, key: str, score: float, value: Any,
                           max_len: int, ttl: Optional[float] = None) -> None:
        """Sorted-by-score list capped at ``max_len`` newest entries."""
        async with self._lock:
            if not self._alive(key):
                self._data[key] = []
            raw = _dumps(value)
            entries = [e for e in self._data[key] if e[1] != raw]
            entries.append((score, raw))
            entries.sort(key=lambda e: e[0])
            self._data[key] = entries[-max_len:]
            self._touch(key, ttl)

    async def history(self, key: str, limit: int) -> List[Any]:
        async with self._lock:
            if not self._alive(key):
                return []
            return [_loads(raw) for _, raw in reversed(self._data[key][-limit:])]

    # ---------------------------- maintenance ---------------------------- #
    async def sweep(self) -> int:
        """Drop every expired key; returns how many were removed."""
        async with self._lock:
            now = self._clock()
            dead = [k for k, exp in self._expiry.items() if exp <= now]
            for k in dead:
                self._data.pop(k, None)
                self._expiry.pop(k, None)
        if dead:
            logger.debug("cache sweep removed %d keys", len(dead))
        return len(dead)

    async def close(self) -> None:
        return None


class RedisStore:
    """Same API as ``MemoryStore`` backed by ``redis.asyncio``."""

    def __init__(self, client=None, *, url: str = "redis://localhost:6379/0",
                 prefix: str = "pipeline:", default_ttl: int = DEFAULT_TTL) -> None:
        if client is None:
            import redis.asyncio as redis  # only needed for this back-end
            client = redis.from_url(url, decode_responses=True)
        self._client = client
        self.prefix = prefix
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _ttl(self, ttl: Optional[float]) -> int:
        return max(1, int(ttl if ttl is not None else self.default_ttl))

    async def get(self, key: str) -> Any:
        return _loads(await self._client.get(self._key(key)))

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        await self._client.set(self._key(key), _dumps(value), ex=self._ttl(ttl))

    async def set_if_absent(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        return bool(await self._client.set(self._key(key), _dumps(value), ex=self._ttl(ttl), nx=True))

    async def delete(self, key: str) -> bool:
        return bool(await self._client.delete(self._key(key)))

    async def expire(self, key: str, ttl: float) -> bool:
        return bool(await self._client.expire(self._key(key), self._ttl(ttl)))

    async def keys(self, pattern: str = "*") -> List[str]:
        cut = len(self.prefix)
        return [k[cut:] async for k in self._client.scan_iter(match=self._key(pattern))]

    async def enqueue(self, queue: str, item: Any, ttl: Optional[float] = None) -> int:
        length = await self._client.rpush(self._key(queue), _dumps(item))
        await self._client.expire(self._key(queue), self._ttl(ttl))
        return int(length)

    async def dequeue(self, queue: str) -> Any:
        return _loads(await self._client.lpop(self._key(queue)))

    async def queue_length(self, queue: str) -> int:
        return int(await self._client.llen(self._key(queue)))

    async def queue_items(self, queue: str) -> List[Any]:
        return [_loads(raw) for raw in await self._client.lrange(self._key(queue), 0, -1)]

    async def remove_from_queue(self, queue: str, item: Any) -> int:
        return int(await self._client.lrem(self._key(queue), 0, _dumps(item)))

    async def sadd(self, key: str, member: str, ttl: Optional[float] = None) -> None:
        await self._client.sadd(self._key(key), member)
        await self._client.expire(self._key(key), self._ttl(ttl))

    async def srem(self, key: str, member: str) -> None:
        await self._client.srem(self._key(key), member)

    async def smembers(self, key: str) -> List[str]:
        return sorted(await self._client.smembers(self._key(key)))

    async def push_history(self, key: str, score: float, value: Any,
                           max_len: int, ttl: Optional[float] = None) -> None:
        full = self._key(key)
        await self._client.zadd(full, {_dumps(value): score})
        await self._client.zremrangebyrank(full, 0, -(max_len + 1))
        await self._client.expire(full, self._ttl(ttl))

    async def history(self, key: str, limit: int) -> List[Any]:
        return [_loads(raw) for raw in await self._client.zrevrange(self._key(key), 0, limit - 1)]

    async def sweep(self) -> int:
        # redis expires keys itself
        return 0

    async def close(self) -> None:
        await self._client.aclose()
