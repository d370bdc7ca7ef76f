"""
Async key/value cache used for handler idempotency.

A job can be delivered more than once (stall recovery, a crash between
the provider call and ``complete``). Handlers with external side effects
record the provider result under the job id and return it on redelivery
instead of sending a second email or message.

Backends:
    - :class:`RedisCache`: shares the queue backend's Redis client, keys
      namespaced as ``cache:{prefix}:{key}``
    - :class:`InMemoryCache`: single process, used with the memory backend
"""

from __future__ import annotations

import fnmatch
import json
import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class CacheBackend(Protocol):
    """Protocol every cache backend implements."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_pattern(self, pattern: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...


class InMemoryCache:
    """In-process cache with TTL.

    Example:
        cache = InMemoryCache(prefix="email", default_ttl_seconds=86400)
        await cache.set("job:42", {"email_id": "re_123"})
    """

    def __init__(
        self,
        prefix: str = "default",
        *,
        default_ttl_seconds: int | None = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.prefix = prefix
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._store: dict[str, tuple[Any, float | None]] = {}

    def _key(self, key: str) -> str:
        return f"cache:{self.prefix}:{key}"

    def _live(self, full_key: str) -> tuple[Any, float | None] | None:
        entry = self._store.get(full_key)
        if entry is None:
            return None
        if entry[1] is not None and self._clock() >= entry[1]:
            del self._store[full_key]
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        entry = self._live(self._key(key))
        return entry[0] if entry else None

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = self._clock() + ttl if ttl else None
        # Stored as JSON text so values behave exactly as they do in Redis
        self._store[self._key(key)] = (json.loads(json.dumps(value, default=str)), expires_at)

    async def delete(self, key: str) -> None:
        self._store.pop(self._key(key), None)

    async def delete_pattern(self, pattern: str) -> int:
        full = self._key(pattern)
        doomed = [k for k in self._store if fnmatch.fnmatchcase(k, full)]
        for k in doomed:
            del self._store[k]
        return len(doomed)

    async def exists(self, key: str) -> bool:
        return self._live(self._key(key)) is not None

    async def ttl(self, key: str) -> int:
        """Remaining seconds; -1 for no expiry, -2 when missing (Redis semantics)."""
        entry = self._live(self._key(key))
        if entry is None:
            return -2
        if entry[1] is None:
            return -1
        return max(0, int(entry[1] - self._clock()))


class RedisCache:
    """Redis-backed cache over an existing ``redis.asyncio`` client.

    The client is owned by the queue backend; this class never closes it.
    """

    def __init__(self, client: Any, prefix: str = "default", *, default_ttl_seconds: int | None = 3600):
        self._client = client
        self.prefix = prefix
        self._default_ttl = default_ttl_seconds

    def _key(self, key: str) -> str:
        return f"cache:{self.prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        payload = json.dumps(value, default=str)
        if ttl:
            await self._client.set(self._key(key), payload, ex=ttl)
        else:
            await self._client.set(self._key(key), payload)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def delete_pattern(self, pattern: str) -> int:
        removed = 0
        async for found in self._client.scan_iter(match=self._key(pattern), count=100):
            removed += await self._client.delete(found)
        return removed

    async def exists(self, key: str) -> bool:
        return bool(await self._client.exists(self._key(key)))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(self._key(key)))


__all__ = ["CacheBackend", "InMemoryCache", "RedisCache"]
