"""
Shared backend connection.

The composition root calls :func:`create_backend` once at startup and
closes the result once at shutdown, after every Queue and WorkerPool has
been closed. Nothing here is a module-level singleton.

Reconnection policy for Redis: each command is retried up to
``redis_max_retries`` times with capped exponential backoff, and a
``READONLY`` reply (the client reached a replica during failover) is
treated like a dropped connection rather than a fatal error.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ReadOnlyError
from redis.exceptions import TimeoutError as RedisTimeoutError

from teamspark.core.errors import ConfigError
from teamspark.core.logging import get_logger
from teamspark.core.settings import JobSettings

if TYPE_CHECKING:
    from teamspark.execution.backends.base import QueueBackend

log = get_logger(__name__)


def redis_retry_policy(settings: JobSettings) -> Retry:
    """Capped exponential backoff between reconnect attempts."""
    return Retry(
        ExponentialBackoff(
            cap=settings.redis_backoff_cap_ms / 1000,
            base=settings.redis_backoff_base_ms / 1000,
        ),
        settings.redis_max_retries,
        supported_errors=(RedisConnectionError, RedisTimeoutError, ReadOnlyError),
    )


def create_redis_client(settings: JobSettings) -> aioredis.Redis:
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        retry=redis_retry_policy(settings),
        retry_on_error=[ReadOnlyError],
        health_check_interval=30,
    )


def create_backend(settings: JobSettings | str) -> QueueBackend:
    """Build the queue backend a URL points at.

    ``redis://`` / ``rediss://`` / ``unix://`` give a :class:`RedisBackend`;
    ``memory://`` gives a :class:`MemoryBackend`.
    """
    from teamspark.execution.backends.memory import MemoryBackend
    from teamspark.execution.backends.redis import RedisBackend

    if isinstance(settings, str):
        settings = JobSettings(redis_url=settings)

    scheme = settings.redis_url.split("://", 1)[0].lower()
    if scheme == "memory":
        log.info("queue_backend_created", backend="memory")
        return MemoryBackend()
    if scheme in ("redis", "rediss", "unix"):
        client = create_redis_client(settings)
        log.info("queue_backend_created", backend="redis", prefix=settings.key_prefix)
        return RedisBackend(client, key_prefix=settings.key_prefix)
    raise ConfigError(
        f"Unsupported queue backend URL scheme: {scheme!r}",
        context={"redis_url": settings.redis_url},
    )


__all__ = ["create_backend", "create_redis_client", "redis_retry_policy"]
