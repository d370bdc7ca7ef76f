"""
Redis queue backend.

WHY
───
Enqueue must be durable the moment it returns: the job hash and its
membership in a state set are written by one Lua script, so a crash can
never leave a job that exists in no set (or in two).

KEY LAYOUT
──────────
For queue ``send-email`` under the default prefix ``tsq``::

    tsq:send-email:seq            INCR counter (ids and arrival order)
    tsq:send-email:job:{id}       HASH   one job record
    tsq:send-email:waiting        ZSET   score = priority * 2**32 + seq
    tsq:send-email:paused         ZSET   same score, while the queue is paused
    tsq:send-email:delayed        ZSET   score = ready_at (ms)
    tsq:send-email:active         ZSET   score = lock_until (ms)
    tsq:send-email:completed      ZSET   score = finished_at (ms)
    tsq:send-email:failed         ZSET   score = finished_at (ms)
    tsq:send-email:meta           HASH   paused flag
    tsq:send-email:repeat         HASH   repeat key -> rule JSON

Payloads stay opaque JSON strings inside the hash; scripts only touch the
scalar fields, so Lua never re-encodes user data.

Related modules:
    base.py          - the protocol implemented here
    core/connection  - builds the shared client with the retry policy
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import Any

from teamspark.core.cache import CacheBackend, RedisCache
from teamspark.core.logging import get_logger
from teamspark.execution.backends.base import FinishedState
from teamspark.execution.models import BackoffPolicy, JobRecord, JobState, QueueCounts, RepeatRule

log = get_logger(__name__)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# LUA SCRIPTS
# =============================================================================

# KEYS: job, waiting, delayed, paused, meta
# ARGV: id, order, ready_at, now, field/value pairs...
ADD_JOB = """
if redis.call("EXISTS", KEYS[1]) == 1 then
  return 0
end
redis.call("HSET", KEYS[1], unpack(ARGV, 5))
local state
if tonumber(ARGV[3]) > tonumber(ARGV[4]) then
  state = "delayed"
  redis.call("ZADD", KEYS[3], ARGV[3], ARGV[1])
elseif redis.call("HGET", KEYS[5], "paused") == "1" then
  state = "paused"
  redis.call("ZADD", KEYS[4], ARGV[2], ARGV[1])
else
  state = "waiting"
  redis.call("ZADD", KEYS[2], ARGV[2], ARGV[1])
end
redis.call("HSET", KEYS[1], "state", state)
return 1
"""

# KEYS: waiting, delayed, active, paused, meta
# ARGV: now, lock_until, job key prefix
CLAIM_JOB = """
local paused = redis.call("HGET", KEYS[5], "paused") == "1"
local due = redis.call("ZRANGEBYSCORE", KEYS[2], "-inf", ARGV[1])
for _, id in ipairs(due) do
  local jobKey = ARGV[3] .. id
  local order = redis.call("HGET", jobKey, "order")
  redis.call("ZREM", KEYS[2], id)
  if paused then
    redis.call("ZADD", KEYS[4], order, id)
    redis.call("HSET", jobKey, "state", "paused")
  else
    redis.call("ZADD", KEYS[1], order, id)
    redis.call("HSET", jobKey, "state", "waiting")
  end
end
if paused then
  return false
end
local popped = redis.call("ZPOPMIN", KEYS[1])
if #popped == 0 then
  return false
end
local id = popped[1]
redis.call("ZADD", KEYS[3], ARGV[2], id)
redis.call("HSET", ARGV[3] .. id, "state", "active", "processed_at", ARGV[1], "lock_until", ARGV[2])
return id
"""

# KEYS: active, finished set, job
# ARGV: id, now, field/value pairs...
FINISH_JOB = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call("HINCRBY", KEYS[3], "attempts_made", 1)
redis.call("HSET", KEYS[3], "finished_at", ARGV[2], "lock_until", "", unpack(ARGV, 3))
redis.call("ZADD", KEYS[2], ARGV[2], ARGV[1])
return 1
"""

# KEYS: active, delayed, job
# ARGV: id, ready_at, reason
RETRY_JOB = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call("HINCRBY", KEYS[3], "attempts_made", 1)
redis.call("HSET", KEYS[3], "state", "delayed", "failed_reason", ARGV[3], "ready_at", ARGV[2], "lock_until", "")
redis.call("ZADD", KEYS[2], ARGV[2], ARGV[1])
return 1
"""

# KEYS: finished set
# ARGV: cutoff ("" = none), keep ("" = none), job key prefix
TRIM_FINISHED = """
local seen = {}
local removed = 0
local function drop(id)
  if not seen[id] then
    seen[id] = true
    redis.call("ZREM", KEYS[1], id)
    redis.call("DEL", ARGV[3] .. id)
    removed = removed + 1
  end
end
if ARGV[1] ~= "" then
  for _, id in ipairs(redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])) do
    drop(id)
  end
end
if ARGV[2] ~= "" then
  for _, id in ipairs(redis.call("ZREVRANGE", KEYS[1], tonumber(ARGV[2]), -1)) do
    drop(id)
  end
end
return removed
"""

# KEYS: finished set
# ARGV: cutoff, limit (0 = no limit), job key prefix
CLEAN_FINISHED = """
local ids
if tonumber(ARGV[2]) > 0 then
  ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[2]))
else
  ids = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
end
for _, id in ipairs(ids) do
  redis.call("ZREM", KEYS[1], id)
  redis.call("DEL", ARGV[3] .. id)
end
return ids
"""

# KEYS: active, waiting, failed, paused, meta
# ARGV: now, max stalled, job key prefix, failure reason
RECOVER_STALLED = """
local paused = redis.call("HGET", KEYS[5], "paused") == "1"
local expired = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", "(" .. ARGV[1])
local result = {}
for _, id in ipairs(expired) do
  local jobKey = ARGV[3] .. id
  redis.call("ZREM", KEYS[1], id)
  local stalled = redis.call("HINCRBY", jobKey, "stalled_count", 1)
  if stalled > tonumber(ARGV[2]) then
    redis.call("HSET", jobKey, "state", "failed", "failed_reason", ARGV[4], "finished_at", ARGV[1], "lock_until", "")
    redis.call("ZADD", KEYS[3], ARGV[1], id)
    table.insert(result, "failed:" .. id)
  else
    local order = redis.call("HGET", jobKey, "order")
    if paused then
      redis.call("ZADD", KEYS[4], order, id)
      redis.call("HSET", jobKey, "state", "paused", "lock_until", "")
    else
      redis.call("ZADD", KEYS[2], order, id)
      redis.call("HSET", jobKey, "state", "waiting", "lock_until", "")
    end
    table.insert(result, "requeued:" .. id)
  end
end
return result
"""

# KEYS: source set, target set, meta
# ARGV: paused flag ("1" / ""), target state, job key prefix
MOVE_ALL = """
if ARGV[1] == "1" then
  redis.call("HSET", KEYS[3], "paused", "1")
else
  redis.call("HDEL", KEYS[3], "paused")
end
local entries = redis.call("ZRANGE", KEYS[1], 0, -1, "WITHSCORES")
for i = 1, #entries, 2 do
  redis.call("ZADD", KEYS[2], entries[i + 1], entries[i])
  redis.call("HSET", ARGV[3] .. entries[i], "state", ARGV[2])
end
redis.call("DEL", KEYS[1])
return #entries / 2
"""

# KEYS: job, waiting, delayed, paused
# ARGV: id
REMOVE_PENDING = """
local removed = redis.call("ZREM", KEYS[2], ARGV[1]) + redis.call("ZREM", KEYS[3], ARGV[1]) + redis.call("ZREM", KEYS[4], ARGV[1])
if removed == 0 then
  return 0
end
redis.call("DEL", KEYS[1])
return 1
"""


# =============================================================================
# RECORD ENCODING
# =============================================================================


def _opt_int(raw: str | None) -> int | None:
    return int(raw) if raw not in (None, "") else None


def encode_record(record: JobRecord) -> dict[str, str]:
    """Flatten a JobRecord into hash fields."""
    return {
        "id": record.id,
        "queue": record.queue,
        "name": record.name,
        "data": json.dumps(record.data, default=str),
        "attempts": str(record.attempts),
        "backoff": json.dumps({"type": record.backoff.type, "delay_ms": record.backoff.delay_ms}),
        "seq": str(record.seq),
        "order": str(record.order),
        "priority": str(record.priority),
        "delay_ms": str(record.delay_ms),
        "repeat_key": record.repeat_key or "",
        "attempts_made": str(record.attempts_made),
        "stalled_count": str(record.stalled_count),
        "failed_reason": record.failed_reason or "",
        "progress": json.dumps(record.progress),
        "return_value": json.dumps(record.return_value, default=str),
        "created_at": str(record.created_at),
        "ready_at": str(record.ready_at),
        "processed_at": "" if record.processed_at is None else str(record.processed_at),
        "finished_at": "" if record.finished_at is None else str(record.finished_at),
        "lock_until": "" if record.lock_until is None else str(record.lock_until),
    }


def decode_record(fields: dict[str, str]) -> JobRecord:
    """Inverse of :func:`encode_record` (plus the script-managed ``state``)."""
    return JobRecord(
        id=fields["id"],
        queue=fields["queue"],
        name=fields["name"],
        data=json.loads(fields["data"]),
        attempts=int(fields["attempts"]),
        backoff=BackoffPolicy(**json.loads(fields["backoff"])),
        seq=int(fields["seq"]),
        priority=int(fields.get("priority", 0)),
        delay_ms=int(fields.get("delay_ms", 0)),
        repeat_key=fields.get("repeat_key") or None,
        state=JobState(fields.get("state", "waiting")),
        attempts_made=int(fields.get("attempts_made", 0)),
        stalled_count=int(fields.get("stalled_count", 0)),
        failed_reason=fields.get("failed_reason") or None,
        progress=json.loads(fields.get("progress") or "0"),
        return_value=json.loads(fields.get("return_value") or "null"),
        created_at=int(fields.get("created_at", 0)),
        ready_at=int(fields.get("ready_at", 0)),
        processed_at=_opt_int(fields.get("processed_at")),
        finished_at=_opt_int(fields.get("finished_at")),
        lock_until=_opt_int(fields.get("lock_until")),
    )


def _flatten(mapping: dict[str, str]) -> list[str]:
    flat: list[str] = []
    for key, value in mapping.items():
        flat.extend((key, value))
    return flat


# =============================================================================
# BACKEND
# =============================================================================


class RedisBackend:
    """:class:`~teamspark.execution.backends.base.QueueBackend` over ``redis.asyncio``.

    The client must be created with ``decode_responses=True``. The backend
    owns it: :meth:`close` closes the client, so close every Queue and
    WorkerPool first.

    Args:
        client: A ``redis.asyncio`` client.
        key_prefix: Namespace for every key this backend touches.
        clock: Returns epoch milliseconds. Defaults to the wall clock.
    """

    def __init__(
        self,
        client: Any,
        *,
        key_prefix: str = "tsq",
        clock: Callable[[], int] | None = None,
    ):
        self._client = client
        self._clock = clock or _wall_clock_ms
        self._prefix = key_prefix
        self._add = client.register_script(ADD_JOB)
        self._claim = client.register_script(CLAIM_JOB)
        self._finish = client.register_script(FINISH_JOB)
        self._retry = client.register_script(RETRY_JOB)
        self._trim = client.register_script(TRIM_FINISHED)
        self._clean = client.register_script(CLEAN_FINISHED)
        self._stalled = client.register_script(RECOVER_STALLED)
        self._move_all = client.register_script(MOVE_ALL)
        self._remove_pending = client.register_script(REMOVE_PENDING)
        self._closed = False

    @property
    def client(self) -> Any:
        return self._client

    def now(self) -> int:
        return self._clock()

    # ── Keys ─────────────────────────────────────────────────────────────

    def key(self, queue: str, suffix: str) -> str:
        return f"{self._prefix}:{queue}:{suffix}"

    def job_prefix(self, queue: str) -> str:
        return self.key(queue, "job:")

    def job_key(self, queue: str, job_id: str) -> str:
        return self.job_prefix(queue) + job_id

    # ── Jobs ─────────────────────────────────────────────────────────────

    async def next_seq(self, queue: str) -> int:
        return int(await self._client.incr(self.key(queue, "seq")))

    async def add(self, record: JobRecord) -> bool:
        q = record.queue
        created = await self._add(
            keys=[
                self.job_key(q, record.id),
                self.key(q, "waiting"),
                self.key(q, "delayed"),
                self.key(q, "paused"),
                self.key(q, "meta"),
            ],
            args=[record.id, record.order, record.ready_at, self.now(), *_flatten(encode_record(record))],
        )
        return bool(created)

    async def get(self, queue: str, job_id: str) -> JobRecord | None:
        fields = await self._client.hgetall(self.job_key(queue, job_id))
        if not fields:
            return None
        return decode_record(fields)

    async def claim(self, queue: str, now: int, lock_until: int) -> JobRecord | None:
        job_id = await self._claim(
            keys=[
                self.key(queue, "waiting"),
                self.key(queue, "delayed"),
                self.key(queue, "active"),
                self.key(queue, "paused"),
                self.key(queue, "meta"),
            ],
            args=[now, lock_until, self.job_prefix(queue)],
        )
        if not job_id:
            return None
        return await self.get(queue, job_id)

    async def extend_lock(self, queue: str, job_id: str, lock_until: int) -> bool:
        changed = await self._client.zadd(self.key(queue, "active"), {job_id: lock_until}, xx=True, ch=True)
        if changed:
            await self._client.hset(self.job_key(queue, job_id), "lock_until", str(lock_until))
        return bool(changed)

    async def update_progress(self, queue: str, job_id: str, progress: int | dict[str, Any]) -> None:
        key = self.job_key(queue, job_id)
        if await self._client.exists(key):
            await self._client.hset(key, "progress", json.dumps(progress))

    async def complete(self, queue: str, job_id: str, return_value: Any, now: int) -> bool:
        done = await self._finish(
            keys=[self.key(queue, "active"), self.key(queue, "completed"), self.job_key(queue, job_id)],
            args=[job_id, now, "state", "completed", "return_value", json.dumps(return_value, default=str)],
        )
        return bool(done)

    async def fail(self, queue: str, job_id: str, reason: str, now: int) -> bool:
        done = await self._finish(
            keys=[self.key(queue, "active"), self.key(queue, "failed"), self.job_key(queue, job_id)],
            args=[job_id, now, "state", "failed", "failed_reason", reason],
        )
        return bool(done)

    async def retry_later(self, queue: str, job_id: str, reason: str, ready_at: int) -> bool:
        moved = await self._retry(
            keys=[self.key(queue, "active"), self.key(queue, "delayed"), self.job_key(queue, job_id)],
            args=[job_id, ready_at, reason],
        )
        return bool(moved)

    async def apply_retention(
        self,
        queue: str,
        state: FinishedState,
        cutoff: int | None,
        keep: int | None,
    ) -> int:
        removed = await self._trim(
            keys=[self.key(queue, state)],
            args=[
                "" if cutoff is None else cutoff,
                "" if keep is None else keep,
                self.job_prefix(queue),
            ],
        )
        return int(removed)

    async def recover_stalled(
        self, queue: str, now: int, max_stalled: int, reason: str
    ) -> tuple[list[str], list[str]]:
        outcome = await self._stalled(
            keys=[
                self.key(queue, "active"),
                self.key(queue, "waiting"),
                self.key(queue, "failed"),
                self.key(queue, "paused"),
                self.key(queue, "meta"),
            ],
            args=[now, max_stalled, self.job_prefix(queue), reason],
        )
        requeued: list[str] = []
        failed: list[str] = []
        for entry in outcome or []:
            verdict, _, job_id = entry.partition(":")
            (failed if verdict == "failed" else requeued).append(job_id)
        return requeued, failed

    async def clean(self, queue: str, state: FinishedState, cutoff: int, limit: int) -> list[str]:
        ids = await self._clean(
            keys=[self.key(queue, state)],
            args=[cutoff, limit, self.job_prefix(queue)],
        )
        return list(ids or [])

    async def counts(self, queue: str) -> QueueCounts:
        async with self._client.pipeline(transaction=False) as pipe:
            for state in ("waiting", "active", "completed", "failed", "delayed", "paused"):
                pipe.zcard(self.key(queue, state))
            waiting, active, completed, failed, delayed, paused = await pipe.execute()
        return QueueCounts(
            waiting=int(waiting),
            active=int(active),
            completed=int(completed),
            failed=int(failed),
            delayed=int(delayed),
            paused=int(paused),
        )

    async def pause(self, queue: str) -> None:
        await self._move_all(
            keys=[self.key(queue, "waiting"), self.key(queue, "paused"), self.key(queue, "meta")],
            args=["1", "paused", self.job_prefix(queue)],
        )

    async def resume(self, queue: str) -> None:
        await self._move_all(
            keys=[self.key(queue, "paused"), self.key(queue, "waiting"), self.key(queue, "meta")],
            args=["", "waiting", self.job_prefix(queue)],
        )

    async def is_paused(self, queue: str) -> bool:
        return await self._client.hget(self.key(queue, "meta"), "paused") == "1"

    async def remove_job(self, queue: str, job_id: str) -> bool:
        removed = await self._remove_pending(
            keys=[
                self.job_key(queue, job_id),
                self.key(queue, "waiting"),
                self.key(queue, "delayed"),
                self.key(queue, "paused"),
            ],
            args=[job_id],
        )
        return bool(removed)

    # ── Repeat rules ─────────────────────────────────────────────────────

    async def save_repeat(self, rule: RepeatRule) -> None:
        await self._client.hset(self.key(rule.queue, "repeat"), rule.key, json.dumps(rule.to_dict(), default=str))

    async def get_repeat(self, queue: str, key: str) -> RepeatRule | None:
        raw = await self._client.hget(self.key(queue, "repeat"), key)
        return RepeatRule.from_dict(json.loads(raw)) if raw else None

    async def list_repeats(self, queue: str) -> list[RepeatRule]:
        raw = await self._client.hgetall(self.key(queue, "repeat"))
        return [RepeatRule.from_dict(json.loads(value)) for value in raw.values()]

    async def remove_repeat(self, queue: str, key: str) -> bool:
        return bool(await self._client.hdel(self.key(queue, "repeat"), key))

    # ── Connection ───────────────────────────────────────────────────────

    def cache(self, prefix: str, *, default_ttl_seconds: int | None = 3600) -> CacheBackend:
        return RedisCache(self._client, prefix, default_ttl_seconds=default_ttl_seconds)

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()
        log.info("redis_connection_closed")


__all__ = ["RedisBackend", "encode_record", "decode_record"]
