"""In-process queue backend for tests and local development.

Mirrors the Redis backend's semantics exactly (ordering, pause, stall
recovery, retention) but keeps everything in dictionaries. Nothing
survives the process; use ``redis://`` wherever durability matters.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from teamspark.core.cache import CacheBackend, InMemoryCache
from teamspark.core.errors import BackendError
from teamspark.execution.backends.base import FinishedState
from teamspark.execution.models import JobRecord, JobState, QueueCounts, RepeatRule


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class _QueueData:
    jobs: dict[str, JobRecord] = field(default_factory=dict)
    # id -> score, one map per state
    waiting: dict[str, int] = field(default_factory=dict)
    paused: dict[str, int] = field(default_factory=dict)
    delayed: dict[str, int] = field(default_factory=dict)
    active: dict[str, int] = field(default_factory=dict)
    completed: dict[str, int] = field(default_factory=dict)
    failed: dict[str, int] = field(default_factory=dict)
    is_paused: bool = False
    seq: int = 0
    repeats: dict[str, RepeatRule] = field(default_factory=dict)

    def finished(self, state: FinishedState) -> dict[str, int]:
        return self.completed if state == "completed" else self.failed

    def enqueue_ready(self, job: JobRecord) -> None:
        if self.is_paused:
            self.paused[job.id] = job.order
            job.state = JobState.PAUSED
        else:
            self.waiting[job.id] = job.order
            job.state = JobState.WAITING


class MemoryBackend:
    """Dictionary-backed :class:`~teamspark.execution.backends.base.QueueBackend`.

    Args:
        clock: Returns epoch milliseconds. Tests pass a controllable clock.
    """

    def __init__(self, clock: Callable[[], int] | None = None):
        self._clock = clock or _wall_clock_ms
        self._queues: dict[str, _QueueData] = {}
        self._caches: dict[str, InMemoryCache] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def now(self) -> int:
        return self._clock()

    def _q(self, queue: str) -> _QueueData:
        if self._closed:
            raise BackendError("Backend connection is closed", context={"queue": queue})
        return self._queues.setdefault(queue, _QueueData())

    async def next_seq(self, queue: str) -> int:
        q = self._q(queue)
        q.seq += 1
        return q.seq

    async def add(self, record: JobRecord) -> bool:
        q = self._q(record.queue)
        if record.id in q.jobs:
            return False
        job = record.copy()
        if job.ready_at > self.now():
            q.delayed[job.id] = job.ready_at
            job.state = JobState.DELAYED
        else:
            q.enqueue_ready(job)
        q.jobs[job.id] = job
        return True

    async def get(self, queue: str, job_id: str) -> JobRecord | None:
        job = self._q(queue).jobs.get(job_id)
        return job.copy() if job else None

    async def claim(self, queue: str, now: int, lock_until: int) -> JobRecord | None:
        q = self._q(queue)
        for job_id, ready_at in sorted(q.delayed.items(), key=lambda item: item[1]):
            if ready_at > now:
                break
            del q.delayed[job_id]
            q.enqueue_ready(q.jobs[job_id])
        if q.is_paused or not q.waiting:
            return None
        job_id = min(q.waiting, key=q.waiting.__getitem__)
        del q.waiting[job_id]
        job = q.jobs[job_id]
        job.state = JobState.ACTIVE
        job.processed_at = now
        job.lock_until = lock_until
        q.active[job_id] = lock_until
        return job.copy()

    async def extend_lock(self, queue: str, job_id: str, lock_until: int) -> bool:
        q = self._q(queue)
        if job_id not in q.active:
            return False
        q.active[job_id] = lock_until
        q.jobs[job_id].lock_until = lock_until
        return True

    async def update_progress(self, queue: str, job_id: str, progress: int | dict[str, Any]) -> None:
        job = self._q(queue).jobs.get(job_id)
        if job is not None:
            job.progress = progress

    def _finish(self, q: _QueueData, job_id: str, state: JobState, now: int) -> JobRecord | None:
        if q.active.pop(job_id, None) is None:
            return None
        job = q.jobs[job_id]
        job.state = state
        job.attempts_made += 1
        job.finished_at = now
        job.lock_until = None
        return job

    async def complete(self, queue: str, job_id: str, return_value: Any, now: int) -> bool:
        q = self._q(queue)
        job = self._finish(q, job_id, JobState.COMPLETED, now)
        if job is None:
            return False
        job.return_value = return_value
        q.completed[job_id] = now
        return True

    async def fail(self, queue: str, job_id: str, reason: str, now: int) -> bool:
        q = self._q(queue)
        job = self._finish(q, job_id, JobState.FAILED, now)
        if job is None:
            return False
        job.failed_reason = reason
        q.failed[job_id] = now
        return True

    async def retry_later(self, queue: str, job_id: str, reason: str, ready_at: int) -> bool:
        q = self._q(queue)
        if q.active.pop(job_id, None) is None:
            return False
        job = q.jobs[job_id]
        job.attempts_made += 1
        job.failed_reason = reason
        job.state = JobState.DELAYED
        job.ready_at = ready_at
        job.lock_until = None
        q.delayed[job_id] = ready_at
        return True

    def _drop(self, q: _QueueData, ids: list[str], scores: dict[str, int]) -> None:
        for job_id in ids:
            scores.pop(job_id, None)
            q.jobs.pop(job_id, None)

    async def apply_retention(
        self,
        queue: str,
        state: FinishedState,
        cutoff: int | None,
        keep: int | None,
    ) -> int:
        q = self._q(queue)
        scores = q.finished(state)
        doomed: set[str] = set()
        if cutoff is not None:
            doomed.update(job_id for job_id, ts in scores.items() if ts <= cutoff)
        if keep is not None:
            newest_first = sorted(scores, key=lambda j: (scores[j], q.jobs[j].seq), reverse=True)
            doomed.update(newest_first[keep:])
        self._drop(q, list(doomed), scores)
        return len(doomed)

    async def recover_stalled(
        self, queue: str, now: int, max_stalled: int, reason: str
    ) -> tuple[list[str], list[str]]:
        q = self._q(queue)
        requeued: list[str] = []
        failed: list[str] = []
        for job_id, lock_until in sorted(q.active.items(), key=lambda item: item[1]):
            if lock_until >= now:
                continue
            del q.active[job_id]
            job = q.jobs[job_id]
            job.stalled_count += 1
            job.lock_until = None
            if job.stalled_count > max_stalled:
                job.state = JobState.FAILED
                job.failed_reason = reason
                job.finished_at = now
                q.failed[job_id] = now
                failed.append(job_id)
            else:
                q.enqueue_ready(job)
                requeued.append(job_id)
        return requeued, failed

    async def clean(self, queue: str, state: FinishedState, cutoff: int, limit: int) -> list[str]:
        q = self._q(queue)
        scores = q.finished(state)
        ids = [job_id for job_id, ts in sorted(scores.items(), key=lambda item: item[1]) if ts <= cutoff]
        if limit > 0:
            ids = ids[:limit]
        self._drop(q, ids, scores)
        return ids

    async def counts(self, queue: str) -> QueueCounts:
        q = self._q(queue)
        return QueueCounts(
            waiting=len(q.waiting),
            active=len(q.active),
            completed=len(q.completed),
            failed=len(q.failed),
            delayed=len(q.delayed),
            paused=len(q.paused),
        )

    async def pause(self, queue: str) -> None:
        q = self._q(queue)
        q.is_paused = True
        for job_id, score in q.waiting.items():
            q.paused[job_id] = score
            q.jobs[job_id].state = JobState.PAUSED
        q.waiting.clear()

    async def resume(self, queue: str) -> None:
        q = self._q(queue)
        q.is_paused = False
        for job_id, score in q.paused.items():
            q.waiting[job_id] = score
            q.jobs[job_id].state = JobState.WAITING
        q.paused.clear()

    async def is_paused(self, queue: str) -> bool:
        return self._q(queue).is_paused

    async def remove_job(self, queue: str, job_id: str) -> bool:
        q = self._q(queue)
        for scores in (q.waiting, q.delayed, q.paused):
            if job_id in scores:
                self._drop(q, [job_id], scores)
                return True
        return False

    async def save_repeat(self, rule: RepeatRule) -> None:
        self._q(rule.queue).repeats[rule.key] = RepeatRule.from_dict(rule.to_dict())

    async def get_repeat(self, queue: str, key: str) -> RepeatRule | None:
        rule = self._q(queue).repeats.get(key)
        return RepeatRule.from_dict(rule.to_dict()) if rule else None

    async def list_repeats(self, queue: str) -> list[RepeatRule]:
        return [RepeatRule.from_dict(r.to_dict()) for r in self._q(queue).repeats.values()]

    async def remove_repeat(self, queue: str, key: str) -> bool:
        return self._q(queue).repeats.pop(key, None) is not None

    def cache(self, prefix: str, *, default_ttl_seconds: int | None = 3600) -> CacheBackend:
        if prefix not in self._caches:
            self._caches[prefix] = InMemoryCache(prefix, default_ttl_seconds=default_ttl_seconds)
        return self._caches[prefix]

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True


__all__ = ["MemoryBackend"]
