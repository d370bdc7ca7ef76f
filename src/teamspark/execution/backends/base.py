"""
Durable queue store interface.

The queue, worker pool, and scheduler talk to storage only through
:class:`QueueBackend`. Every state transition a job goes through is one
backend call, and each call is atomic in the durable implementation
(Lua scripts in Redis), so a crash between two calls leaves every job in
exactly one state.

State transitions::

    add ─────────► waiting ◄──────── (delay due) ◄── delayed
      │              │  ▲                              ▲
      └─► delayed    │  └── recover_stalled ──┐        │
      └─► paused     ▼                        │        │
                   active ──── retry_later ───┼────────┘
                     │                        │
          complete ──┴── fail          (lock expired)
             ▼            ▼
         completed      failed  ──► clean / retention

All timestamps are epoch milliseconds from :meth:`QueueBackend.now`.
"""

from __future__ import annotations

from typing import Any, Literal, Protocol, runtime_checkable

from teamspark.core.cache import CacheBackend
from teamspark.execution.models import JobRecord, QueueCounts, RepeatRule

FinishedState = Literal["completed", "failed"]


@runtime_checkable
class QueueBackend(Protocol):
    """Storage operations used by Queue and WorkerPool."""

    def now(self) -> int:
        """Current time in epoch milliseconds."""
        ...

    async def next_seq(self, queue: str) -> int:
        """Allocate the next arrival sequence number for ``queue``."""
        ...

    async def add(self, record: JobRecord) -> bool:
        """Persist a new job. Returns False (and changes nothing) if the id exists."""
        ...

    async def get(self, queue: str, job_id: str) -> JobRecord | None: ...

    async def claim(self, queue: str, now: int, lock_until: int) -> JobRecord | None:
        """Promote due delayed jobs, then move the best waiting job to active."""
        ...

    async def extend_lock(self, queue: str, job_id: str, lock_until: int) -> bool: ...

    async def update_progress(self, queue: str, job_id: str, progress: int | dict[str, Any]) -> None: ...

    async def complete(self, queue: str, job_id: str, return_value: Any, now: int) -> bool: ...

    async def retry_later(self, queue: str, job_id: str, reason: str, ready_at: int) -> bool: ...

    async def fail(self, queue: str, job_id: str, reason: str, now: int) -> bool: ...

    async def apply_retention(
        self,
        queue: str,
        state: FinishedState,
        cutoff: int | None,
        keep: int | None,
    ) -> int:
        """Remove finished jobs older than ``cutoff`` or beyond the newest ``keep``."""
        ...

    async def recover_stalled(
        self, queue: str, now: int, max_stalled: int, reason: str
    ) -> tuple[list[str], list[str]]:
        """Requeue active jobs whose lock expired. Returns (requeued, failed) ids."""
        ...

    async def clean(self, queue: str, state: FinishedState, cutoff: int, limit: int) -> list[str]:
        """Remove up to ``limit`` (0 = no limit) jobs finished at or before ``cutoff``."""
        ...

    async def counts(self, queue: str) -> QueueCounts: ...

    async def pause(self, queue: str) -> None: ...

    async def resume(self, queue: str) -> None: ...

    async def is_paused(self, queue: str) -> bool: ...

    async def remove_job(self, queue: str, job_id: str) -> bool:
        """Remove a job that has not started (waiting, delayed or paused)."""
        ...

    async def save_repeat(self, rule: RepeatRule) -> None: ...

    async def get_repeat(self, queue: str, key: str) -> RepeatRule | None: ...

    async def list_repeats(self, queue: str) -> list[RepeatRule]: ...

    async def remove_repeat(self, queue: str, key: str) -> bool: ...

    def cache(self, prefix: str, *, default_ttl_seconds: int | None = 3600) -> CacheBackend:
        """A cache sharing this backend's connection."""
        ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


__all__ = ["QueueBackend", "FinishedState"]
