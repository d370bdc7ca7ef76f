"""Worker pool - pulls jobs from one queue and runs its handler.

Each pool runs one asyncio polling loop plus a task per active job. The
loop claims a job only when a concurrency slot is free and the optional
rate limiter has room, so a pool never holds more locked jobs than it can
run.

Usage::

    from teamspark.execution.worker import WorkerPool

    async def send(ctx: JobContext) -> dict:
        await ctx.update_progress(50)
        return {"success": True}

    pool = WorkerPool(queues[JobKind.SEND_EMAIL], send, concurrency=5)
    pool.on("failed", lambda job, error, outcome: ...)
    pool.start()
    ...
    await pool.close()  # waits for running handlers

Outcome classification:
    handler returns          -> completed, return value stored
    handler raises           -> Queue.fail: retry with backoff, or failed
    lock expires (crash/hang) -> stall check requeues it and emits ``stalled``
"""

from __future__ import annotations

import asyncio
import inspect
import os
import socket
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from teamspark.core.logging import LogContext, get_logger
from teamspark.execution.models import JobPayload, JobRecord, parse_payload
from teamspark.execution.queue import STALLED_REASON, FailureOutcome, Queue
from teamspark.execution.rate_limit import SlidingWindowLimiter

log = get_logger(__name__)

EVENTS = ("completed", "failed", "progress", "stalled")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class JobContext:
    """What a handler receives for one delivery."""

    job: JobRecord
    payload: JobPayload
    queue: Queue
    log: Any
    _on_progress: Callable[[JobRecord, int | dict[str, Any]], Awaitable[None]] | None = field(
        default=None, repr=False
    )

    @property
    def attempt(self) -> int:
        """1 for the first delivery, 2 for the first retry, ..."""
        return self.job.attempts_made + 1

    async def update_progress(self, progress: int | dict[str, Any]) -> None:
        """Persist progress (0-100 or a structured object) on the job record."""
        await self.queue.update_progress(self.job, progress)
        if self._on_progress is not None:
            await self._on_progress(self.job, progress)


Handler = Callable[[JobContext], Awaitable[Any]]


@dataclass
class WorkerStats:
    """Aggregate statistics for one pool."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    stalled: int = 0
    started_at: datetime | None = None
    last_poll_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "stalled": self.stalled,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }


def _serialize_result(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    return result


class WorkerPool:
    """Bounded-concurrency consumer of one queue.

    Args:
        queue: Queue to consume
        handler: ``async (JobContext) -> result``
        concurrency: Max handlers running at once
        limiter: Optional per-pool rate limiter (never share between pools)
        poll_interval: Seconds to sleep when the queue is empty
        lock_duration_ms: Lock taken on claim, renewed every half period
        stalled_interval_ms: How often expired locks are checked
        max_stalled_count: Stalls tolerated before a job is failed
    """

    def __init__(
        self,
        queue: Queue,
        handler: Handler,
        *,
        concurrency: int = 1,
        limiter: SlidingWindowLimiter | None = None,
        poll_interval: float = 0.5,
        lock_duration_ms: int = 30_000,
        stalled_interval_ms: int = 30_000,
        max_stalled_count: int = 1,
        worker_id: str | None = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self._handler = handler
        self.concurrency = concurrency
        self.limiter = limiter
        self.poll_interval = poll_interval
        self.lock_duration_ms = lock_duration_ms
        self.stalled_interval_ms = stalled_interval_ms
        self.max_stalled_count = max_stalled_count
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self.stats = WorkerStats()
        self._listeners: dict[str, list[Callable[..., Any]]] = {event: [] for event in EVENTS}
        self._slots = asyncio.Semaphore(concurrency)
        self._active: set[asyncio.Task[None]] = set()
        self._wake = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._stall_task: asyncio.Task[None] | None = None
        self._closing = False
        self._closed = False

    def __repr__(self) -> str:
        return f"WorkerPool(queue={self.queue.name!r}, concurrency={self.concurrency})"

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._closing

    @property
    def active_count(self) -> int:
        return len(self._active)

    def on(self, event: str, callback: Callable[..., Any]) -> None:
        """Subscribe to a lifecycle event.

        Callbacks (sync or async) receive:
            completed: (job, result)
            failed:    (job, error, outcome)
            progress:  (job, progress)
            stalled:   (job_id,)
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown worker event {event!r}; expected one of {EVENTS}")
        self._listeners[event].append(callback)

    async def _emit(self, event: str, *args: Any) -> None:
        for callback in self._listeners[event]:
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                log.exception("worker_listener_failed", queue=self.queue.name, worker_event=event)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> WorkerPool:
        """Start the polling and stall-check loops on the running event loop."""
        if self._loop_task is not None:
            return self
        if self._closing:
            raise RuntimeError(f"{self!r} is closed")
        self.stats.started_at = _utcnow()
        self._loop_task = asyncio.create_task(self._run_loop(), name=f"worker:{self.queue.name}")
        self._stall_task = asyncio.create_task(self._stall_loop(), name=f"stalled:{self.queue.name}")
        log.info(
            "worker_pool_started",
            queue=self.queue.name,
            worker_id=self.worker_id,
            concurrency=self.concurrency,
            rate_limited=self.limiter is not None,
        )
        return self

    async def close(self) -> None:
        """Stop pulling jobs and wait for running handlers. Safe to call twice."""
        if self._closed:
            return
        self._closing = True
        self._wake.set()
        if self._loop_task is not None:
            await self._loop_task
        if self._active:
            log.info("worker_pool_draining", queue=self.queue.name, active=len(self._active))
            await asyncio.gather(*self._active, return_exceptions=True)
        if self._stall_task is not None:
            self._stall_task.cancel()
            await asyncio.gather(self._stall_task, return_exceptions=True)
        self._closed = True
        log.info(
            "worker_pool_closed",
            queue=self.queue.name,
            worker_id=self.worker_id,
            processed=self.stats.processed,
            failed=self.stats.failed,
        )

    async def _sleep(self, seconds: float) -> None:
        """Sleep, returning early when close() is called."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except TimeoutError:
            pass

    # =========================================================================
    # POLLING
    # =========================================================================

    async def _run_loop(self) -> None:
        while not self._closing:
            await self._slots.acquire()
            if self._closing:
                self._slots.release()
                break

            if self.limiter is not None:
                wait = self.limiter.get_wait_time()
                if wait > 0:
                    self._slots.release()
                    await self._sleep(wait)
                    continue

            try:
                self.stats.last_poll_at = _utcnow()
                job = await self.queue.fetch_next(self.lock_duration_ms)
            except Exception as exc:
                self._slots.release()
                log.error("worker_poll_failed", queue=self.queue.name, error=str(exc))
                await self._sleep(self.poll_interval)
                continue

            if job is None:
                self._slots.release()
                await self._sleep(self.poll_interval)
                continue

            if self.limiter is not None:
                self.limiter.acquire()
            task = asyncio.create_task(self._process(job), name=f"job:{self.queue.name}:{job.id}")
            self._active.add(task)
            task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task[None]) -> None:
        self._active.discard(task)
        self._slots.release()

    async def _heartbeat(self, job: JobRecord) -> None:
        interval = self.lock_duration_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.extend_lock(job, self.lock_duration_ms):
                    log.warning("job_lock_lost", queue=self.queue.name, job_id=job.id)
                    return
            except Exception as exc:
                log.warning("job_lock_extend_failed", queue=self.queue.name, job_id=job.id, error=str(exc))

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def _process(self, job: JobRecord) -> None:
        started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(job))
        async with LogContext(queue=self.queue.name, job_id=job.id, job_name=job.name):
            try:
                try:
                    payload = parse_payload(self.queue.kind, job.data)
                    ctx = JobContext(
                        job=job,
                        payload=payload,
                        queue=self.queue,
                        log=log.bind(queue=self.queue.name, job_id=job.id, job_name=job.name),
                        _on_progress=self._on_progress,
                    )
                    result = _serialize_result(await self._handler(ctx))
                except Exception as exc:
                    heartbeat.cancel()
                    await self._handle_failure(job, exc)
                else:
                    heartbeat.cancel()
                    if not await self.queue.complete(job, result):
                        self._lock_lost(job, "completed")
                        return
                    self.stats.completed += 1
                    log.info(
                        "job_completed",
                        queue=self.queue.name,
                        job_id=job.id,
                        name=job.name,
                        attempt=job.attempts_made + 1,
                        duration_ms=int((time.monotonic() - started) * 1000),
                    )
                    await self._emit("completed", job, result)
            except Exception as exc:
                # Backend unreachable while recording the outcome; the lock
                # expires and the stall check redelivers the job
                log.error("job_finalize_failed", queue=self.queue.name, job_id=job.id, error=str(exc))
            finally:
                heartbeat.cancel()
                self.stats.processed += 1

    async def _handle_failure(self, job: JobRecord, error: Exception) -> None:
        outcome: FailureOutcome = await self.queue.fail(job, error)
        if not outcome.recorded:
            self._lock_lost(job, "failed", error=outcome.reason)
            return
        if outcome.will_retry:
            self.stats.retried += 1
            log.warning(
                "job_retry_scheduled",
                queue=self.queue.name,
                job_id=job.id,
                name=job.name,
                attempt=outcome.attempts_made,
                max_attempts=job.attempts,
                delay_ms=outcome.delay_ms,
                error=outcome.reason,
            )
        else:
            self.stats.failed += 1
            log.error(
                "job_failed",
                queue=self.queue.name,
                job_id=job.id,
                name=job.name,
                attempts_made=outcome.attempts_made,
                error=outcome.reason,
                error_type=type(error).__name__,
            )
        await self._emit("failed", job, error, outcome)

    def _lock_lost(self, job: JobRecord, outcome: str, **extra: Any) -> None:
        # The stall check already requeued or failed the job; its record is not ours to report
        log.warning(
            "job_lock_lost",
            queue=self.queue.name,
            job_id=job.id,
            name=job.name,
            outcome=outcome,
            **extra,
        )

    async def _on_progress(self, job: JobRecord, progress: int | dict[str, Any]) -> None:
        await self._emit("progress", job, progress)

    # =========================================================================
    # STALL DETECTION
    # =========================================================================

    async def _stall_loop(self) -> None:
        while not self._closing:
            try:
                await self.check_stalled()
            except Exception as exc:
                log.error("stalled_check_failed", queue=self.queue.name, error=str(exc))
            await self._sleep(self.stalled_interval_ms / 1000)

    async def check_stalled(self) -> tuple[list[str], list[str]]:
        """Requeue jobs whose lock expired. Returns (requeued, failed) ids."""
        requeued, failed = await self.queue.recover_stalled(self.max_stalled_count)
        for job_id in requeued + failed:
            self.stats.stalled += 1
            log.warning("job_stalled", queue=self.queue.name, job_id=job_id, worker_id=self.worker_id)
            await self._emit("stalled", job_id)
        for job_id in failed:
            log.error("job_failed", queue=self.queue.name, job_id=job_id, error=STALLED_REASON)
        return requeued, failed


__all__ = ["EVENTS", "Handler", "JobContext", "WorkerPool", "WorkerStats"]
