"""
Tests for WorkerPool.

Pools run for real on the test event loop with a short poll interval;
the backend clock is a FakeClock, so retry delays elapse only when a
test advances it.
"""

import asyncio
import time

import pytest

from teamspark.core.errors import PayloadValidationError
from teamspark.execution.models import BackoffPolicy, JobKind, JobOptions, JobRecord, JobState
from teamspark.execution.queue import STALLED_REASON
from teamspark.execution.rate_limit import SlidingWindowLimiter
from teamspark.execution.worker import WorkerPool

EMAIL = {"to": "a@b.com", "subject": "hi", "template": "welcome", "data": {}}


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_pool(queue, handler, **kwargs) -> WorkerPool:
    kwargs.setdefault("poll_interval", 0.01)
    return WorkerPool(queue, handler, **kwargs)


class TestProcessing:
    """Happy path and outcome classification."""

    @pytest.mark.asyncio
    async def test_completes_and_stores_result(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        completed = []

        async def handler(ctx):
            return {"to": ctx.payload.to}

        pool = make_pool(queue, handler)
        pool.on("completed", lambda job, result: completed.append((job.id, result)))
        handle = await queue.enqueue("welcome", EMAIL)
        pool.start()
        try:
            await wait_for(lambda: completed)
        finally:
            await pool.close()

        assert completed == [(handle.id, {"to": "a@b.com"})]
        job = await queue.get_job(handle.id)
        assert job.state == JobState.COMPLETED
        assert job.return_value == {"to": "a@b.com"}
        assert pool.stats.completed == 1

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff(self, queues, clock):
        """Fails twice, waits 2s then 4s, succeeds on the third delivery."""
        queue = queues[JobKind.SEND_EMAIL]
        failures = []
        completed = []

        async def handler(ctx):
            if ctx.attempt < 3:
                raise RuntimeError(f"attempt {ctx.attempt}")
            return {"ok": ctx.attempt}

        pool = make_pool(queue, handler)
        pool.on("failed", lambda job, error, outcome: failures.append(outcome))
        pool.on("completed", lambda job, result: completed.append(result))
        handle = await queue.enqueue("welcome", EMAIL)
        pool.start()
        try:
            await wait_for(lambda: len(failures) == 1)
            assert failures[0].delay_ms == 2000
            assert failures[0].will_retry
            clock.advance(2000)
            await wait_for(lambda: len(failures) == 2)
            assert failures[1].delay_ms == 4000
            clock.advance(4000)
            await wait_for(lambda: completed)
        finally:
            await pool.close()

        assert completed == [{"ok": 3}]
        job = await queue.get_job(handle.id)
        assert job.state == JobState.COMPLETED
        assert job.attempts_made == 3
        assert pool.stats.retried == 2

    @pytest.mark.asyncio
    async def test_handler_runs_at_most_attempts_times(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        calls = []
        failures = []

        async def handler(ctx):
            calls.append(ctx.attempt)
            raise RuntimeError("always")

        pool = make_pool(queue, handler)
        pool.on("failed", lambda job, error, outcome: failures.append(outcome))
        handle = await queue.enqueue("welcome", EMAIL, JobOptions(backoff=BackoffPolicy("fixed", 0)))
        pool.start()
        try:
            await wait_for(lambda: len(failures) == 3)
            await asyncio.sleep(0.05)
        finally:
            await pool.close()

        assert calls == [1, 2, 3]
        assert failures[-1].state == JobState.FAILED
        job = await queue.get_job(handle.id)
        assert job.state == JobState.FAILED
        assert job.failed_reason == "always"

    @pytest.mark.asyncio
    async def test_invalid_stored_payload_fails_without_retry(self, queues, backend, clock):
        queue = queues[JobKind.SEND_EMAIL]
        called = []
        failures = []

        async def handler(ctx):
            called.append(ctx)

        await backend.add(
            JobRecord(
                id="bad",
                queue=queue.name,
                name="welcome",
                data={"bogus": True},
                attempts=3,
                backoff=BackoffPolicy(),
                seq=1,
                created_at=clock(),
                ready_at=clock(),
            )
        )
        pool = make_pool(queue, handler)
        pool.on("failed", lambda job, error, outcome: failures.append((error, outcome)))
        pool.start()
        try:
            await wait_for(lambda: failures)
        finally:
            await pool.close()

        error, outcome = failures[0]
        assert isinstance(error, PayloadValidationError)
        assert outcome.state == JobState.FAILED
        assert called == []

    @pytest.mark.asyncio
    async def test_progress_event(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        progress = []

        async def handler(ctx):
            await ctx.update_progress(50)
            return None

        pool = make_pool(queue, handler)
        pool.on("progress", lambda job, value: progress.append(value))
        handle = await queue.enqueue("welcome", EMAIL)
        pool.start()
        try:
            await wait_for(lambda: pool.stats.completed == 1)
        finally:
            await pool.close()

        assert progress == [50]
        assert (await queue.get_job(handle.id)).progress == 50


class TestConcurrency:
    """Slots and rate limiting."""

    @pytest.mark.asyncio
    async def test_never_exceeds_concurrency(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        release = asyncio.Event()
        running = 0
        peak = 0

        async def handler(ctx):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1

        pool = make_pool(queue, handler, concurrency=2)
        for i in range(5):
            await queue.enqueue(f"job-{i}", EMAIL)
        pool.start()
        try:
            await wait_for(lambda: running == 2)
            await asyncio.sleep(0.05)
            assert peak == 2
            assert (await queue.get_counts()).active == 2
            release.set()
            await wait_for(lambda: pool.stats.completed == 5)
        finally:
            release.set()
            await pool.close()
        assert peak == 2

    @pytest.mark.asyncio
    async def test_rate_limiter_spaces_out_starts(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        starts = []

        async def handler(ctx):
            starts.append(time.monotonic())

        limiter = SlidingWindowLimiter(max_requests=2, window_seconds=0.2)
        pool = make_pool(queue, handler, concurrency=5, limiter=limiter)
        for i in range(3):
            await queue.enqueue(f"job-{i}", EMAIL)
        pool.start()
        try:
            await wait_for(lambda: len(starts) == 3)
        finally:
            await pool.close()

        assert starts[1] - starts[0] < 0.15
        assert starts[2] - starts[0] >= 0.15

    def test_rejects_zero_concurrency(self, queues):
        with pytest.raises(ValueError):
            WorkerPool(queues[JobKind.SEND_EMAIL], lambda ctx: None, concurrency=0)


class TestStalled:
    @pytest.mark.asyncio
    async def test_requeue_then_fail(self, queues, clock):
        queue = queues[JobKind.SEND_EMAIL]
        stalled = []
        pool = WorkerPool(queue, lambda ctx: None, lock_duration_ms=1000, max_stalled_count=1)
        pool.on("stalled", stalled.append)
        handle = await queue.enqueue("welcome", EMAIL)

        await queue.fetch_next(1000)
        clock.advance(1001)
        assert await pool.check_stalled() == ([handle.id], [])
        assert (await queue.get_job(handle.id)).state == JobState.WAITING

        await queue.fetch_next(1000)
        clock.advance(1001)
        assert await pool.check_stalled() == ([], [handle.id])
        job = await queue.get_job(handle.id)
        assert job.state == JobState.FAILED
        assert job.failed_reason == STALLED_REASON
        assert stalled == [handle.id, handle.id]
        assert pool.stats.stalled == 2

    @pytest.mark.asyncio
    async def test_live_lock_is_not_stalled(self, queues, clock):
        queue = queues[JobKind.SEND_EMAIL]
        pool = WorkerPool(queue, lambda ctx: None)
        await queue.enqueue("welcome", EMAIL)
        await queue.fetch_next(1000)
        clock.advance(1000)
        assert await pool.check_stalled() == ([], [])

    @pytest.mark.parametrize("outcome", ["return", "raise"])
    @pytest.mark.asyncio
    async def test_outcome_after_lock_lost_is_not_reported(self, queues, clock, outcome):
        """A handler finishing after the stall check took its job back reports nothing."""
        queue = queues[JobKind.SEND_EMAIL]
        started = asyncio.Event()
        release = asyncio.Event()
        events = []

        async def handler(ctx):
            started.set()
            await release.wait()
            if outcome == "raise":
                raise RuntimeError("late")
            return "late"

        pool = make_pool(queue, handler, stalled_interval_ms=60_000)
        pool.on("completed", lambda job, result: events.append("completed"))
        pool.on("failed", lambda job, error, result: events.append("failed"))
        handle = await queue.enqueue("welcome", EMAIL)
        pool.start()
        await asyncio.wait_for(started.wait(), timeout=2)

        # keep the requeued job away from this pool's next poll
        await queue.pause()
        clock.advance(pool.lock_duration_ms + 1)
        assert await queue.recover_stalled(1) == ([handle.id], [])

        release.set()
        try:
            await wait_for(lambda: pool.stats.processed == 1)
        finally:
            await pool.close()

        assert events == []
        assert (pool.stats.completed, pool.stats.failed, pool.stats.retried) == (0, 0, 0)
        job = await queue.get_job(handle.id)
        assert job.state == JobState.PAUSED
        assert job.attempts_made == 0


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_waits_for_running_handler(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        started = asyncio.Event()
        release = asyncio.Event()

        async def handler(ctx):
            started.set()
            await release.wait()
            return "done"

        pool = make_pool(queue, handler)
        handle = await queue.enqueue("welcome", EMAIL)
        pool.start()
        await asyncio.wait_for(started.wait(), timeout=2)

        closing = asyncio.create_task(pool.close())
        await asyncio.sleep(0.05)
        assert not closing.done()
        release.set()
        await asyncio.wait_for(closing, timeout=2)

        assert (await queue.get_job(handle.id)).state == JobState.COMPLETED
        await pool.close()
        assert not pool.running

    @pytest.mark.asyncio
    async def test_start_after_close(self, queues):
        pool = make_pool(queues[JobKind.SEND_EMAIL], lambda ctx: None)
        await pool.close()
        with pytest.raises(RuntimeError):
            pool.start()

    @pytest.mark.asyncio
    async def test_start_twice_returns_same_pool(self, queues):
        pool = make_pool(queues[JobKind.SEND_EMAIL], lambda ctx: None)
        try:
            assert pool.start() is pool
            assert pool.start() is pool
            assert pool.running
        finally:
            await pool.close()


class TestListeners:
    def test_unknown_event(self, queues):
        pool = WorkerPool(queues[JobKind.SEND_EMAIL], lambda ctx: None)
        with pytest.raises(ValueError):
            pool.on("exploded", print)

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        seen = []

        def broken(job, result):
            raise RuntimeError("listener bug")

        async def handler(ctx):
            return 1

        pool = make_pool(queue, handler)
        pool.on("completed", broken)
        pool.on("completed", lambda job, result: seen.append(result))
        handle = await queue.enqueue("welcome", EMAIL)
        pool.start()
        try:
            await wait_for(lambda: seen)
        finally:
            await pool.close()

        assert seen == [1]
        assert (await queue.get_job(handle.id)).state == JobState.COMPLETED
