"""Tests for queue history cleanup."""

from unittest.mock import AsyncMock

import pytest

from teamspark.core.errors import BackendError
from teamspark.execution.maintenance import DAY_MS, clean_queue, clean_queues
from teamspark.execution.models import JobKind, JobOptions

EMAIL = {"to": "a@b.com", "subject": "hi", "template": "welcome", "data": {}}
CLEANUP = {"days_to_keep": 30, "data_type": "logs"}


async def finish(queue, payload, *, succeed: bool) -> str:
    await queue.enqueue("job", payload, JobOptions(attempts=1))
    job = await queue.fetch_next(1000)
    if succeed:
        await queue.complete(job, None)
    else:
        await queue.fail(job, RuntimeError("boom"))
    return job.id


class TestCleanQueue:
    @pytest.mark.asyncio
    async def test_completed_now_failed_after_a_day(self, queues, clock):
        queue = queues[JobKind.SEND_EMAIL]
        await finish(queue, EMAIL, succeed=True)
        await finish(queue, EMAIL, succeed=False)

        result = await clean_queue(queue)
        assert (result.completed, result.failed) == (1, 0)
        assert result.counts.failed == 1

        clock.advance(DAY_MS)
        result = await clean_queue(queue)
        assert (result.completed, result.failed) == (0, 1)
        assert result.counts.total == 0

    @pytest.mark.asyncio
    async def test_second_run_removes_nothing(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        await finish(queue, EMAIL, succeed=True)
        await clean_queue(queue)
        result = await clean_queue(queue)
        assert (result.completed, result.failed) == (0, 0)

    @pytest.mark.asyncio
    async def test_waiting_jobs_untouched(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        await queue.enqueue("pending", EMAIL)
        result = await clean_queue(queue, failed_grace_ms=0)
        assert result.counts.waiting == 1


class TestCleanQueues:
    @pytest.mark.asyncio
    async def test_report_totals(self, queues, clock):
        await finish(queues[JobKind.SEND_EMAIL], EMAIL, succeed=True)
        await finish(queues[JobKind.CLEANUP_OLD_DATA], CLEANUP, succeed=False)
        clock.advance(DAY_MS)

        report = await clean_queues(queues.values())

        assert report.success
        assert report.total_removed == 2
        assert len(report.results) == len(queues)
        by_name = {r.name: r for r in report.results}
        assert by_name["send-email"].completed == 1
        assert by_name["cleanup-old-data"].failed == 1

    @pytest.mark.asyncio
    async def test_failure_is_isolated_per_queue(self, queues):
        await finish(queues[JobKind.SEND_EMAIL], EMAIL, succeed=True)
        await finish(queues[JobKind.CLEANUP_OLD_DATA], CLEANUP, succeed=True)
        queues[JobKind.SEND_EMAIL].clean = AsyncMock(side_effect=BackendError("timeout"))

        report = await clean_queues(queues.values())

        assert not report.success
        assert list(report.errors) == ["send-email"]
        assert "timeout" in report.errors["send-email"]
        by_name = {r.name: r for r in report.results}
        assert by_name["cleanup-old-data"].completed == 1
        assert by_name["send-email"].to_dict()["counts"] is None
