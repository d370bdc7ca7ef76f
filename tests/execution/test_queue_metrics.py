"""Tests for the queue metrics facade."""

from unittest.mock import AsyncMock

import pytest

from teamspark.core.errors import BackendError
from teamspark.execution.metrics import get_all_queue_metrics, get_queue_metrics
from teamspark.execution.models import JobKind, JobOptions

EMAIL = {"to": "a@b.com", "subject": "hi", "template": "welcome", "data": {}}


class TestQueueMetrics:
    @pytest.mark.asyncio
    async def test_total_is_sum_of_counts(self, queues):
        queue = queues[JobKind.SEND_EMAIL]
        await queue.enqueue("a", EMAIL)
        await queue.enqueue("b", EMAIL)
        await queue.enqueue("later", EMAIL, JobOptions(delay_ms=60_000))
        await queue.complete(await queue.fetch_next(1000), None)
        await queue.fetch_next(1000)

        snapshot = await get_queue_metrics(queue)
        counts = snapshot.counts
        assert (counts.waiting, counts.active, counts.completed, counts.delayed) == (0, 1, 1, 1)
        assert snapshot.total == 3
        assert snapshot.total == sum(counts.to_dict().values())
        assert snapshot.ok

    @pytest.mark.asyncio
    async def test_empty_queue(self, queues):
        snapshot = await get_queue_metrics(queues[JobKind.CLEANUP_OLD_DATA])
        assert snapshot.total == 0
        assert snapshot.to_dict()["counts"]["waiting"] == 0


class TestAllQueueMetrics:
    @pytest.mark.asyncio
    async def test_one_snapshot_per_queue_in_order(self, queues):
        snapshots = await get_all_queue_metrics(queues.values())
        assert [s.name for s in snapshots] == [q.name for q in queues.values()]

    @pytest.mark.asyncio
    async def test_failing_queue_does_not_hide_others(self, queues):
        await queues[JobKind.SEND_NOTIFICATION].enqueue(
            "kudos", {"kudos_id": "k1", "sender_id": "u1", "receiver_id": "u2", "message": "thanks"}
        )
        queues[JobKind.SEND_EMAIL].get_counts = AsyncMock(side_effect=BackendError("redis down"))

        snapshots = {s.name: s for s in await get_all_queue_metrics(queues.values())}

        broken = snapshots["send-email"]
        assert not broken.ok
        assert broken.counts is None
        assert broken.total == 0
        assert "redis down" in broken.error
        assert snapshots["send-notification"].total == 1
        assert all(s.ok for name, s in snapshots.items() if name != "send-email")
