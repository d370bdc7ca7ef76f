"""Queue metrics facade.

Read-only snapshots of queue populations for dashboards, the CLI, and the
periodic metrics log line. A queue whose counts cannot be read reports its
error in the snapshot instead of hiding the other queues.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from teamspark.core.logging import get_logger
from teamspark.execution.models import QueueMetrics
from teamspark.execution.queue import Queue

log = get_logger(__name__)


async def get_queue_metrics(queue: Queue) -> QueueMetrics:
    counts = await queue.get_counts()
    return QueueMetrics(name=queue.name, counts=counts, total=counts.total)


async def get_all_queue_metrics(queues: Iterable[Queue]) -> list[QueueMetrics]:
    """Counts for every queue, in the order given. Failures are per queue."""
    queue_list = list(queues)
    results = await asyncio.gather(
        *(get_queue_metrics(queue) for queue in queue_list), return_exceptions=True
    )
    snapshots: list[QueueMetrics] = []
    for queue, result in zip(queue_list, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            log.error("queue_metrics_failed", queue=queue.name, error=str(result))
            snapshots.append(QueueMetrics(name=queue.name, counts=None, total=0, error=str(result)))
        else:
            snapshots.append(result)
    return snapshots


__all__ = ["get_queue_metrics", "get_all_queue_metrics"]
