"""
Job execution: typed work items, durable queues, and worker pools.

    models.py       JobKind, payload models, options, records
    backends/       durable store (Redis) and in-memory store
    queue.py        Queue, QueueSet, per-kind policies
    worker.py       WorkerPool, JobContext
    retry.py        backoff strategies
    rate_limit.py   per-pool sliding window limiter
    metrics.py      queue metrics facade
    maintenance.py  history cleanup
"""

from teamspark.execution.models import (
    JobHandle,
    JobKind,
    JobOptions,
    JobRecord,
    JobState,
    QueueCounts,
    QueueMetrics,
    QueuePolicy,
    RepeatOptions,
)
from teamspark.execution.queue import Queue, QueueSet
from teamspark.execution.worker import JobContext, WorkerPool

__all__ = [
    "JobContext",
    "JobHandle",
    "JobKind",
    "JobOptions",
    "JobRecord",
    "JobState",
    "Queue",
    "QueueCounts",
    "QueueMetrics",
    "QueuePolicy",
    "QueueSet",
    "RepeatOptions",
    "WorkerPool",
]
