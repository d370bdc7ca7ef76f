"""Queue history cleanup.

Trims finished jobs on every queue: completed jobs eagerly (grace 0) and
failed jobs after a day, which keeps a day of failures around for
diagnosis. Used by the ``cleanup-old-data`` job (``job-history``) and the
``teamspark-jobs queues clean`` command.

Each queue is cleaned independently: one queue raising does not stop the
others, and its error is recorded in that queue's result.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from teamspark.core.logging import get_logger
from teamspark.execution.models import JobState, QueueCounts
from teamspark.execution.queue import Queue

log = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

DEFAULT_COMPLETED_GRACE_MS = 0
DEFAULT_FAILED_GRACE_MS = DAY_MS
DEFAULT_CLEAN_LIMIT = 1000


@dataclass
class QueueCleanupResult:
    """Outcome of cleaning one queue."""

    name: str
    completed: int = 0
    failed: int = 0
    counts: QueueCounts | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "completed": self.completed,
            "failed": self.failed,
            "counts": self.counts.to_dict() if self.counts else None,
            "error": self.error,
        }


@dataclass
class CleanupReport:
    """Aggregated results of one cleanup run."""

    results: list[QueueCleanupResult] = field(default_factory=list)

    @property
    def total_removed(self) -> int:
        return sum(r.completed + r.failed for r in self.results)

    @property
    def errors(self) -> dict[str, str]:
        return {r.name: r.error for r in self.results if r.error is not None}

    @property
    def success(self) -> bool:
        return not self.errors


async def clean_queue(
    queue: Queue,
    *,
    completed_grace_ms: int = DEFAULT_COMPLETED_GRACE_MS,
    failed_grace_ms: int = DEFAULT_FAILED_GRACE_MS,
    limit: int = DEFAULT_CLEAN_LIMIT,
) -> QueueCleanupResult:
    """Clean one queue. Errors propagate."""
    completed = await queue.clean(completed_grace_ms, limit, JobState.COMPLETED)
    failed = await queue.clean(failed_grace_ms, limit, JobState.FAILED)
    counts = await queue.get_counts()
    return QueueCleanupResult(
        name=queue.name, completed=len(completed), failed=len(failed), counts=counts
    )


async def clean_queues(
    queues: Iterable[Queue],
    *,
    completed_grace_ms: int = DEFAULT_COMPLETED_GRACE_MS,
    failed_grace_ms: int = DEFAULT_FAILED_GRACE_MS,
    limit: int = DEFAULT_CLEAN_LIMIT,
) -> CleanupReport:
    """Clean every queue, isolating failures per queue."""
    report = CleanupReport()
    for queue in queues:
        try:
            result = await clean_queue(
                queue,
                completed_grace_ms=completed_grace_ms,
                failed_grace_ms=failed_grace_ms,
                limit=limit,
            )
        except Exception as exc:
            log.error("queue_clean_failed", queue=queue.name, error=str(exc))
            result = QueueCleanupResult(name=queue.name, error=str(exc))
        else:
            log.info(
                "queue_cleaned",
                queue=queue.name,
                completed_removed=result.completed,
                failed_removed=result.failed,
                **(result.counts.to_dict() if result.counts else {}),
            )
        report.results.append(result)
    return report


__all__ = [
    "DAY_MS",
    "DEFAULT_CLEAN_LIMIT",
    "DEFAULT_COMPLETED_GRACE_MS",
    "DEFAULT_FAILED_GRACE_MS",
    "CleanupReport",
    "QueueCleanupResult",
    "clean_queue",
    "clean_queues",
]
