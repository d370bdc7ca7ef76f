"""cleanup-old-data handler.

``job-history`` trims the queues themselves (completed jobs immediately,
failed jobs older than ``days_to_keep``); every other data type is
delegated to the data store.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from teamspark.execution.maintenance import DAY_MS, clean_queues
from teamspark.execution.models import CleanupPayload
from teamspark.execution.queue import QueueSet
from teamspark.execution.worker import JobContext
from teamspark.jobs.datastore import DataStore


class CleanupHandler:
    def __init__(
        self,
        datastore: DataStore,
        queues: QueueSet,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.datastore = datastore
        self.queues = queues
        self._clock = clock or (lambda: datetime.now(UTC))

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        payload = cast(CleanupPayload, ctx.payload)
        cutoff = self._clock() - timedelta(days=payload.days_to_keep)
        await ctx.update_progress(10)

        if payload.data_type == "job-history":
            report = await clean_queues(
                self.queues.values(),
                completed_grace_ms=0,
                failed_grace_ms=payload.days_to_keep * DAY_MS,
            )
            await ctx.update_progress(100)
            return {
                "success": report.success,
                "data_type": payload.data_type,
                "removed": report.total_removed,
                "cutoff": cutoff.isoformat(),
                "queues": [result.to_dict() for result in report.results],
            }

        removed = await self.datastore.delete_records_older_than(payload.data_type, cutoff)
        await ctx.update_progress(100)
        ctx.log.info("old_data_removed", data_type=payload.data_type, removed=removed, cutoff=cutoff.isoformat())
        return {
            "success": True,
            "data_type": payload.data_type,
            "removed": removed,
            "cutoff": cutoff.isoformat(),
        }


__all__ = ["CleanupHandler"]
