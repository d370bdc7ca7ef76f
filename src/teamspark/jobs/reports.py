"""generate-report handler.

Computes engagement metrics for the organization's last complete
reporting period and queues one ``team-report`` email per recipient.
Email job ids derive from the report job id, so a retried report does
not queue the same email twice.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, cast

from teamspark.execution.models import GenerateReportPayload, JobKind, JobOptions, SendEmailPayload
from teamspark.execution.queue import QueueSet
from teamspark.execution.worker import JobContext
from teamspark.jobs.datastore import DataStore
from teamspark.jobs.metrics import engagement_metrics, period_window


class ReportHandler:
    def __init__(
        self,
        datastore: DataStore,
        queues: QueueSet,
        *,
        app_url: str = "",
        clock: Callable[[], datetime] | None = None,
    ):
        self.datastore = datastore
        self.queues = queues
        self.app_url = app_url.rstrip("/")
        self._clock = clock or (lambda: datetime.now(UTC))

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        payload = cast(GenerateReportPayload, ctx.payload)

        start, end = period_window(payload.report_type, self._clock())
        await ctx.update_progress(10)
        metrics = await engagement_metrics(self.datastore, payload.organization_id, start, end)
        await ctx.update_progress(50)

        emails = self.queues[JobKind.SEND_EMAIL]
        sent = skipped = 0
        for recipient_id in payload.recipient_ids:
            user = await self.datastore.get_user(recipient_id)
            if user is None or not user.is_active:
                skipped += 1
                continue
            await emails.enqueue(
                "team-report",
                SendEmailPayload(
                    to=user.email,
                    subject=f"Your {payload.report_type} team report",
                    template="team-report",
                    data={
                        "name": user.name,
                        "report_type": payload.report_type,
                        "range_start": start.date().isoformat(),
                        "range_end": end.date().isoformat(),
                        "metrics": metrics,
                        "dashboard_url": f"{self.app_url}/dashboard" if self.app_url else None,
                    },
                ),
                JobOptions(job_id=f"report:{ctx.job.id}:{recipient_id}"),
            )
            sent += 1

        await ctx.update_progress(100)
        ctx.log.info(
            "report_generated",
            organization_id=payload.organization_id,
            report_type=payload.report_type,
            recipients=sent,
            skipped=skipped,
        )
        return {
            "success": True,
            "organization_id": payload.organization_id,
            "report_type": payload.report_type,
            "recipients": sent,
            "skipped_recipients": skipped,
            "metrics": metrics,
            "range": {"start": start.isoformat(), "end": end.isoformat()},
        }


__all__ = ["ReportHandler"]
