"""The platform's recurring job table. All patterns are UTC.

Fan-out rows are keyed by organization, so a changed recipient list or a
new organization replaces or adds exactly one rule per organization.
"""

from __future__ import annotations

from collections import defaultdict

from teamspark.execution.models import (
    CalculateMetricsPayload,
    CleanupPayload,
    GenerateReportPayload,
    JobKind,
    JobPayload,
)
from teamspark.jobs.datastore import DataStore
from teamspark.scheduling.scheduler import PayloadProducer, ScheduledJob, StaticPayload


def _organization_id(payload: JobPayload) -> str:
    return str(payload.model_dump()["organization_id"])


def _per_organization(datastore: DataStore, metric_type: str, period: str) -> PayloadProducer:
    async def produce() -> list[CalculateMetricsPayload]:
        return [
            CalculateMetricsPayload(organization_id=org_id, metric_type=metric_type, period=period)
            for org_id in sorted(await datastore.list_organization_ids())
        ]

    return PayloadProducer(produce)


def _weekly_reports(datastore: DataStore) -> PayloadProducer:
    async def produce() -> list[GenerateReportPayload]:
        by_org: dict[str, set[str]] = defaultdict(set)
        for recipient in await datastore.list_report_recipients():
            by_org[recipient.organization_id].add(recipient.user_id)
        return [
            GenerateReportPayload(organization_id=org_id, report_type="weekly", recipient_ids=sorted(user_ids))
            for org_id, user_ids in sorted(by_org.items())
        ]

    return PayloadProducer(produce)


def default_schedule(datastore: DataStore) -> list[ScheduledJob]:
    return [
        ScheduledJob(
            name="daily-engagement-metrics",
            kind=JobKind.CALCULATE_METRICS,
            source=_per_organization(datastore, "engagement", "daily"),
            pattern="0 1 * * *",
            identity=_organization_id,
        ),
        ScheduledJob(
            name="weekly-performance-metrics",
            kind=JobKind.CALCULATE_METRICS,
            source=_per_organization(datastore, "performance", "weekly"),
            pattern="0 2 * * 1",
            identity=_organization_id,
        ),
        ScheduledJob(
            name="monthly-satisfaction-metrics",
            kind=JobKind.CALCULATE_METRICS,
            source=_per_organization(datastore, "satisfaction", "monthly"),
            pattern="0 3 1 * *",
            identity=_organization_id,
        ),
        ScheduledJob(
            name="weekly-team-reports",
            kind=JobKind.GENERATE_REPORT,
            source=_weekly_reports(datastore),
            pattern="0 9 * * 1",
            identity=_organization_id,
        ),
        ScheduledJob(
            name="daily-log-cleanup",
            kind=JobKind.CLEANUP_OLD_DATA,
            source=StaticPayload(CleanupPayload(days_to_keep=7, data_type="logs")),
            pattern="0 4 * * *",
        ),
        ScheduledJob(
            name="weekly-session-cleanup",
            kind=JobKind.CLEANUP_OLD_DATA,
            source=StaticPayload(CleanupPayload(days_to_keep=30, data_type="sessions")),
            pattern="0 5 * * 0",
        ),
        ScheduledJob(
            name="daily-job-history-cleanup",
            kind=JobKind.CLEANUP_OLD_DATA,
            source=StaticPayload(CleanupPayload(days_to_keep=1, data_type="job-history")),
            pattern="30 4 * * *",
        ),
    ]


__all__ = ["default_schedule"]
