"""calculate-metrics handler and the aggregate calculators it shares with reports.

Every calculation covers the most recent *complete* period before "now",
in UTC:

    daily    yesterday 00:00 .. today 00:00
    weekly   the previous Sunday-started week
    monthly  the previous calendar month
    quarterly (reports only) the previous calendar quarter

Ranges are half-open and handed to the data store as ``start <= t < end``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from teamspark.core.errors import UnrecoverableJobError
from teamspark.execution.models import CalculateMetricsPayload
from teamspark.execution.worker import JobContext
from teamspark.jobs.datastore import DataStore

Progress = Callable[[int], Awaitable[None]]


async def _no_progress(_: int) -> None:
    return None


def _percent(part: int | float, whole: int | float) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _ratio(part: int | float, whole: int | float) -> float:
    return round(part / whole, 2) if whole else 0.0


def period_window(period: str, now: datetime) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the last complete ``period`` before ``now``."""
    today = now.astimezone(UTC).replace(hour=0, minute=0, second=0, microsecond=0)
    match period:
        case "daily":
            return today - timedelta(days=1), today
        case "weekly":
            # weekday(): Monday=0 .. Sunday=6
            week_start = today - timedelta(days=(today.weekday() + 1) % 7)
            return week_start - timedelta(days=7), week_start
        case "monthly":
            month_start = today.replace(day=1)
            previous = (month_start - timedelta(days=1)).replace(day=1)
            return previous, month_start
        case "quarterly":
            quarter_month = (today.month - 1) // 3 * 3 + 1
            quarter_start = today.replace(month=quarter_month, day=1)
            if quarter_month == 1:
                previous = quarter_start.replace(year=quarter_start.year - 1, month=10)
            else:
                previous = quarter_start.replace(month=quarter_month - 3)
            return previous, quarter_start
    raise ValueError(f"Unknown period: {period!r}")


async def engagement_metrics(
    store: DataStore,
    organization_id: str,
    start: datetime,
    end: datetime,
    progress: Progress = _no_progress,
) -> dict[str, Any]:
    await progress(10)
    kudos = await store.count_kudos(organization_id, start, end)
    await progress(30)
    givers = await store.count_kudos_givers(organization_id, start, end)
    await progress(50)
    checkins = await store.count_checkins(organization_id, start, end)
    await progress(70)
    active = await store.count_active_users(organization_id, start)
    total = await store.count_users(organization_id)
    await progress(90)
    return {
        "kudos_count": kudos,
        "unique_kudos_givers": givers,
        "checkins_count": checkins,
        "active_users": active,
        "total_users": total,
        "engagement_rate": _percent(active, total),
        "kudos_per_user": _ratio(kudos, total),
    }


async def satisfaction_metrics(
    store: DataStore,
    organization_id: str,
    start: datetime,
    end: datetime,
    progress: Progress = _no_progress,
) -> dict[str, Any]:
    await progress(10)
    ratings = await store.list_mood_ratings(organization_id, start, end)
    await progress(50)
    surveys = await store.count_surveys(organization_id, start, end)
    responses = await store.count_survey_responses(organization_id, start, end)
    await progress(90)
    return {
        "average_mood": _ratio(sum(ratings), len(ratings)),
        "total_mood_checkins": len(ratings),
        "survey_response_rate": _percent(responses, surveys),
    }


async def performance_metrics(
    store: DataStore,
    organization_id: str,
    start: datetime,
    end: datetime,
    progress: Progress = _no_progress,
) -> dict[str, Any]:
    await progress(10)
    summary = await store.summarize_objectives(organization_id, start, end)
    await progress(90)
    return {
        "objectives_total": summary.total,
        "objectives_completed": summary.completed,
        "completion_rate": _percent(summary.completed, summary.total),
        "average_progress": round(summary.average_progress, 2),
    }


CALCULATORS = {
    "engagement": engagement_metrics,
    "satisfaction": satisfaction_metrics,
    "performance": performance_metrics,
}


class MetricsHandler:
    def __init__(self, datastore: DataStore, *, clock: Callable[[], datetime] | None = None):
        self.datastore = datastore
        self._clock = clock or (lambda: datetime.now(UTC))

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        payload = cast(CalculateMetricsPayload, ctx.payload)
        calculator = CALCULATORS.get(payload.metric_type)
        if calculator is None:
            raise UnrecoverableJobError(f"Unknown metric type: {payload.metric_type}")

        start, end = period_window(payload.period, self._clock())
        metrics = await calculator(
            self.datastore, payload.organization_id, start, end, ctx.update_progress
        )
        await ctx.update_progress(100)
        ctx.log.info(
            "metrics_calculated",
            organization_id=payload.organization_id,
            metric_type=payload.metric_type,
            period=payload.period,
        )
        return {
            "success": True,
            "organization_id": payload.organization_id,
            "metric_type": payload.metric_type,
            "period": payload.period,
            "metrics": metrics,
            "range": {"start": start.isoformat(), "end": end.isoformat()},
        }


__all__ = [
    "CALCULATORS",
    "MetricsHandler",
    "engagement_metrics",
    "performance_metrics",
    "period_window",
    "satisfaction_metrics",
]
