"""Scheduler - registers recurring rules and defers one-off jobs.

A schedule is a table of :class:`ScheduledJob` definitions. Each one
names a target kind, a cron pattern (or interval) and where its payload
comes from:

    StaticPayload    one fixed payload
    PayloadProducer  an async function queried at registration time that
                     returns one payload or a list (fan-out, one rule per
                     element; an empty list registers nothing)

``schedule_jobs`` walks the table and registers every rule on its queue.
Registration is idempotent per (queue, name, identity, schedule), so
running it on every deploy does not duplicate rules. A fan-out definition
should set ``identity`` (for example the organization id) so a rule is
replaced, not duplicated, when the produced payload changes. A definition
whose producer or registration fails is logged and skipped; the rest
proceed.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from teamspark.core.logging import get_logger
from teamspark.execution.models import (
    JobHandle,
    JobKind,
    JobOptions,
    JobPayload,
    RepeatOptions,
    parse_payload,
)
from teamspark.execution.queue import QueueSet

log = get_logger(__name__)

Payload = JobPayload | Mapping[str, Any]

# Kinds whose queues carry recurring rules. unschedule_jobs clears these.
RECURRING_KINDS: tuple[JobKind, ...] = (
    JobKind.SEND_EMAIL,
    JobKind.CALCULATE_METRICS,
    JobKind.CLEANUP_OLD_DATA,
    JobKind.GENERATE_REPORT,
)


@dataclass(frozen=True)
class StaticPayload:
    payload: Payload


@dataclass(frozen=True)
class PayloadProducer:
    produce: Callable[[], Awaitable[Payload | Sequence[Payload]]]


PayloadSource = StaticPayload | PayloadProducer


@dataclass(frozen=True)
class ScheduledJob:
    """One row of the recurring schedule."""

    name: str
    kind: JobKind
    source: PayloadSource
    pattern: str | None = None
    every_ms: int | None = None
    options: JobOptions = field(default_factory=JobOptions)
    identity: Callable[[JobPayload], str] | None = None

    def __post_init__(self) -> None:
        if (self.pattern is None) == (self.every_ms is None):
            raise ValueError(f"{self.name}: set exactly one of pattern or every_ms")

    @property
    def repeat(self) -> RepeatOptions:
        return RepeatOptions(pattern=self.pattern, every_ms=self.every_ms)

    def repeat_for(self, payload: JobPayload) -> RepeatOptions:
        """Repeat options for one produced payload, keyed by ``identity`` when set."""
        if self.identity is None:
            return self.repeat
        return RepeatOptions(pattern=self.pattern, every_ms=self.every_ms, key=self.identity(payload))


@dataclass
class ScheduleReport:
    """Result of one schedule_jobs run."""

    registered: list[JobHandle] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "registered": [
                {"queue": h.queue, "name": h.name, "repeat_key": h.repeat_key} for h in self.registered
            ],
            "failed": dict(self.failed),
        }


def one_time_job_name(kind: JobKind) -> str:
    return f"one-time-{kind.value}"


async def _resolve(source: PayloadSource) -> list[Payload]:
    match source:
        case StaticPayload(payload=payload):
            return [payload]
        case PayloadProducer(produce=produce):
            produced = await produce()
            if isinstance(produced, (JobPayload, Mapping)):
                return [produced]
            return list(produced)
    raise TypeError(f"Unsupported payload source: {source!r}")


class Scheduler:
    """Registers a schedule table on a QueueSet.

    Example:
        >>> scheduler = Scheduler(queues, default_schedule(datastore))
        >>> report = await scheduler.schedule_jobs()
        >>> await scheduler.schedule_one_time_job(
        ...     JobKind.SEND_NOTIFICATION, payload, delay_ms=5 * 60 * 1000
        ... )
    """

    def __init__(self, queues: QueueSet, definitions: Iterable[ScheduledJob] = ()):
        self.queues = queues
        self.definitions = list(definitions)

    async def schedule_jobs(self) -> ScheduleReport:
        report = ScheduleReport()
        for definition in self.definitions:
            queue = self.queues[definition.kind]
            try:
                payloads = [parse_payload(definition.kind, p) for p in await _resolve(definition.source)]
                for payload in payloads:
                    options = definition.options.merge(JobOptions(repeat=definition.repeat_for(payload)))
                    handle = await queue.enqueue(definition.name, payload, options)
                    report.registered.append(handle)
            except Exception as exc:
                report.failed[definition.name] = str(exc)
                log.error(
                    "schedule_registration_failed",
                    queue=queue.name,
                    name=definition.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            log.info(
                "schedule_registered",
                queue=queue.name,
                name=definition.name,
                schedule=definition.repeat.schedule,
                jobs=len(payloads),
            )
        return report

    async def unschedule_jobs(self, kinds: Iterable[JobKind] = RECURRING_KINDS) -> int:
        """Remove every repeat rule on the given queues. Returns how many were removed."""
        removed = 0
        for kind in kinds:
            queue = self.queues[kind]
            try:
                rules = await queue.get_repeatable_jobs()
                for rule in rules:
                    if await queue.remove_repeatable_by_key(rule.key):
                        removed += 1
            except Exception as exc:
                log.error("schedule_removal_failed", queue=queue.name, error=str(exc))
                continue
            log.info("schedule_removed", queue=queue.name, rules=len(rules))
        return removed

    async def schedule_one_time_job(
        self,
        kind: JobKind | str,
        payload: Payload,
        delay_ms: int = 0,
        *,
        options: JobOptions | None = None,
    ) -> JobHandle:
        """Enqueue a single job on ``kind``'s queue after ``delay_ms``.

        Raises:
            UnknownJobKindError: ``kind`` maps to no queue (raised before any I/O)
            EnqueueError: the backend could not persist the job
        """
        queue = self.queues.for_kind(kind)
        merged = JobOptions(delay_ms=delay_ms).merge(options)
        return await queue.enqueue(one_time_job_name(queue.kind), payload, merged)


__all__ = [
    "RECURRING_KINDS",
    "PayloadProducer",
    "PayloadSource",
    "ScheduleReport",
    "ScheduledJob",
    "Scheduler",
    "StaticPayload",
    "one_time_job_name",
]
