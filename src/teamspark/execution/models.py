"""
Typed work items, queue policies, and job records.

WHY
───
A job's payload shape is fully determined by its kind. Pydantic models
with ``extra="forbid"`` enforce that at enqueue time, so a metrics job can
never carry email fields and a typo in a field name fails fast instead of
reaching a worker.

Options resolve field by field: a caller-supplied value always wins,
anything left as ``None`` falls back to the queue's :class:`QueuePolicy`.

ARCHITECTURE
────────────
::

    JobKind ──► PAYLOAD_MODELS[kind] ──► parse_payload() ──► JobPayload
                                                           │
    JobOptions ──► resolve(QueuePolicy) ──► ResolvedJobOptions
                                                           ▼
                                                      JobRecord  (stored by the backend)

Timestamps are epoch milliseconds throughout; the backend clock is the
only source of "now".

Related modules:
    queue.py   - builds JobRecords from payloads and resolved options
    backends/  - persists JobRecords and RepeatRules
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from teamspark.core.errors import PayloadValidationError


# =============================================================================
# KINDS AND STATES
# =============================================================================


class JobKind(str, Enum):
    """Closed set of work kinds. The value doubles as the queue name."""

    SEND_EMAIL = "send-email"
    SYNC_WORKSPACE = "sync-external-workspace"
    GENERATE_REPORT = "generate-report"
    CLEANUP_OLD_DATA = "cleanup-old-data"
    SEND_NOTIFICATION = "send-notification"
    PROCESS_CHECKIN = "process-checkin"
    CALCULATE_METRICS = "calculate-metrics"


class JobState(str, Enum):
    """Lifecycle state of a job record."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


# =============================================================================
# PAYLOADS
# =============================================================================


class JobPayload(BaseModel):
    """Base for all payload models."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class SendEmailPayload(JobPayload):
    to: str = Field(min_length=3)
    subject: str
    template: str
    data: dict[str, Any] = Field(default_factory=dict)


class SyncWorkspacePayload(JobPayload):
    workspace_id: str
    sync_type: Literal["users", "channels", "messages"]


class GenerateReportPayload(JobPayload):
    organization_id: str
    report_type: Literal["weekly", "monthly", "quarterly"]
    recipient_ids: list[str] = Field(default_factory=list)


class CleanupPayload(JobPayload):
    days_to_keep: int = Field(ge=0)
    data_type: Literal["logs", "sessions", "temp-files", "job-history"]


class NotificationPayload(JobPayload):
    kudos_id: str
    sender_id: str
    receiver_id: str
    message: str


class ProcessCheckinPayload(JobPayload):
    checkin_id: str
    user_id: str
    template_id: str


class CalculateMetricsPayload(JobPayload):
    organization_id: str
    metric_type: Literal["engagement", "performance", "satisfaction"]
    period: Literal["daily", "weekly", "monthly"]


PAYLOAD_MODELS: dict[JobKind, type[JobPayload]] = {
    JobKind.SEND_EMAIL: SendEmailPayload,
    JobKind.SYNC_WORKSPACE: SyncWorkspacePayload,
    JobKind.GENERATE_REPORT: GenerateReportPayload,
    JobKind.CLEANUP_OLD_DATA: CleanupPayload,
    JobKind.SEND_NOTIFICATION: NotificationPayload,
    JobKind.PROCESS_CHECKIN: ProcessCheckinPayload,
    JobKind.CALCULATE_METRICS: CalculateMetricsPayload,
}

_missing = set(JobKind) - set(PAYLOAD_MODELS)
if _missing:
    raise RuntimeError(f"JobKind without payload model: {sorted(k.value for k in _missing)}")


def parse_payload(kind: JobKind, value: JobPayload | Mapping[str, Any]) -> JobPayload:
    """Validate ``value`` against the payload model of ``kind``.

    Accepts an instance of the right model or a plain mapping. A model
    belonging to a different kind is rejected even if its fields happen to
    fit.
    """
    model = PAYLOAD_MODELS[kind]
    if isinstance(value, JobPayload):
        if type(value) is not model:
            raise PayloadValidationError(
                f"{type(value).__name__} is not a valid payload for {kind.value}",
                context={"kind": kind.value},
            )
        return value
    if not isinstance(value, Mapping):
        raise PayloadValidationError(
            f"Payload for {kind.value} must be a mapping, got {type(value).__name__}",
            context={"kind": kind.value},
        )
    try:
        return model.model_validate(dict(value))
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise PayloadValidationError(
            f"Invalid payload for {kind.value}: {exc.error_count()} error(s)",
            field=loc or None,
            context={"kind": kind.value, "errors": exc.errors(include_url=False)},
            cause=exc,
        ) from exc


# =============================================================================
# POLICIES AND OPTIONS
# =============================================================================

# Lower number runs first; 0 (no priority) runs before any prioritized job
MAX_PRIORITY = 2**21


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay applied between attempts after a handler failure."""

    type: Literal["fixed", "exponential"] = "exponential"
    delay_ms: int = 2000

    def __post_init__(self) -> None:
        if self.type not in ("fixed", "exponential"):
            raise ValueError(f"Unknown backoff type: {self.type}")
        if self.delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")


@dataclass(frozen=True)
class RetentionPolicy:
    """How long finished jobs are kept. ``None`` disables a bound."""

    completed_max_age_s: int | None = 3600
    completed_max_count: int | None = 100
    failed_max_age_s: int | None = 24 * 3600


@dataclass(frozen=True)
class QueuePolicy:
    """Per-queue defaults applied to every job that doesn't override them."""

    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")


@dataclass(frozen=True)
class RepeatOptions:
    """Recurrence rule: a cron ``pattern`` or a fixed interval ``every_ms``.

    ``key`` names the rule independently of its payload, so registering
    the same key with new data replaces the rule instead of adding one.
    Without it the payload digest identifies the rule.
    """

    pattern: str | None = None
    every_ms: int | None = None
    limit: int | None = None
    key: str | None = None

    def __post_init__(self) -> None:
        if (self.pattern is None) == (self.every_ms is None):
            raise ValueError("RepeatOptions needs exactly one of pattern or every_ms")
        if self.key is not None and not self.key.strip():
            raise ValueError("key must not be blank")
        if self.every_ms is not None and self.every_ms <= 0:
            raise ValueError("every_ms must be > 0")
        if self.limit is not None and self.limit < 1:
            raise ValueError("limit must be >= 1")

    @property
    def schedule(self) -> str:
        return self.pattern if self.pattern is not None else f"every:{self.every_ms}"


@dataclass(frozen=True)
class JobOptions:
    """Caller-supplied options. ``None`` means "use the queue default"."""

    delay_ms: int | None = None
    priority: int | None = None
    repeat: RepeatOptions | None = None
    attempts: int | None = None
    backoff: BackoffPolicy | None = None
    job_id: str | None = None

    def merge(self, override: JobOptions | None) -> JobOptions:
        """Return a copy where every field set on ``override`` wins."""
        if override is None:
            return self
        changes = {
            name: getattr(override, name)
            for name in override.__dataclass_fields__
            if getattr(override, name) is not None
        }
        return replace(self, **changes)

    def resolve(self, policy: QueuePolicy) -> ResolvedJobOptions:
        delay = self.delay_ms if self.delay_ms is not None else 0
        priority = self.priority if self.priority is not None else 0
        attempts = self.attempts if self.attempts is not None else policy.attempts
        if delay < 0:
            raise ValueError("delay_ms must be >= 0")
        if not 0 <= priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be between 0 and {MAX_PRIORITY}")
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        return ResolvedJobOptions(
            delay_ms=delay,
            priority=priority,
            attempts=attempts,
            backoff=self.backoff if self.backoff is not None else policy.backoff,
            retention=policy.retention,
            repeat=self.repeat,
            job_id=self.job_id,
        )


@dataclass(frozen=True)
class ResolvedJobOptions:
    delay_ms: int
    priority: int
    attempts: int
    backoff: BackoffPolicy
    retention: RetentionPolicy
    repeat: RepeatOptions | None = None
    job_id: str | None = None


# =============================================================================
# RECORDS
# =============================================================================


@dataclass
class JobRecord:
    """A job as the durable store holds it."""

    id: str
    queue: str
    name: str
    data: dict[str, Any]
    attempts: int
    backoff: BackoffPolicy
    seq: int
    priority: int = 0
    delay_ms: int = 0
    repeat_key: str | None = None
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    stalled_count: int = 0
    failed_reason: str | None = None
    progress: int | dict[str, Any] = 0
    return_value: Any = None
    created_at: int = 0
    ready_at: int = 0
    processed_at: int | None = None
    finished_at: int | None = None
    lock_until: int | None = None

    @property
    def order(self) -> int:
        """Sort key inside the waiting set: priority first, then arrival."""
        return self.priority * 2**32 + self.seq

    def copy(self) -> JobRecord:
        return replace(self, data=dict(self.data))

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["state"] = self.state.value
        return result


@dataclass(frozen=True)
class JobHandle:
    """What ``enqueue`` hands back: enough to look the job up later."""

    id: str
    queue: str
    name: str
    state: JobState
    repeat_key: str | None = None


@dataclass
class RepeatRule:
    """A registered recurrence on one queue."""

    key: str
    queue: str
    name: str
    data: dict[str, Any]
    pattern: str | None = None
    every_ms: int | None = None
    limit: int | None = None
    priority: int = 0
    attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    count: int = 0
    next_at: int | None = None
    created_at: int = 0

    def instance_id(self, fire_at: int) -> str:
        return f"repeat:{self.key}:{fire_at}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> RepeatRule:
        values = dict(raw)
        backoff = values.pop("backoff", None) or {}
        return cls(backoff=BackoffPolicy(**backoff), **values)


@dataclass(frozen=True)
class QueueCounts:
    """Point-in-time population of one queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed + self.paused

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class QueueMetrics:
    """Snapshot returned by the metrics façade. ``counts`` is None when the read failed."""

    name: str
    counts: QueueCounts | None
    total: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "counts": self.counts.to_dict() if self.counts else None,
            "total": self.total,
            "error": self.error,
        }


__all__ = [
    "JobKind",
    "JobState",
    "JobPayload",
    "SendEmailPayload",
    "SyncWorkspacePayload",
    "GenerateReportPayload",
    "CleanupPayload",
    "NotificationPayload",
    "ProcessCheckinPayload",
    "CalculateMetricsPayload",
    "PAYLOAD_MODELS",
    "parse_payload",
    "BackoffPolicy",
    "RetentionPolicy",
    "QueuePolicy",
    "RepeatOptions",
    "JobOptions",
    "ResolvedJobOptions",
    "MAX_PRIORITY",
    "JobRecord",
    "JobHandle",
    "RepeatRule",
    "QueueCounts",
    "QueueMetrics",
]
