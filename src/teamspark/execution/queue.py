"""
Queue - one durable, named holding area per JobKind.

WHY
───
Producers (web handlers, the scheduler, other jobs) only ever see
``enqueue``: validate the payload, merge options over the queue policy,
persist, return a handle. Everything a worker needs (claiming, completing,
deciding between retry and terminal failure, stall recovery) also lives
here so the retry policy is applied in exactly one place.

ARCHITECTURE
────────────
::

    enqueue(name, payload, options)
        │
        ├─ parse_payload(kind)           PayloadValidationError
        ├─ options.resolve(policy)        caller wins, field by field
        ├─ repeat?  ── yes ──► register RepeatRule + first delayed instance
        └─ backend.add(JobRecord)         EnqueueError on backend failure

    WorkerPool ──► fetch_next ──► complete | fail ──► retention
                        │
                        └─ repeat instance? schedule the next one

Repeat keys are ``{name}:{identity}:{schedule}`` where the identity is
``RepeatOptions.key`` when given and the payload digest otherwise.
Registering the same key again replaces the rule and keeps its pending
instance, whose id ``repeat:{key}:{fire_ms}`` is deterministic; when the
payload changed, the pending instance is rewritten with the new data.
The next instance is computed from the later of now and the previous
fire time, so fires missed while nothing was polling are skipped.

BEST PRACTICES
──────────────
- Close every Queue before closing the shared backend.
- Treat EnqueueError as data-loss risk: log it and surface it.

Related modules:
    backends/       - storage primitives used here
    worker.py       - consumes fetch_next/complete/fail
    scheduling/     - registers repeat rules through enqueue
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from teamspark.core.errors import (
    EnqueueError,
    QueueClosedError,
    UnknownJobKindError,
    ValidationError,
    is_retryable,
)
from teamspark.core.hashing import compute_hash
from teamspark.core.logging import get_logger
from teamspark.execution.backends.base import QueueBackend
from teamspark.execution.models import (
    JobHandle,
    JobKind,
    JobOptions,
    JobPayload,
    JobRecord,
    JobState,
    QueueCounts,
    QueuePolicy,
    RepeatOptions,
    RepeatRule,
    ResolvedJobOptions,
    parse_payload,
)
from teamspark.execution.retry import strategy_for
from teamspark.scheduling.cron import next_fire, validate_pattern

log = get_logger(__name__)

QUEUE_POLICIES: dict[JobKind, QueuePolicy] = {
    JobKind.SEND_EMAIL: QueuePolicy(),
    JobKind.SYNC_WORKSPACE: QueuePolicy(),
    JobKind.GENERATE_REPORT: QueuePolicy(attempts=2),
    JobKind.CLEANUP_OLD_DATA: QueuePolicy(attempts=1),
    JobKind.SEND_NOTIFICATION: QueuePolicy(attempts=5),
    JobKind.PROCESS_CHECKIN: QueuePolicy(),
    JobKind.CALCULATE_METRICS: QueuePolicy(attempts=2),
}

_unmapped = set(JobKind) - set(QUEUE_POLICIES)
if _unmapped:
    raise RuntimeError(f"JobKind without queue policy: {sorted(k.value for k in _unmapped)}")

STALLED_REASON = "job stalled more than allowable limit"

_PENDING_STATES = (JobState.WAITING, JobState.DELAYED, JobState.PAUSED)


def repeat_key(name: str, data: Mapping[str, Any], repeat: RepeatOptions) -> str:
    """Identity of a recurring registration."""
    identity = repeat.key if repeat.key is not None else compute_hash(data)
    return f"{name}:{identity}:{repeat.schedule}"


def _instance_outdated(job: JobRecord, rule: RepeatRule) -> bool:
    return (job.data, job.priority, job.attempts, job.backoff) != (
        rule.data,
        rule.priority,
        rule.attempts,
        rule.backoff,
    )


@dataclass(frozen=True)
class FailureOutcome:
    """What ``Queue.fail`` decided for a failed delivery.

    ``recorded`` is False when the job was no longer active under this
    worker's lock (the stall check took it back), so nothing was written.
    """

    state: JobState
    attempts_made: int
    delay_ms: int = 0
    reason: str = ""
    recorded: bool = True

    @property
    def will_retry(self) -> bool:
        return self.recorded and self.state == JobState.DELAYED


class Queue:
    """Durable queue for one :class:`JobKind`.

    Args:
        kind: Job kind; its value is the queue name
        backend: Shared backend connection (owned by the caller)
        policy: Defaults for attempts, backoff and retention
    """

    def __init__(self, kind: JobKind, backend: QueueBackend, policy: QueuePolicy | None = None):
        self.kind = kind
        self.name = kind.value
        self.policy = policy or QUEUE_POLICIES[kind]
        self._backend = backend
        self._closed = False
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    def __repr__(self) -> str:
        return f"Queue({self.name!r})"

    @property
    def backend(self) -> QueueBackend:
        return self._backend

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # PRODUCER API
    # =========================================================================

    async def enqueue(
        self,
        name: str,
        payload: JobPayload | Mapping[str, Any],
        options: JobOptions | None = None,
    ) -> JobHandle:
        """Validate and durably persist one job (or one repeat rule).

        Raises:
            QueueClosedError: the queue was closed
            PayloadValidationError: payload does not fit this queue's kind
            ValidationError: options are invalid (bad cron pattern, negative delay)
            EnqueueError: the backend could not persist the job
        """
        if self._closed:
            raise QueueClosedError(f"Queue {self.name} is closed").with_context(queue=self.name, name=name)

        model = parse_payload(self.kind, payload)
        try:
            resolved = (options or JobOptions()).resolve(self.policy)
        except ValueError as exc:
            raise ValidationError(str(exc), context={"queue": self.name, "name": name}) from exc
        if resolved.repeat is not None and resolved.repeat.pattern is not None:
            validate_pattern(resolved.repeat.pattern)
        data = model.model_dump(mode="json")

        self._inflight += 1
        self._idle.clear()
        try:
            if resolved.repeat is not None:
                return await self._register_repeat(name, data, resolved, resolved.repeat)
            return await self._add_job(name, data, resolved)
        except Exception as exc:
            log.error("job_enqueue_failed", queue=self.name, name=name, error=str(exc))
            raise EnqueueError(
                f"Failed to enqueue {name!r} on {self.name}: {exc}",
                context={"queue": self.name, "name": name},
                cause=exc,
            ) from exc
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    add = enqueue

    async def _add_job(self, name: str, data: dict[str, Any], resolved: ResolvedJobOptions) -> JobHandle:
        now = self._backend.now()
        seq = await self._backend.next_seq(self.name)
        record = JobRecord(
            id=resolved.job_id or str(seq),
            queue=self.name,
            name=name,
            data=data,
            attempts=resolved.attempts,
            backoff=resolved.backoff,
            seq=seq,
            priority=resolved.priority,
            delay_ms=resolved.delay_ms,
            created_at=now,
            ready_at=now + resolved.delay_ms,
        )
        created = await self._backend.add(record)
        if created:
            log.info(
                "job_added",
                queue=self.name,
                job_id=record.id,
                name=name,
                delay_ms=resolved.delay_ms,
                priority=resolved.priority,
            )
        else:
            log.debug("job_already_exists", queue=self.name, job_id=record.id, name=name)
        state = JobState.DELAYED if resolved.delay_ms > 0 else JobState.WAITING
        return JobHandle(id=record.id, queue=self.name, name=name, state=state)

    async def _register_repeat(
        self,
        name: str,
        data: dict[str, Any],
        resolved: ResolvedJobOptions,
        repeat: RepeatOptions,
    ) -> JobHandle:
        key = repeat_key(name, data, repeat)
        now = self._backend.now()
        existing = await self._backend.get_repeat(self.name, key)

        rule = RepeatRule(
            key=key,
            queue=self.name,
            name=name,
            data=data,
            pattern=repeat.pattern,
            every_ms=repeat.every_ms,
            limit=repeat.limit,
            priority=resolved.priority,
            attempts=resolved.attempts,
            backoff=resolved.backoff,
            count=existing.count if existing else 0,
            next_at=existing.next_at if existing else None,
            created_at=existing.created_at if existing else now,
        )

        pending = await self._pending_instance(rule)
        if pending is None:
            await self._schedule_instance(rule, after_ms=now + resolved.delay_ms)
        else:
            if _instance_outdated(pending, rule):
                await self._backend.remove_job(self.name, pending.id)
                await self._add_instance(rule, pending.ready_at)
            await self._backend.save_repeat(rule)

        log.info(
            "repeat_rule_registered",
            queue=self.name,
            name=name,
            repeat_key=key,
            schedule=repeat.schedule,
            next_at=rule.next_at,
            replaced=existing is not None,
        )
        instance = rule.instance_id(rule.next_at) if rule.next_at is not None else key
        return JobHandle(id=instance, queue=self.name, name=name, state=JobState.DELAYED, repeat_key=key)

    async def _pending_instance(self, rule: RepeatRule) -> JobRecord | None:
        if rule.next_at is None:
            return None
        job = await self._backend.get(self.name, rule.instance_id(rule.next_at))
        if job is None or job.state not in _PENDING_STATES:
            return None
        return job

    async def _schedule_instance(self, rule: RepeatRule, after_ms: int) -> None:
        """Add the next delayed instance of ``rule`` and persist the rule."""
        if rule.limit is not None and rule.count >= rule.limit:
            rule.next_at = None
            await self._backend.save_repeat(rule)
            return

        fire_at = next_fire(rule.pattern, rule.every_ms, after_ms)
        await self._add_instance(rule, fire_at)
        rule.count += 1
        rule.next_at = fire_at
        await self._backend.save_repeat(rule)

    async def _add_instance(self, rule: RepeatRule, fire_at: int) -> None:
        now = self._backend.now()
        seq = await self._backend.next_seq(self.name)
        await self._backend.add(
            JobRecord(
                id=rule.instance_id(fire_at),
                queue=self.name,
                name=rule.name,
                data=dict(rule.data),
                attempts=rule.attempts,
                backoff=rule.backoff,
                seq=seq,
                priority=rule.priority,
                delay_ms=max(fire_at - now, 0),
                repeat_key=rule.key,
                created_at=now,
                ready_at=fire_at,
            )
        )

    # =========================================================================
    # INTROSPECTION / MAINTENANCE
    # =========================================================================

    async def get_job(self, job_id: str) -> JobRecord | None:
        return await self._backend.get(self.name, job_id)

    async def get_counts(self) -> QueueCounts:
        return await self._backend.counts(self.name)

    async def clean(self, grace_ms: int, limit: int, state: JobState | str) -> list[str]:
        """Remove up to ``limit`` jobs in a terminal ``state`` finished at least ``grace_ms`` ago.

        A job finished exactly ``grace_ms`` ago is removed. ``limit=0``
        removes every match. Safe to repeat: a second call finds nothing.
        """
        state = JobState(state)
        if not state.is_terminal:
            raise ValidationError(
                f"clean() only accepts completed or failed, got {state.value}",
                field="state",
                value=state.value,
            )
        if grace_ms < 0 or limit < 0:
            raise ValidationError("grace_ms and limit must be >= 0")
        cutoff = self._backend.now() - grace_ms
        removed = await self._backend.clean(self.name, state.value, cutoff, limit)
        log.debug("queue_clean", queue=self.name, state=state.value, grace_ms=grace_ms, removed=len(removed))
        return removed

    async def get_repeatable_jobs(self) -> list[RepeatRule]:
        rules = await self._backend.list_repeats(self.name)
        return sorted(rules, key=lambda r: (r.next_at is None, r.next_at or 0, r.key))

    async def remove_repeatable_by_key(self, key: str) -> bool:
        """Delete a repeat rule and its pending instance."""
        rule = await self._backend.get_repeat(self.name, key)
        removed = await self._backend.remove_repeat(self.name, key)
        if rule is not None and rule.next_at is not None:
            await self._backend.remove_job(self.name, rule.instance_id(rule.next_at))
        if removed:
            log.info("repeat_rule_removed", queue=self.name, repeat_key=key)
        return removed

    async def pause(self) -> None:
        await self._backend.pause(self.name)
        log.info("queue_paused", queue=self.name)

    async def resume(self) -> None:
        await self._backend.resume(self.name)
        log.info("queue_resumed", queue=self.name)

    async def is_paused(self) -> bool:
        return await self._backend.is_paused(self.name)

    async def close(self) -> None:
        """Stop accepting enqueues and wait for in-flight ones to be acknowledged.

        The backend connection is shared and is closed by its owner.
        """
        self._closed = True
        await self._idle.wait()
        log.debug("queue_closed", queue=self.name)

    # =========================================================================
    # WORKER API
    # =========================================================================

    async def fetch_next(self, lock_duration_ms: int) -> JobRecord | None:
        """Claim the next runnable job, locking it for ``lock_duration_ms``."""
        now = self._backend.now()
        job = await self._backend.claim(self.name, now, now + lock_duration_ms)
        if job is not None and job.repeat_key is not None:
            await self._advance_repeat(job)
        return job

    async def _advance_repeat(self, job: JobRecord) -> None:
        rule = await self._backend.get_repeat(self.name, job.repeat_key or "")
        if rule is None or rule.next_at != job.ready_at:
            return
        try:
            await self._schedule_instance(rule, after_ms=max(self._backend.now(), job.ready_at))
        except Exception as exc:
            # The claimed job still runs; the next registration repairs the chain
            log.error("repeat_reschedule_failed", queue=self.name, repeat_key=rule.key, error=str(exc))

    async def extend_lock(self, job: JobRecord, lock_duration_ms: int) -> bool:
        return await self._backend.extend_lock(self.name, job.id, self._backend.now() + lock_duration_ms)

    async def update_progress(self, job: JobRecord, progress: int | dict[str, Any]) -> None:
        if isinstance(progress, int) and not 0 <= progress <= 100:
            raise ValidationError("progress must be between 0 and 100", field="progress", value=progress)
        await self._backend.update_progress(self.name, job.id, progress)
        job.progress = progress

    async def complete(self, job: JobRecord, return_value: Any) -> bool:
        now = self._backend.now()
        done = await self._backend.complete(self.name, job.id, return_value, now)
        retention = self.policy.retention
        if done and (retention.completed_max_age_s is not None or retention.completed_max_count is not None):
            cutoff = None if retention.completed_max_age_s is None else now - retention.completed_max_age_s * 1000
            await self._backend.apply_retention(self.name, "completed", cutoff, retention.completed_max_count)
        return done

    async def fail(self, job: JobRecord, error: BaseException) -> FailureOutcome:
        """Record a failed delivery and decide between retry and terminal failure."""
        reason = str(error) or type(error).__name__
        attempts_made = job.attempts_made + 1
        strategy = strategy_for(job.backoff, job.attempts)
        now = self._backend.now()

        if is_retryable(error) and strategy.should_retry(attempts_made):
            delay = strategy.next_delay_ms(attempts_made)
            recorded = await self._backend.retry_later(self.name, job.id, reason, now + delay)
            return FailureOutcome(JobState.DELAYED, attempts_made, delay, reason, recorded=recorded)

        if not await self._backend.fail(self.name, job.id, reason, now):
            return FailureOutcome(JobState.FAILED, attempts_made, 0, reason, recorded=False)
        max_age = self.policy.retention.failed_max_age_s
        if max_age is not None:
            await self._backend.apply_retention(self.name, "failed", now - max_age * 1000, None)
        return FailureOutcome(JobState.FAILED, attempts_made, 0, reason)

    async def recover_stalled(self, max_stalled_count: int) -> tuple[list[str], list[str]]:
        """Requeue jobs whose lock expired; fail those stalled too often."""
        return await self._backend.recover_stalled(
            self.name, self._backend.now(), max_stalled_count, STALLED_REASON
        )


class QueueSet(Mapping[JobKind, Queue]):
    """Exactly one Queue per JobKind over one shared backend."""

    def __init__(self, backend: QueueBackend, policies: Mapping[JobKind, QueuePolicy] | None = None):
        merged = {**QUEUE_POLICIES, **(policies or {})}
        self._backend = backend
        self._queues = {kind: Queue(kind, backend, merged[kind]) for kind in JobKind}

    def __getitem__(self, kind: JobKind) -> Queue:
        return self._queues[kind]

    def __iter__(self) -> Iterator[JobKind]:
        return iter(self._queues)

    def __len__(self) -> int:
        return len(self._queues)

    @property
    def backend(self) -> QueueBackend:
        return self._backend

    def for_kind(self, kind: JobKind | str) -> Queue:
        """Resolve a kind (or its string value) to its queue."""
        try:
            return self._queues[JobKind(kind)]
        except (ValueError, KeyError):
            raise UnknownJobKindError(kind) from None

    async def close(self) -> None:
        await asyncio.gather(*(queue.close() for queue in self._queues.values()))


__all__ = [
    "QUEUE_POLICIES",
    "STALLED_REASON",
    "FailureOutcome",
    "Queue",
    "QueueSet",
    "repeat_key",
]
