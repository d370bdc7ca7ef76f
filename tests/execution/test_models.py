"""Tests for job kinds, payload validation, and option resolution."""

import pytest

from teamspark.core.errors import PayloadValidationError
from teamspark.execution.models import (
    MAX_PRIORITY,
    PAYLOAD_MODELS,
    BackoffPolicy,
    CleanupPayload,
    JobKind,
    JobOptions,
    JobRecord,
    JobState,
    QueueCounts,
    QueueMetrics,
    QueuePolicy,
    RepeatOptions,
    RepeatRule,
    SendEmailPayload,
    SyncWorkspacePayload,
    parse_payload,
)


class TestJobKind:
    """The closed set of kinds."""

    def test_every_kind_has_a_payload_model(self):
        assert set(PAYLOAD_MODELS) == set(JobKind)

    def test_values_are_queue_names(self):
        assert JobKind("send-email") is JobKind.SEND_EMAIL
        assert JobKind.SYNC_WORKSPACE.value == "sync-external-workspace"

    def test_terminal_states(self):
        assert JobState.COMPLETED.is_terminal
        assert JobState.FAILED.is_terminal
        assert not JobState.WAITING.is_terminal
        assert not JobState.DELAYED.is_terminal


class TestParsePayload:
    """Structural validation per kind."""

    def test_mapping_is_validated(self):
        payload = parse_payload(
            JobKind.SEND_EMAIL, {"to": "a@b.com", "subject": "hi", "template": "welcome", "data": {}}
        )
        assert isinstance(payload, SendEmailPayload)
        assert payload.to == "a@b.com"

    def test_model_instance_passes_through(self):
        payload = CleanupPayload(days_to_keep=7, data_type="logs")
        assert parse_payload(JobKind.CLEANUP_OLD_DATA, payload) is payload

    def test_wrong_model_rejected(self):
        payload = CleanupPayload(days_to_keep=7, data_type="logs")
        with pytest.raises(PayloadValidationError, match="not a valid payload"):
            parse_payload(JobKind.SEND_EMAIL, payload)

    def test_missing_field_reports_location(self):
        with pytest.raises(PayloadValidationError) as exc_info:
            parse_payload(JobKind.SEND_EMAIL, {"to": "a@b.com", "template": "welcome"})
        assert exc_info.value.field == "subject"
        assert exc_info.value.context["kind"] == "send-email"

    def test_unknown_fields_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_payload(JobKind.SYNC_WORKSPACE, {"workspace_id": "w1", "sync_type": "users", "extra": 1})

    def test_literal_enforced(self):
        with pytest.raises(PayloadValidationError):
            parse_payload(JobKind.SYNC_WORKSPACE, {"workspace_id": "w1", "sync_type": "emails"})

    def test_non_mapping_rejected(self):
        with pytest.raises(PayloadValidationError, match="must be a mapping"):
            parse_payload(JobKind.SYNC_WORKSPACE, ["w1", "users"])

    def test_negative_days_rejected(self):
        with pytest.raises(PayloadValidationError):
            parse_payload(JobKind.CLEANUP_OLD_DATA, {"days_to_keep": -1, "data_type": "logs"})

    def test_payloads_are_frozen(self):
        payload = SyncWorkspacePayload(workspace_id="w1", sync_type="users")
        with pytest.raises(Exception):
            payload.workspace_id = "w2"


class TestJobOptions:
    """Caller-wins resolution over the queue policy."""

    def test_defaults_from_policy(self):
        resolved = JobOptions().resolve(QueuePolicy())
        assert resolved.attempts == 3
        assert resolved.backoff == BackoffPolicy("exponential", 2000)
        assert resolved.delay_ms == 0
        assert resolved.priority == 0

    def test_caller_wins_field_by_field(self):
        policy = QueuePolicy(attempts=5, backoff=BackoffPolicy("fixed", 100))
        resolved = JobOptions(delay_ms=500, attempts=2).resolve(policy)
        assert resolved.attempts == 2
        assert resolved.delay_ms == 500
        assert resolved.backoff == BackoffPolicy("fixed", 100)

    def test_merge_keeps_unset_fields(self):
        base = JobOptions(priority=3, delay_ms=10)
        merged = base.merge(JobOptions(delay_ms=99))
        assert merged.priority == 3
        assert merged.delay_ms == 99
        assert base.merge(None) is base

    @pytest.mark.parametrize(
        "options",
        [JobOptions(delay_ms=-1), JobOptions(priority=MAX_PRIORITY + 1), JobOptions(attempts=0)],
    )
    def test_invalid_values(self, options):
        with pytest.raises(ValueError):
            options.resolve(QueuePolicy())

    def test_repeat_needs_exactly_one_schedule(self):
        with pytest.raises(ValueError):
            RepeatOptions()
        with pytest.raises(ValueError):
            RepeatOptions(pattern="0 1 * * *", every_ms=1000)
        assert RepeatOptions(every_ms=5000).schedule == "every:5000"
        assert RepeatOptions(pattern="0 1 * * *").schedule == "0 1 * * *"

    def test_backoff_type_checked(self):
        with pytest.raises(ValueError):
            BackoffPolicy("linear", 10)


class TestRecords:
    """JobRecord ordering and RepeatRule serialization."""

    def _record(self, seq, priority=0):
        return JobRecord(
            id=str(seq), queue="q", name="n", data={}, attempts=3, backoff=BackoffPolicy(), seq=seq, priority=priority
        )

    def test_priority_orders_before_arrival(self):
        assert self._record(1).order < self._record(2).order
        assert self._record(500).order < self._record(1, priority=1).order

    def test_copy_is_independent(self):
        record = self._record(1)
        record.data["x"] = 1
        clone = record.copy()
        clone.data["x"] = 2
        assert record.data["x"] == 1

    def test_repeat_rule_round_trip(self):
        rule = RepeatRule(
            key="k", queue="q", name="n", data={"a": 1}, pattern="0 1 * * *", backoff=BackoffPolicy("fixed", 5)
        )
        restored = RepeatRule.from_dict(rule.to_dict())
        assert restored == rule
        assert rule.instance_id(123) == "repeat:k:123"

    def test_counts_total(self):
        counts = QueueCounts(waiting=1, active=2, completed=3, failed=4, delayed=5, paused=6)
        assert counts.total == 21
        metrics = QueueMetrics(name="q", counts=counts, total=counts.total)
        assert metrics.ok
        assert metrics.to_dict()["counts"]["paused"] == 6
