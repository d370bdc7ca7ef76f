"""
Shared pytest fixtures for teamspark-jobs tests.

This module provides:
- A controllable millisecond clock and a MemoryBackend driven by it
- A QueueSet over that backend
- In-memory fakes for the data store and the outbound providers
- ``claim_context``: enqueue + claim a job and wrap it in a JobContext

Async helpers are exposed as fixtures returning coroutine functions so
tests stay in pytest-asyncio strict mode without async fixtures.
"""

from __future__ import annotations

import itertools
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
import structlog

from teamspark.execution.backends.memory import MemoryBackend
from teamspark.execution.models import JobKind, JobOptions, parse_payload
from teamspark.execution.queue import QueueSet
from teamspark.execution.worker import JobContext
from teamspark.jobs.datastore import ObjectiveSummary, ReportRecipient, UserRecord, Workspace
from teamspark.jobs.providers import RemoteMember

# 2024-03-13T12:00:00Z, a Wednesday
START_MS = 1_710_331_200_000


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark everything outside an ``integration`` path as a unit test."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)
        elif not any(item.iter_markers(name="integration")):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Clock / backend
# =============================================================================


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> int:
        self.now_ms += ms
        return self.now_ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> MemoryBackend:
    return MemoryBackend(clock=clock)


@pytest.fixture
def queues(backend: MemoryBackend) -> QueueSet:
    return QueueSet(backend)


@pytest.fixture
def claim_context(queues: QueueSet):
    """Enqueue ``payload`` on ``kind``, claim it, and return a JobContext."""

    async def _claim(kind: JobKind, payload: Any, *, name: str = "test", job_id: str | None = None) -> JobContext:
        queue = queues[kind]
        await queue.enqueue(name, payload, JobOptions(job_id=job_id))
        job = await queue.fetch_next(30_000)
        assert job is not None
        return JobContext(
            job=job,
            payload=parse_payload(kind, job.data),
            queue=queue,
            log=structlog.get_logger("tests"),
        )

    return _claim


# =============================================================================
# Data store fake
# =============================================================================


class FakeDataStore:
    """Dictionary-backed DataStore. Aggregates are plain attributes tests set."""

    def __init__(self) -> None:
        self.organization_ids: list[str] = []
        self.recipients: list[ReportRecipient] = []
        self.users: dict[str, UserRecord] = {}
        self.workspaces: dict[str, Workspace] = {}
        self.kudos = 0
        self.kudos_givers = 0
        self.checkins = 0
        self.active_users = 0
        self.mood_ratings: list[int] = []
        self.surveys = 0
        self.survey_responses = 0
        self.objectives = ObjectiveSummary()
        self.deleted: list[tuple[str, datetime]] = []
        self.delete_result = 0
        self.fail_on_email: set[str] = set()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self._ids = itertools.count(1)

    async def list_organization_ids(self) -> list[str]:
        return list(self.organization_ids)

    async def list_report_recipients(self) -> list[ReportRecipient]:
        return list(self.recipients)

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self.users.get(user_id)

    async def find_user_by_external_id(self, organization_id: str, external_id: str) -> UserRecord | None:
        for user in self.users.values():
            if user.organization_id == organization_id and user.external_id == external_id:
                return user
        return None

    async def find_user_by_email(self, organization_id: str, email: str) -> UserRecord | None:
        for user in self.users.values():
            if user.organization_id == organization_id and user.email == email:
                return user
        return None

    async def create_user(
        self,
        organization_id: str,
        *,
        email: str,
        name: str | None,
        external_id: str | None,
        avatar_url: str | None,
        role: str = "MEMBER",
    ) -> UserRecord:
        if email in self.fail_on_email:
            raise RuntimeError(f"constraint violation for {email}")
        user = UserRecord(
            id=f"u{next(self._ids)}",
            organization_id=organization_id,
            email=email,
            name=name,
            external_id=external_id,
            avatar_url=avatar_url,
            role=role,
        )
        self.users[user.id] = user
        return user

    async def update_user(
        self,
        user_id: str,
        *,
        name: str | None = None,
        external_id: str | None = None,
        avatar_url: str | None = None,
    ) -> UserRecord:
        user = replace(self.users[user_id], name=name, external_id=external_id, avatar_url=avatar_url)
        self.users[user_id] = user
        return user

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self.workspaces.get(workspace_id)

    async def get_organization_workspace(self, organization_id: str) -> Workspace | None:
        for workspace in self.workspaces.values():
            if workspace.organization_id == organization_id:
                return workspace
        return None

    async def count_kudos(self, organization_id: str, start: datetime, end: datetime) -> int:
        self.calls.append(("count_kudos", (organization_id, start, end)))
        return self.kudos

    async def count_kudos_givers(self, organization_id: str, start: datetime, end: datetime) -> int:
        return self.kudos_givers

    async def count_checkins(self, organization_id: str, start: datetime, end: datetime) -> int:
        return self.checkins

    async def count_active_users(self, organization_id: str, since: datetime) -> int:
        return self.active_users

    async def count_users(self, organization_id: str) -> int:
        return sum(1 for u in self.users.values() if u.organization_id == organization_id and u.is_active)

    async def list_mood_ratings(self, organization_id: str, start: datetime, end: datetime) -> list[int]:
        return list(self.mood_ratings)

    async def count_surveys(self, organization_id: str, start: datetime, end: datetime) -> int:
        return self.surveys

    async def count_survey_responses(self, organization_id: str, start: datetime, end: datetime) -> int:
        return self.survey_responses

    async def summarize_objectives(self, organization_id: str, start: datetime, end: datetime) -> ObjectiveSummary:
        return self.objectives

    async def delete_records_older_than(self, data_type: str, cutoff: datetime) -> int:
        self.deleted.append((data_type, cutoff))
        return self.delete_result


@pytest.fixture
def datastore() -> FakeDataStore:
    return FakeDataStore()


# =============================================================================
# Provider fakes
# =============================================================================


class FakeEmailProvider:
    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.errors: list[Exception] = []

    async def send(self, *, sender: str, to: str, subject: str, html: str) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append({"sender": sender, "to": to, "subject": subject, "html": html})
        return f"email-{len(self.sent)}"


class FakeDirectoryProvider:
    def __init__(self, members: list[RemoteMember] | None = None, channels: list[dict[str, Any]] | None = None):
        self.members = members or []
        self.channels = channels or []
        self.tokens: list[str] = []

    async def list_members(self, token: str) -> list[RemoteMember]:
        self.tokens.append(token)
        return list(self.members)

    async def list_channels(self, token: str) -> list[dict[str, Any]]:
        self.tokens.append(token)
        return list(self.channels)


class FakeMessagingProvider:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []

    async def post_message(self, token: str, channel: str, text: str) -> str:
        self.messages.append((token, channel, text))
        return f"ts-{len(self.messages)}"


@pytest.fixture
def email_provider() -> FakeEmailProvider:
    return FakeEmailProvider()


@pytest.fixture
def directory_provider() -> FakeDirectoryProvider:
    return FakeDirectoryProvider()


@pytest.fixture
def messaging_provider() -> FakeMessagingProvider:
    return FakeMessagingProvider()


@pytest.fixture
def record_progress():
    """Attach a recorder to a JobContext and return the list it fills."""

    def _attach(ctx: JobContext) -> list[Any]:
        seen: list[Any] = []

        async def _record(job: Any, value: Any) -> None:
            seen.append(value)

        ctx._on_progress = _record
        return seen

    return _attach
