"""
Data store interface consumed by job handlers.

The relational model lives in the web application; handlers only need a
handful of typed reads, upserts, and aggregate counts. The application
provides an object satisfying :class:`DataStore` and names its factory in
``TEAMSPARK_DATASTORE`` (``"package.module:factory"``).

Time ranges are half-open: ``start <= t < end``, all UTC.
"""

from __future__ import annotations

import importlib
import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from teamspark.core.errors import ConfigError


@dataclass(frozen=True)
class Workspace:
    """An organization's connection to an external chat workspace."""

    id: str
    organization_id: str
    bot_token: str
    team_id: str | None = None


@dataclass(frozen=True)
class UserRecord:
    id: str
    organization_id: str
    email: str
    name: str | None = None
    external_id: str | None = None
    avatar_url: str | None = None
    role: str = "MEMBER"
    is_active: bool = True


@dataclass(frozen=True)
class ReportRecipient:
    """A manager or admin who receives team reports."""

    user_id: str
    organization_id: str


@dataclass(frozen=True)
class ObjectiveSummary:
    total: int = 0
    completed: int = 0
    average_progress: float = 0.0


@runtime_checkable
class DataStore(Protocol):
    """Operations the handlers and recurring schedule need."""

    # Organizations and people
    async def list_organization_ids(self) -> list[str]: ...

    async def list_report_recipients(self) -> list[ReportRecipient]: ...

    async def get_user(self, user_id: str) -> UserRecord | None: ...

    async def find_user_by_external_id(self, organization_id: str, external_id: str) -> UserRecord | None: ...

    async def find_user_by_email(self, organization_id: str, email: str) -> UserRecord | None: ...

    async def create_user(
        self,
        organization_id: str,
        *,
        email: str,
        name: str | None,
        external_id: str | None,
        avatar_url: str | None,
        role: str = "MEMBER",
    ) -> UserRecord: ...

    async def update_user(
        self,
        user_id: str,
        *,
        name: str | None,
        external_id: str | None,
        avatar_url: str | None,
    ) -> UserRecord: ...

    # Workspaces
    async def get_workspace(self, workspace_id: str) -> Workspace | None: ...

    async def get_organization_workspace(self, organization_id: str) -> Workspace | None: ...

    # Aggregates
    async def count_kudos(self, organization_id: str, start: datetime, end: datetime) -> int: ...

    async def count_kudos_givers(self, organization_id: str, start: datetime, end: datetime) -> int: ...

    async def count_checkins(self, organization_id: str, start: datetime, end: datetime) -> int: ...

    async def count_active_users(self, organization_id: str, since: datetime) -> int: ...

    async def count_users(self, organization_id: str) -> int: ...

    async def list_mood_ratings(self, organization_id: str, start: datetime, end: datetime) -> list[int]: ...

    async def count_surveys(self, organization_id: str, start: datetime, end: datetime) -> int: ...

    async def count_survey_responses(self, organization_id: str, start: datetime, end: datetime) -> int: ...

    async def summarize_objectives(
        self, organization_id: str, start: datetime, end: datetime
    ) -> ObjectiveSummary: ...

    # Retention
    async def delete_records_older_than(self, data_type: str, cutoff: datetime) -> int: ...


def load_datastore(ref: str) -> DataStore:
    """Import the object named by ``'module:attribute'``.

    A class or zero-argument factory is called; anything else is used as is.

    Raises:
        ConfigError: the reference is malformed or cannot be imported.
    """
    module_path, _, attr_path = ref.partition(":")
    if not module_path or not attr_path:
        raise ConfigError(f"Invalid datastore reference (expected 'module:attribute'): {ref!r}")
    try:
        obj: Any = importlib.import_module(module_path)
        for part in attr_path.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(f"Cannot load datastore {ref!r}: {exc}", cause=exc) from exc

    if inspect.isclass(obj) or (callable(obj) and not isinstance(obj, DataStore)):
        obj = obj()
    if not isinstance(obj, DataStore):
        raise ConfigError(f"{ref!r} does not provide a DataStore (got {type(obj).__name__})")
    return obj


__all__ = [
    "DataStore",
    "ObjectiveSummary",
    "ReportRecipient",
    "UserRecord",
    "Workspace",
    "load_datastore",
]
