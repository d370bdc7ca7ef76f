"""Job handlers, one per JobKind, and the interfaces they consume.

``build_handlers`` wires every handler to its dependencies and returns
the ``JobKind -> handler`` map the worker pools are built from::

    handlers = build_handlers(
        JobDependencies(datastore=store, queues=queues, email=resend, sender="noreply@teamspark.ai")
    )
    WorkerPool(queues[JobKind.SEND_EMAIL], handlers[JobKind.SEND_EMAIL], concurrency=5)

``process-checkin`` has no handler here; its queue exists for producers
and external consumers.
"""

from __future__ import annotations

from dataclasses import dataclass

from teamspark.core.cache import CacheBackend
from teamspark.execution.models import JobKind
from teamspark.execution.queue import QueueSet
from teamspark.execution.worker import Handler
from teamspark.jobs.cleanup import CleanupHandler
from teamspark.jobs.datastore import DataStore, load_datastore
from teamspark.jobs.email import EmailHandler
from teamspark.jobs.metrics import MetricsHandler
from teamspark.jobs.notifications import NotificationHandler
from teamspark.jobs.providers import DirectoryProvider, EmailProvider, MessagingProvider
from teamspark.jobs.reports import ReportHandler
from teamspark.jobs.workspace_sync import WorkspaceSyncHandler


@dataclass
class JobDependencies:
    datastore: DataStore
    queues: QueueSet
    email: EmailProvider
    sender: str
    directory: DirectoryProvider | None = None
    messaging: MessagingProvider | None = None
    cache: CacheBackend | None = None
    app_url: str = ""


def build_handlers(deps: JobDependencies) -> dict[JobKind, Handler]:
    """Build the handler for every kind this package processes."""
    handlers: dict[JobKind, Handler] = {
        JobKind.SEND_EMAIL: EmailHandler(deps.email, sender=deps.sender, cache=deps.cache),
        JobKind.CALCULATE_METRICS: MetricsHandler(deps.datastore),
        JobKind.GENERATE_REPORT: ReportHandler(deps.datastore, deps.queues, app_url=deps.app_url),
        JobKind.CLEANUP_OLD_DATA: CleanupHandler(deps.datastore, deps.queues),
        JobKind.SEND_NOTIFICATION: NotificationHandler(
            deps.datastore, deps.queues, deps.messaging, cache=deps.cache, app_url=deps.app_url
        ),
    }
    if deps.directory is not None:
        handlers[JobKind.SYNC_WORKSPACE] = WorkspaceSyncHandler(deps.datastore, deps.directory)
    return handlers


__all__ = [
    "DataStore",
    "JobDependencies",
    "build_handlers",
    "load_datastore",
]
