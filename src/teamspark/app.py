"""
Composition root for the job process.

:class:`JobSystem` owns the lifecycle of everything a worker process runs:
one backend connection, one QueueSet over it, a WorkerPool per handled
kind, the Scheduler, and a periodic queue-metrics log line. Teardown
happens in dependency order so no pool outlives the connection it uses::

    metrics loop -> (unschedule) -> pools -> queues -> providers -> backend

Usage::

    system = JobSystem.from_settings(get_settings())
    await system.run()          # until SIGTERM / SIGINT
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from teamspark.core.connection import create_backend
from teamspark.core.errors import ConfigError
from teamspark.core.logging import get_logger
from teamspark.core.settings import JobSettings
from teamspark.execution.backends.base import QueueBackend
from teamspark.execution.metrics import get_all_queue_metrics
from teamspark.execution.models import JobKind
from teamspark.execution.queue import QueueSet
from teamspark.execution.rate_limit import SlidingWindowLimiter
from teamspark.execution.worker import Handler, WorkerPool
from teamspark.jobs import JobDependencies, build_handlers
from teamspark.jobs.datastore import DataStore, load_datastore
from teamspark.jobs.providers import (
    DirectoryProvider,
    EmailProvider,
    MessagingProvider,
    ResendEmailProvider,
    SlackDirectoryProvider,
    SlackMessagingProvider,
)
from teamspark.scheduling.definitions import default_schedule
from teamspark.scheduling.scheduler import ScheduledJob, Scheduler

log = get_logger(__name__)

IDEMPOTENCY_TTL_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class PoolSpec:
    kind: JobKind
    concurrency: int
    rate_max: int | None = None
    rate_window_ms: int | None = None

    def limiter(self) -> SlidingWindowLimiter | None:
        if self.rate_max is None or self.rate_window_ms is None:
            return None
        return SlidingWindowLimiter.per_window_ms(self.rate_max, self.rate_window_ms)


def pool_specs(settings: JobSettings) -> list[PoolSpec]:
    return [
        PoolSpec(
            JobKind.SEND_EMAIL,
            settings.email_concurrency,
            settings.email_rate_max,
            settings.email_rate_window_ms,
        ),
        PoolSpec(
            JobKind.SYNC_WORKSPACE,
            settings.sync_concurrency,
            settings.sync_rate_max,
            settings.sync_rate_window_ms,
        ),
        PoolSpec(JobKind.CALCULATE_METRICS, settings.metrics_concurrency),
        PoolSpec(JobKind.CLEANUP_OLD_DATA, settings.maintenance_concurrency),
        PoolSpec(JobKind.SEND_NOTIFICATION, settings.notification_concurrency),
        PoolSpec(JobKind.GENERATE_REPORT, settings.report_concurrency),
    ]


class JobSystem:
    def __init__(
        self,
        settings: JobSettings,
        backend: QueueBackend,
        datastore: DataStore,
        email: EmailProvider,
        directory: DirectoryProvider | None = None,
        messaging: MessagingProvider | None = None,
        definitions: Iterable[ScheduledJob] | None = None,
        *,
        handlers: Mapping[JobKind, Handler] | None = None,
    ):
        self.settings = settings
        self.backend = backend
        self.datastore = datastore
        self._providers = [p for p in (email, directory, messaging) if p is not None]
        self.queues = QueueSet(backend)
        self.scheduler = Scheduler(
            self.queues, definitions if definitions is not None else default_schedule(datastore)
        )
        if handlers is None:
            handlers = build_handlers(
                JobDependencies(
                    datastore=datastore,
                    queues=self.queues,
                    email=email,
                    sender=settings.email_from,
                    directory=directory,
                    messaging=messaging,
                    cache=backend.cache("idempotency", default_ttl_seconds=IDEMPOTENCY_TTL_SECONDS),
                    app_url=settings.app_url,
                )
            )
        self.pools = [
            WorkerPool(
                self.queues[spec.kind],
                handlers[spec.kind],
                concurrency=spec.concurrency,
                limiter=spec.limiter(),
                poll_interval=settings.poll_interval_seconds,
                lock_duration_ms=settings.lock_duration_ms,
                stalled_interval_ms=settings.stalled_interval_ms,
                max_stalled_count=settings.max_stalled_count,
            )
            for spec in pool_specs(settings)
            if spec.kind in handlers
        ]
        self._metrics_task: asyncio.Task[None] | None = None
        self._stop: asyncio.Event | None = None
        self._started = False
        self._shut_down = False

    @classmethod
    def from_settings(cls, settings: JobSettings) -> JobSystem:
        if not settings.datastore:
            raise ConfigError("TEAMSPARK_DATASTORE must name the data store factory (module:attr)")
        if not settings.resend_api_key:
            raise ConfigError("RESEND_API_KEY is required to send email")
        timeout = settings.provider_timeout_seconds
        return cls(
            settings,
            create_backend(settings),
            load_datastore(settings.datastore),
            ResendEmailProvider(settings.resend_api_key, timeout=timeout),
            SlackDirectoryProvider(timeout=timeout),
            SlackMessagingProvider(timeout=timeout),
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for pool in self.pools:
            pool.start()
        report = await self.scheduler.schedule_jobs()
        self._metrics_task = asyncio.create_task(self._metrics_loop(), name="queue-metrics")
        log.info(
            "job_system_started",
            pools=[pool.queue.name for pool in self.pools],
            schedules_registered=len(report.registered),
            schedules_failed=len(report.failed),
        )

    async def shutdown(self) -> None:
        """Stop everything in dependency order. Safe to call twice."""
        if self._shut_down:
            return
        self._shut_down = True
        log.info("job_system_stopping")

        if self._metrics_task is not None:
            self._metrics_task.cancel()
            await asyncio.gather(self._metrics_task, return_exceptions=True)

        if self._started and self.settings.unschedule_on_shutdown:
            try:
                await self.scheduler.unschedule_jobs()
            except Exception as exc:
                log.error("unschedule_failed", error=str(exc))

        try:
            try:
                results = await asyncio.gather(*(pool.close() for pool in self.pools), return_exceptions=True)
                errors = [r for r in results if isinstance(r, BaseException)]
                for error in errors:
                    log.error("worker_pool_close_failed", error=str(error))
                if errors:
                    raise errors[0]
            finally:
                await self.queues.close()
        finally:
            try:
                await self._close_providers()
            finally:
                await self.backend.close()
                log.info("job_system_stopped")

    async def _close_providers(self) -> None:
        for provider in self._providers:
            aclose = getattr(provider, "aclose", None)
            if aclose is None:
                continue
            try:
                await aclose()
            except Exception as exc:
                log.error("provider_close_failed", provider=type(provider).__name__, error=str(exc))

    def install_signal_handlers(self) -> None:
        """Turn SIGTERM/SIGINT into a graceful shutdown of :meth:`run`."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(self.request_stop, signum))

    def request_stop(self, sig: Any = None) -> None:
        log.info("shutdown_requested", signal=getattr(sig, "name", sig))
        if self._stop is not None:
            self._stop.set()

    async def run(self) -> None:
        """Start, wait for a stop request, then shut down."""
        self._stop = asyncio.Event()
        self.install_signal_handlers()
        try:
            await self.start()
            await self._stop.wait()
        finally:
            await self.shutdown()

    async def _metrics_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.metrics_interval_seconds)
            snapshots = await get_all_queue_metrics(self.queues.values())
            for snapshot in snapshots:
                if snapshot.ok:
                    log.info("queue_metrics", **snapshot.to_dict())


__all__ = ["JobSystem", "PoolSpec", "pool_specs"]
