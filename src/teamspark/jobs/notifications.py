"""send-notification handler: deliver a kudos to its receiver.

Receivers reachable in the organization's chat workspace get a direct
message; everyone else gets a ``kudos-notification`` email through the
send-email queue.
"""

from __future__ import annotations

from typing import Any, cast

from teamspark.core.cache import CacheBackend
from teamspark.core.errors import UnrecoverableJobError
from teamspark.execution.models import JobKind, JobOptions, NotificationPayload, SendEmailPayload
from teamspark.execution.queue import QueueSet
from teamspark.execution.worker import JobContext
from teamspark.jobs.datastore import DataStore
from teamspark.jobs.providers import MessagingProvider


class NotificationHandler:
    def __init__(
        self,
        datastore: DataStore,
        queues: QueueSet,
        messaging: MessagingProvider | None = None,
        *,
        cache: CacheBackend | None = None,
        app_url: str = "",
        idempotency_ttl_seconds: int = 7 * 24 * 3600,
    ):
        self.datastore = datastore
        self.queues = queues
        self.messaging = messaging
        self.cache = cache
        self.app_url = app_url.rstrip("/")
        self.idempotency_ttl_seconds = idempotency_ttl_seconds

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        payload = cast(NotificationPayload, ctx.payload)
        key = f"notified:{ctx.job.queue}:{ctx.job.id}"

        if self.cache is not None:
            previous = await self.cache.get(key)
            if previous is not None:
                ctx.log.info("notification_already_sent", kudos_id=payload.kudos_id)
                return previous

        receiver = await self.datastore.get_user(payload.receiver_id)
        if receiver is None:
            raise UnrecoverableJobError(f"Receiver {payload.receiver_id} not found")
        sender = await self.datastore.get_user(payload.sender_id)
        sender_name = (sender.name if sender else None) or "A teammate"
        await ctx.update_progress(30)

        workspace = await self.datastore.get_organization_workspace(receiver.organization_id)
        if self.messaging is not None and workspace is not None and receiver.external_id:
            message_id = await self.messaging.post_message(
                workspace.bot_token,
                receiver.external_id,
                f"{sender_name} sent you kudos: {payload.message}",
            )
            result = {"success": True, "channel": "chat", "message_id": message_id}
        else:
            handle = await self.queues[JobKind.SEND_EMAIL].enqueue(
                "kudos-notification",
                SendEmailPayload(
                    to=receiver.email,
                    subject=f"{sender_name} sent you kudos",
                    template="kudos-notification",
                    data={
                        "sender_name": sender_name,
                        "message": payload.message,
                        "kudos_url": f"{self.app_url}/kudos/{payload.kudos_id}" if self.app_url else None,
                    },
                ),
                JobOptions(job_id=f"kudos:{payload.kudos_id}"),
            )
            result = {"success": True, "channel": "email", "email_job_id": handle.id}

        if self.cache is not None:
            await self.cache.set(key, result, ttl_seconds=self.idempotency_ttl_seconds)
        await ctx.update_progress(100)
        ctx.log.info("kudos_notified", kudos_id=payload.kudos_id, channel=result["channel"])
        return result


__all__ = ["NotificationHandler"]
