"""send-email handler."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, cast

from teamspark.core.cache import CacheBackend
from teamspark.execution.models import SendEmailPayload
from teamspark.execution.worker import JobContext
from teamspark.jobs.providers import EmailProvider
from teamspark.jobs.templates import render_email


class EmailHandler:
    """Render a template and hand it to the email provider.

    Progress: 10 (started), 50 (template rendered), 100 (sent). Provider
    errors propagate so the queue retries. When a cache is given, the
    result is remembered per job id and a redelivered job returns it
    without sending again.
    """

    def __init__(
        self,
        provider: EmailProvider,
        *,
        sender: str,
        cache: CacheBackend | None = None,
        idempotency_ttl_seconds: int = 7 * 24 * 3600,
    ):
        self.provider = provider
        self.sender = sender
        self.cache = cache
        self.idempotency_ttl_seconds = idempotency_ttl_seconds

    async def __call__(self, ctx: JobContext) -> dict[str, Any]:
        payload = cast(SendEmailPayload, ctx.payload)
        key = f"sent:{ctx.job.queue}:{ctx.job.id}"

        if self.cache is not None:
            previous = await self.cache.get(key)
            if previous is not None:
                ctx.log.info("email_already_sent", email_id=previous.get("email_id"))
                await ctx.update_progress(100)
                return previous

        await ctx.update_progress(10)
        html = render_email(payload.template, payload.data)
        await ctx.update_progress(50)

        email_id = await self.provider.send(
            sender=self.sender, to=payload.to, subject=payload.subject, html=html
        )
        result = {
            "success": True,
            "email_id": email_id,
            "sent_at": datetime.now(UTC).isoformat(),
        }
        if self.cache is not None:
            await self.cache.set(key, result, ttl_seconds=self.idempotency_ttl_seconds)

        await ctx.update_progress(100)
        ctx.log.info("email_sent", to=payload.to, template=payload.template, email_id=email_id)
        return result


__all__ = ["EmailHandler"]
