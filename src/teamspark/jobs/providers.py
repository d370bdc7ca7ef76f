"""Outbound providers used by job handlers.

Handlers depend on the small protocols below; the concrete classes talk
to Resend (email) and Slack (directory and messaging) over httpx. Every
transport or API failure surfaces as :class:`ProviderError`. Network
errors, 429 and 5xx are retryable; other 4xx responses are not.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol, runtime_checkable

import httpx

from teamspark.core.errors import ProviderError
from teamspark.core.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class RemoteMember:
    """A member as the external directory reports it."""

    external_id: str
    email: str | None
    name: str | None = None
    real_name: str | None = None
    avatar_url: str | None = None
    deleted: bool = False
    is_bot: bool = False

    @property
    def display_name(self) -> str | None:
        return self.real_name or self.name


@runtime_checkable
class EmailProvider(Protocol):
    async def send(self, *, sender: str, to: str, subject: str, html: str) -> str:
        """Send one email and return the provider's message id."""
        ...


@runtime_checkable
class DirectoryProvider(Protocol):
    async def list_members(self, token: str) -> list[RemoteMember]: ...

    async def list_channels(self, token: str) -> list[dict[str, Any]]: ...


@runtime_checkable
class MessagingProvider(Protocol):
    async def post_message(self, token: str, channel: str, text: str) -> str:
        """Post a message and return its provider id."""
        ...


def _retry_after_seconds(value: str | None) -> float | None:
    """Seconds from a Retry-After header: delta-seconds or an HTTP-date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max((when - datetime.now(UTC)).total_seconds(), 0.0)


class _HttpProvider:
    """Owns an ``httpx.AsyncClient`` unless one is injected."""

    def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, self._url(path), **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{method} {path} failed: {exc}", cause=exc) from exc
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise ProviderError(
                f"{method} {path} rate limited",
                status_code=429,
                retry_after=_retry_after_seconds(retry_after),
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                # 4xx other than 429 will not improve on retry
                retryable=response.status_code >= 500,
            )
        return response


class ResendEmailProvider(_HttpProvider):
    """Email over the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
    ):
        super().__init__(base_url, client=client, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def send(self, *, sender: str, to: str, subject: str, html: str) -> str:
        response = await self._request(
            "POST",
            "/emails",
            headers=self._headers,
            json={"from": sender, "to": [to], "subject": subject, "html": html},
        )
        message_id = response.json().get("id")
        if not message_id:
            raise ProviderError("Resend response carried no message id")
        return str(message_id)


class _SlackApi(_HttpProvider):
    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = "https://slack.com/api",
        timeout: float = 10.0,
    ):
        super().__init__(base_url, client=client, timeout=timeout)

    async def call(self, method: str, token: str, *, http: str = "GET", **kwargs: Any) -> dict[str, Any]:
        """Call a Web API method and unwrap Slack's ``ok``/``error`` envelope."""
        headers = {"Authorization": f"Bearer {token}"}
        response = await self._request(http, f"/{method}", headers=headers, **kwargs)
        body = response.json()
        if not body.get("ok"):
            error = body.get("error", "unknown_error")
            raise ProviderError(
                f"Slack {method} failed: {error}",
                retryable=error in ("ratelimited", "internal_error", "service_unavailable", "request_timeout"),
                context={"slack_method": method},
            )
        return body

    async def paginate(self, method: str, token: str, key: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            query = dict(params)
            if cursor:
                query["cursor"] = cursor
            body = await self.call(method, token, params=query)
            items.extend(body.get(key, []))
            cursor = (body.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor:
                return items


class SlackDirectoryProvider(_SlackApi):
    """Workspace members and channels from the Slack Web API."""

    async def list_members(self, token: str) -> list[RemoteMember]:
        raw = await self.paginate("users.list", token, "members", {"limit": 200})
        members = []
        for member in raw:
            profile = member.get("profile") or {}
            members.append(
                RemoteMember(
                    external_id=member["id"],
                    email=profile.get("email"),
                    name=member.get("name"),
                    real_name=member.get("real_name") or profile.get("real_name"),
                    avatar_url=profile.get("image_192") or profile.get("image_72"),
                    deleted=bool(member.get("deleted")),
                    is_bot=bool(member.get("is_bot")),
                )
            )
        return members

    async def list_channels(self, token: str) -> list[dict[str, Any]]:
        return await self.paginate(
            "conversations.list",
            token,
            "channels",
            {"types": "public_channel,private_channel", "limit": 200, "exclude_archived": "true"},
        )


class SlackMessagingProvider(_SlackApi):
    """Direct messages through ``chat.postMessage``."""

    async def post_message(self, token: str, channel: str, text: str) -> str:
        body = await self.call("chat.postMessage", token, http="POST", json={"channel": channel, "text": text})
        return str(body.get("ts", ""))


__all__ = [
    "DirectoryProvider",
    "EmailProvider",
    "MessagingProvider",
    "RemoteMember",
    "ResendEmailProvider",
    "SlackDirectoryProvider",
    "SlackMessagingProvider",
]
