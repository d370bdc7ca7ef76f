"""
Tests for the httpx-backed providers.

Requests go through ``httpx.MockTransport`` so status handling, headers,
and pagination are exercised without a network.
"""

import json
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime

import httpx
import pytest

from teamspark.core.errors import ProviderError, is_retryable
from teamspark.jobs.providers import (
    EmailProvider,
    ResendEmailProvider,
    SlackDirectoryProvider,
    SlackMessagingProvider,
)


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestResend:
    @pytest.mark.asyncio
    async def test_send(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "re_123"})

        provider = ResendEmailProvider("key-1", client=client_for(handler))
        message_id = await provider.send(sender="noreply@x.com", to="ada@x.com", subject="Hi", html="<p>Hi</p>")

        assert message_id == "re_123"
        (request,) = seen
        assert request.method == "POST"
        assert str(request.url) == "https://api.resend.com/emails"
        assert request.headers["Authorization"] == "Bearer key-1"
        assert json.loads(request.content) == {
            "from": "noreply@x.com",
            "to": ["ada@x.com"],
            "subject": "Hi",
            "html": "<p>Hi</p>",
        }

    def test_satisfies_protocol(self):
        assert isinstance(ResendEmailProvider("key", client=client_for(lambda r: None)), EmailProvider)

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        provider = ResendEmailProvider(
            "key", client=client_for(lambda r: httpx.Response(429, headers={"Retry-After": "2"}))
        )
        with pytest.raises(ProviderError) as exc_info:
            await provider.send(sender="a@x.com", to="b@x.com", subject="s", html="h")
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 2.0
        assert is_retryable(exc_info.value)

    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Wed, 21 Oct 2015 07:28:00 GMT", 0.0),
            ("soon", None),
        ],
    )
    @pytest.mark.asyncio
    async def test_rate_limited_with_non_numeric_retry_after(self, header, expected):
        provider = ResendEmailProvider(
            "key", client=client_for(lambda r: httpx.Response(429, headers={"Retry-After": header}))
        )
        with pytest.raises(ProviderError) as exc_info:
            await provider.send(sender="a@x.com", to="b@x.com", subject="s", html="h")
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == expected
        assert is_retryable(exc_info.value)

    @pytest.mark.asyncio
    async def test_retry_after_http_date_in_the_future(self):
        when = datetime.now(UTC) + timedelta(seconds=120)
        header = format_datetime(when, usegmt=True)
        provider = ResendEmailProvider(
            "key", client=client_for(lambda r: httpx.Response(429, headers={"Retry-After": header}))
        )
        with pytest.raises(ProviderError) as exc_info:
            await provider.send(sender="a@x.com", to="b@x.com", subject="s", html="h")
        assert 100 < exc_info.value.retry_after <= 120

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        provider = ResendEmailProvider("key", client=client_for(lambda r: httpx.Response(503, text="busy")))
        with pytest.raises(ProviderError) as exc_info:
            await provider.send(sender="a@x.com", to="b@x.com", subject="s", html="h")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        provider = ResendEmailProvider(
            "key", client=client_for(lambda r: httpx.Response(422, json={"message": "invalid to"}))
        )
        with pytest.raises(ProviderError) as exc_info:
            await provider.send(sender="a@x.com", to="not-an-email", subject="s", html="h")
        assert exc_info.value.status_code == 422
        assert not is_retryable(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = ResendEmailProvider("key", client=client_for(handler))
        with pytest.raises(ProviderError) as exc_info:
            await provider.send(sender="a@x.com", to="b@x.com", subject="s", html="h")
        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_missing_id(self):
        provider = ResendEmailProvider("key", client=client_for(lambda r: httpx.Response(200, json={})))
        with pytest.raises(ProviderError):
            await provider.send(sender="a@x.com", to="b@x.com", subject="s", html="h")

    @pytest.mark.asyncio
    async def test_injected_client_is_not_closed(self):
        client = client_for(lambda r: httpx.Response(200, json={"id": "x"}))
        await ResendEmailProvider("key", client=client).aclose()
        assert not client.is_closed
        await client.aclose()


class TestSlackDirectory:
    @pytest.mark.asyncio
    async def test_members_paginate(self):
        cursors = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/users.list"
            assert request.headers["Authorization"] == "Bearer xoxb-1"
            cursor = request.url.params.get("cursor")
            cursors.append(cursor)
            if cursor is None:
                return httpx.Response(
                    200,
                    json={
                        "ok": True,
                        "members": [
                            {"id": "U1", "name": "ada", "real_name": "Ada", "profile": {"email": "ada@x.com", "image_192": "https://img/a"}},
                        ],
                        "response_metadata": {"next_cursor": "page-2"},
                    },
                )
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "members": [{"id": "B1", "name": "bot", "is_bot": True, "deleted": False, "profile": {}}],
                    "response_metadata": {"next_cursor": ""},
                },
            )

        members = await SlackDirectoryProvider(client=client_for(handler)).list_members("xoxb-1")

        assert cursors == [None, "page-2"]
        assert [m.external_id for m in members] == ["U1", "B1"]
        assert members[0].email == "ada@x.com"
        assert members[0].display_name == "Ada"
        assert members[0].avatar_url == "https://img/a"
        assert members[1].is_bot
        assert members[1].email is None

    @pytest.mark.asyncio
    async def test_channels(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["exclude_archived"] == "true"
            return httpx.Response(200, json={"ok": True, "channels": [{"id": "C1"}]})

        channels = await SlackDirectoryProvider(client=client_for(handler)).list_channels("xoxb-1")
        assert channels == [{"id": "C1"}]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error, retryable", [("invalid_auth", False), ("ratelimited", True)])
    async def test_api_error_envelope(self, error, retryable):
        provider = SlackDirectoryProvider(
            client=client_for(lambda r: httpx.Response(200, json={"ok": False, "error": error}))
        )
        with pytest.raises(ProviderError) as exc_info:
            await provider.list_members("xoxb-1")
        assert error in str(exc_info.value)
        assert exc_info.value.retryable is retryable


class TestSlackMessaging:
    @pytest.mark.asyncio
    async def test_post_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "POST"
            assert request.url.path == "/api/chat.postMessage"
            assert json.loads(request.content) == {"channel": "U02", "text": "hello"}
            return httpx.Response(200, json={"ok": True, "ts": "1710331200.0001"})

        provider = SlackMessagingProvider(client=client_for(handler))
        assert await provider.post_message("xoxb-1", "U02", "hello") == "1710331200.0001"
