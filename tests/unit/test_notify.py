"""Unit tests for credkeeper/notify — channels and message templates.

WebhookChannel is exercised against httpx.MockTransport; nothing leaves the
process.
"""

from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from credkeeper.config import MailConfig
from credkeeper.notify import messages
from credkeeper.notify.channels import (
    LoggingChannel,
    WebhookChannel,
    create_notification_channel,
)
from credkeeper.notify.protocol import NotificationChannel
from credkeeper.store.models import Purpose

pytestmark = pytest.mark.asyncio


# ─── Channels ─────────────────────────────────────────────────────────────────


class TestLoggingChannel:
    async def test_send_succeeds(self) -> None:
        result = await LoggingChannel().send("a@example.com", "Subject", "Body")
        assert result.success is True
        assert result.error is None

    async def test_satisfies_protocol(self) -> None:
        assert isinstance(LoggingChannel(), NotificationChannel)


class TestWebhookChannel:
    async def test_posts_json_envelope(self) -> None:
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        channel = WebhookChannel("http://relay.test/send", "noreply@test", client=client)
        result = await channel.send("bob@example.com", "Hello", "Body text")
        await client.aclose()

        assert result.success is True
        assert len(captured) == 1
        assert captured[0].method == "POST"
        assert json.loads(captured[0].content) == {
            "from": "noreply@test",
            "to": "bob@example.com",
            "subject": "Hello",
            "body": "Body text",
        }

    async def test_non_2xx_reported_not_raised(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        channel = WebhookChannel("http://relay.test/send", "noreply@test", client=client)
        result = await channel.send("bob@example.com", "Hello", "Body")
        await client.aclose()

        assert result.success is False
        assert result.error == "HTTP 500"

    async def test_transport_error_reported_not_raised(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        channel = WebhookChannel("http://relay.test/send", "noreply@test", client=client)
        result = await channel.send("bob@example.com", "Hello", "Body")
        await client.aclose()

        assert result.success is False
        assert result.error == "ConnectError"

    async def test_close_owned_client(self) -> None:
        channel = WebhookChannel("http://relay.test/send", "noreply@test")
        await channel.close()
        assert channel._client.is_closed


class TestFactory:
    async def test_logging_by_default(self) -> None:
        assert isinstance(create_notification_channel(MailConfig()), LoggingChannel)

    async def test_webhook_when_url_set(self) -> None:
        channel = create_notification_channel(MailConfig(webhook_url="http://relay.test/send"))
        assert isinstance(channel, WebhookChannel)
        await channel.close()


# ─── Messages ─────────────────────────────────────────────────────────────────


class TestMessages:
    @pytest.mark.parametrize(
        "purpose,path",
        [
            (Purpose.EMAIL_VERIFICATION, "/verify-email"),
            (Purpose.PASSWORD_RESET, "/reset-password"),
            (Purpose.PASSWORD_CHANGE, "/verify-password-change"),
            (Purpose.EMAIL_CHANGE, "/verify-email-change"),
        ],
    )
    async def test_link_carries_token_and_user(self, purpose: Purpose, path: str) -> None:
        url = urlparse(messages.link_for("http://frontend.test/", purpose, "tok.en+/=", 9))
        assert url.path == path
        query = parse_qs(url.query)
        assert query == {"token": ["tok.en+/="], "userId": ["9"]}

    async def test_verification_message_mentions_24_hours(self) -> None:
        subject, body = messages.verification_message("http://frontend.test", "tok", 1)
        assert subject == "Verify your account"
        assert "24 hours" in body
        assert "http://frontend.test/verify-email?token=tok&userId=1" in body

    async def test_email_changed_goes_to_both_addresses(self) -> None:
        notes = messages.email_changed_messages("old@example.com", "new@example.com")
        assert set(notes) == {"old@example.com", "new@example.com"}
        assert "new@example.com" in notes["old@example.com"][1]
