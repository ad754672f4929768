"""
Tests for notification delivery and identity mapping

Run with: pytest tests/test_notifier_identity.py -v
"""

import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from conftest import make_settings
from services.identity import IdentityResolver, MappingIdentityResolver
from services.notifier import (
    LoggingNotifier,
    WebhookNotifier,
    build_notifier,
)


def mock_client(response=None, error=None):
    """Patchable stand-in for httpx.AsyncClient used as an async context manager"""
    client = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=error)
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=client)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory, client


class TestWebhookNotifier:
    """HTTP delivery to the bot layer"""

    @pytest.mark.asyncio
    async def test_signed_delivery(self):
        notifier = WebhookNotifier("https://bot.example/notify", secret="s3cret")
        factory, client = mock_client(response=httpx.Response(200))

        with patch("services.notifier.httpx.AsyncClient", factory):
            result = await notifier.notify("user-1", "Deposit approved", record_id="r1")

        assert result.success is True
        assert result.status_code == 200

        _, kwargs = client.post.call_args
        payload = kwargs["json"]
        assert payload["user_id"] == "user-1"
        assert payload["message"] == "Deposit approved"
        assert payload["context"] == {"record_id": "r1"}

        expected = hmac.new(
            b"s3cret", json.dumps(payload, sort_keys=True).encode("utf-8"), hashlib.sha256
        ).hexdigest()
        assert kwargs["headers"]["X-Notification-Signature"] == f"sha256={expected}"
        assert kwargs["headers"]["X-Notification-Timestamp"] == payload["timestamp"]

    @pytest.mark.asyncio
    async def test_unsigned_without_secret(self):
        notifier = WebhookNotifier("https://bot.example/notify")
        factory, client = mock_client(response=httpx.Response(204))

        with patch("services.notifier.httpx.AsyncClient", factory):
            result = await notifier.notify_operators("Deposit pending review")

        assert result.success is True
        _, kwargs = client.post.call_args
        assert kwargs["json"]["user_id"] == "operators"
        assert "X-Notification-Signature" not in kwargs["headers"]

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        notifier = WebhookNotifier("https://bot.example/notify")
        factory, _ = mock_client(response=httpx.Response(500, text="boom"))

        with patch("services.notifier.httpx.AsyncClient", factory):
            result = await notifier.notify("user-1", "hello")

        assert result.success is False
        assert result.status_code == 500
        assert "HTTP 500" in result.error

    @pytest.mark.asyncio
    async def test_timeout(self):
        notifier = WebhookNotifier("https://bot.example/notify")
        factory, _ = mock_client(error=httpx.ReadTimeout("slow"))

        with patch("services.notifier.httpx.AsyncClient", factory):
            result = await notifier.notify("user-1", "hello")

        assert result.success is False
        assert result.error == "Connection timeout"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        notifier = WebhookNotifier("https://bot.example/notify")
        factory, _ = mock_client(error=httpx.ConnectError("refused"))

        with patch("services.notifier.httpx.AsyncClient", factory):
            result = await notifier.notify("user-1", "hello")

        assert result.success is False
        assert result.error.startswith("Delivery error")


class TestBuildNotifier:
    """Notifier selection from settings"""

    def test_logging_by_default(self):
        notifier = build_notifier(make_settings(NOTIFIER_WEBHOOK_URL=""))
        assert isinstance(notifier, LoggingNotifier)

    def test_webhook_when_configured(self):
        notifier = build_notifier(make_settings(
            NOTIFIER_WEBHOOK_URL="https://bot.example/notify",
            NOTIFIER_WEBHOOK_SECRET="abc",
            OPERATOR_CHANNEL_ID="ops-room",
        ))
        assert isinstance(notifier, WebhookNotifier)
        assert notifier.secret == "abc"
        assert notifier.operator_channel_id == "ops-room"

    @pytest.mark.asyncio
    async def test_logging_notifier_always_succeeds(self):
        result = await LoggingNotifier().notify("user-1", "hello", record_id="r1")
        assert result.success is True


class TestIdentityResolver:
    """External identity to wallet owner"""

    @pytest.mark.asyncio
    async def test_pass_through(self):
        resolver = IdentityResolver()
        assert await resolver.resolve("tg:1") == "tg:1"
        assert await resolver.external_id_for("user-1") == "user-1"

    @pytest.mark.asyncio
    async def test_mapping(self, session_factory):
        resolver = MappingIdentityResolver(session_factory)

        mapping = await resolver.link("tg:1", "user-1")

        assert mapping.user_id == "user-1"
        assert await resolver.resolve("tg:1") == "user-1"
        assert await resolver.external_id_for("user-1") == "tg:1"
        assert await resolver.resolve("tg:unmapped") == "tg:unmapped"

    @pytest.mark.asyncio
    async def test_link_is_idempotent(self, session_factory):
        resolver = MappingIdentityResolver(session_factory)

        first = await resolver.link("tg:1", "user-1")
        second = await resolver.link("tg:1", "user-2")

        assert second.id == first.id
        assert await resolver.resolve("tg:1") == "user-1"
