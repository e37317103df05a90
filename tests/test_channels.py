from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone

import httpx
import pytest

from adapters.log_channel import LogChannel
from adapters.telegram_bot_notifier import TelegramBotNotifier
from adapters.telegram_notifier import TelegramSavedMessagesNotifier
from adapters.webhook_channel import WebhookChannel
from core.config import ChannelConfig
from core.errors import ChannelDeliveryFailure
from core.models import NotificationEvent, NotificationMetadata, NotificationStatus


class FakeTelethonClient:
    def __init__(self, connected: bool = False) -> None:
        self.connected = connected
        self.messages: list[tuple[str, str, str]] = []

    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        self.connected = True

    async def send_message(self, entity, message: str, parse_mode: str = "md") -> None:
        self.messages.append((entity, message, parse_mode))


def _event(status: NotificationStatus = NotificationStatus.SUCCESS) -> NotificationEvent:
    return NotificationEvent(
        status=status,
        message="Deploy finished",
        metadata=NotificationMetadata(
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            request_id="req-1",
            organization_id="acme",
            user_id="u1",
        ),
        repository="acme/api",
    )


def _channel(kind: str, destination: str) -> ChannelConfig:
    return ChannelConfig(channel_id=f"{kind}-0", kind=kind, enabled=True, destination=destination)


def _recording_client(status_code: int = 200):
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status_code, text="ok" if status_code < 400 else "nope")

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), requests


def test_webhook_posts_text_and_event() -> None:
    client, requests = _recording_client()
    channel = WebhookChannel(client)

    asyncio.run(channel.send(_event(), _channel("webhook", "https://hooks.test/abc")))

    assert str(requests[0].url) == "https://hooks.test/abc"
    body = json.loads(requests[0].content)
    assert body["text"].startswith("[SUCCESS] Deploy finished")
    assert body["event"]["repository"] == "acme/api"


def test_webhook_error_status_raises() -> None:
    client, _ = _recording_client(status_code=500)
    with pytest.raises(ChannelDeliveryFailure, match="webhook returned 500"):
        asyncio.run(WebhookChannel(client).send(_event(), _channel("webhook", "https://hooks.test/abc")))


def test_webhook_requires_http_destination() -> None:
    client, requests = _recording_client()
    with pytest.raises(ChannelDeliveryFailure):
        asyncio.run(WebhookChannel(client).send(_event(), _channel("webhook", "ftp://nowhere")))
    assert requests == []


def test_bot_notifier_sends_html_to_chat() -> None:
    client, requests = _recording_client()
    notifier = TelegramBotNotifier("123:abc", client)

    asyncio.run(notifier.send(_event(), _channel("telegram_bot", "-100200")))

    assert str(requests[0].url) == "https://api.telegram.org/bot123:abc/sendMessage"
    body = json.loads(requests[0].content)
    assert body["chat_id"] == "-100200"
    assert body["parse_mode"] == "HTML"
    assert "<b>Status:</b> SUCCESS" in body["text"]


def test_bot_notifier_needs_destination_and_success() -> None:
    client, _ = _recording_client(status_code=403)
    notifier = TelegramBotNotifier("123:abc", client)
    with pytest.raises(ChannelDeliveryFailure):
        asyncio.run(notifier.send(_event(), _channel("telegram_bot", "")))
    with pytest.raises(ChannelDeliveryFailure, match="403"):
        asyncio.run(notifier.send(_event(), _channel("telegram_bot", "-100200")))


def test_telethon_notifier_connects_and_defaults_to_saved_messages() -> None:
    client = FakeTelethonClient()
    notifier = TelegramSavedMessagesNotifier(client)

    asyncio.run(notifier.send(_event(), _channel("telegram", "")))

    assert client.connected
    entity, message, parse_mode = client.messages[0]
    assert entity == "me"
    assert "**Status:** SUCCESS" in message
    assert parse_mode == "md"


def test_log_channel_uses_error_level_for_failures(caplog) -> None:
    caplog.set_level(logging.INFO, logger="adapters.log_channel")
    channel = _channel("log", "")

    asyncio.run(LogChannel().send(_event(NotificationStatus.ERROR), channel))
    asyncio.run(LogChannel().send(_event(), channel))

    assert [record.levelno for record in caplog.records] == [logging.ERROR, logging.INFO]
    assert "Deploy finished" in caplog.records[0].getMessage()
