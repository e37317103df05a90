"""Telegram channel adapter backed by a Telethon user session.

Formats a human-readable Markdown message and sends it to the destination
entity; an empty destination means the account's Saved Messages.
"""

from __future__ import annotations

from adapters.notification_formatting import format_notification
from core.config import ChannelConfig
from core.models import NotificationEvent

SAVED_MESSAGES = "me"


class TelegramSavedMessagesNotifier:
    """Channel adapter that sends messages through a connected Telethon client."""

    def __init__(self, client) -> None:
        self._client = client

    async def send(self, event: NotificationEvent, channel: ChannelConfig) -> None:
        """Send the formatted notification to the destination entity."""

        if not self._client.is_connected():
            await self._client.connect()
        message = format_notification(event, mode="markdown")
        await self._client.send_message(channel.destination or SAVED_MESSAGES, message, parse_mode="md")
