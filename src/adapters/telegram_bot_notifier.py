"""Telegram Bot API channel adapter.

Uses the Bot API for delivery so notifications can be routed to any chat the
bot belongs to; the channel destination is the target chat id.
"""

from __future__ import annotations

from typing import Optional

import httpx

from adapters.notification_formatting import format_notification
from core.config import ChannelConfig
from core.errors import ChannelDeliveryFailure
from core.models import NotificationEvent


class TelegramBotNotifier:
    """Channel adapter that sends messages via the Telegram Bot API."""

    def __init__(self, bot_token: str, client: Optional[httpx.AsyncClient] = None) -> None:
        self._bot_token = bot_token
        self._client = client or httpx.AsyncClient()

    def _endpoint(self) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"https://api.telegram.org/bot{self._bot_token}/sendMessage"

    async def send(self, event: NotificationEvent, channel: ChannelConfig) -> None:
        """Send the formatted notification via the Bot API."""

        if not channel.destination:
            raise ChannelDeliveryFailure(channel.channel_id, "telegram_bot channel needs a chat id destination")

        payload = {
            "chat_id": channel.destination,
            "text": format_notification(event, mode="html"),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        response = await self._client.post(self._endpoint(), json=payload)
        if response.status_code >= 400:
            raise ChannelDeliveryFailure(
                channel.channel_id,
                f"Bot API error {response.status_code}: {response.text[:200]}",
            )

    async def aclose(self) -> None:
        await self._client.aclose()
