"""Chat-webhook channel adapter.

Posts a Slack-compatible ``{"text": ...}`` body, with the structured event
alongside, to the channel's destination URL.
"""

from __future__ import annotations

from typing import Optional

import httpx

from adapters.notification_formatting import event_payload, format_notification
from core.config import ChannelConfig
from core.errors import ChannelDeliveryFailure
from core.models import NotificationEvent


class WebhookChannel:
    """Channel adapter that POSTs JSON to an HTTP(S) webhook."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client or httpx.AsyncClient()

    async def send(self, event: NotificationEvent, channel: ChannelConfig) -> None:
        """Send the formatted notification to ``channel.destination``."""

        url = channel.destination.strip()
        if not url.startswith(("http://", "https://")):
            raise ChannelDeliveryFailure(channel.channel_id, "webhook destination must be an http(s) URL")

        payload = {
            "text": format_notification(event, mode="plain"),
            "event": event_payload(event),
        }
        response = await self._client.post(url, json=payload)
        if response.status_code >= 400:
            raise ChannelDeliveryFailure(
                channel.channel_id,
                f"webhook returned {response.status_code}: {response.text[:200]}",
            )

    async def aclose(self) -> None:
        await self._client.aclose()
