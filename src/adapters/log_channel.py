"""Channel adapter that writes notifications to the application log."""

from __future__ import annotations

import logging

from adapters.notification_formatting import format_notification
from core.config import ChannelConfig
from core.models import NotificationEvent, NotificationStatus

LOGGER = logging.getLogger(__name__)


class LogChannel:
    async def send(self, event: NotificationEvent, channel: ChannelConfig) -> None:
        level = logging.ERROR if event.status is NotificationStatus.ERROR else logging.INFO
        LOGGER.log(
            level,
            "Notification for %s via %s:\n%s",
            event.metadata.organization_id,
            channel.channel_id,
            format_notification(event, mode="plain"),
        )
