"""Concurrent multi-channel delivery.

Each enabled channel is sent on its own task with its own timeout. Failures
are recorded per channel and never raised, so the result always holds one
outcome per enabled channel, in the order the channels were declared.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

from core.config import ChannelConfig
from core.errors import ChannelDeliveryFailure
from core.models import (
    DeliveryOutcome,
    DispatchResult,
    NotificationEvent,
    NotificationMetadata,
    NotificationStatus,
)
from core.ports import ChannelPort

LOGGER = logging.getLogger(__name__)

DEFAULT_CHANNEL_TIMEOUT_MS = 10_000
TIMEOUT_ERROR = "timeout"


class ChannelRegistry:
    """Maps a channel ``kind`` to the sender that handles it."""

    def __init__(self, senders: Optional[Mapping[str, ChannelPort]] = None) -> None:
        self._senders: dict[str, ChannelPort] = dict(senders or {})

    def register(self, kind: str, sender: ChannelPort) -> None:
        self._senders[kind] = sender

    def resolve(self, kind: str) -> ChannelPort:
        sender = self._senders.get(kind)
        if sender is None:
            raise ChannelDeliveryFailure(kind, f"unsupported channel kind: {kind}")
        return sender

    def kinds(self) -> set[str]:
        return set(self._senders)


class ChannelDispatcher:
    """Fans a notification out to every enabled channel."""

    def __init__(
        self,
        registry: ChannelRegistry,
        default_timeout_ms: int = DEFAULT_CHANNEL_TIMEOUT_MS,
        admin_channels: Sequence[ChannelConfig] = (),
    ) -> None:
        self._registry = registry
        self._default_timeout_ms = default_timeout_ms
        self._admin_channels = tuple(admin_channels)

    @property
    def admin_channels(self) -> tuple[ChannelConfig, ...]:
        return self._admin_channels

    async def dispatch(
        self,
        event: NotificationEvent,
        channels: Sequence[ChannelConfig],
        deadline: Optional[float] = None,
    ) -> DispatchResult:
        """Deliver ``event`` and return every enabled channel's outcome.

        ``deadline`` (seconds) bounds the whole fan-out; channels still
        pending when it passes are cancelled and recorded as timeouts.
        """

        enabled = [channel for channel in channels if channel.enabled]
        if not enabled:
            return DispatchResult(outcomes=())

        started = time.perf_counter()
        tasks = [
            asyncio.ensure_future(self._deliver(event, channel))
            for channel in enabled
        ]
        try:
            _, pending = await asyncio.wait(tasks, timeout=deadline)
        except asyncio.CancelledError:
            # The caller gave up; settle what we can before propagating.
            pending = {task for task in tasks if not task.done()}
            self._cancel(pending)
            raise

        self._cancel(pending)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes = []
        for channel, task in zip(enabled, tasks):
            if task in pending or task.cancelled():
                elapsed = (time.perf_counter() - started) * 1000
                outcomes.append(DeliveryOutcome(channel.channel_id, False, TIMEOUT_ERROR, elapsed))
            else:
                outcomes.append(task.result())

        result = DispatchResult(outcomes=tuple(outcomes))
        LOGGER.info(
            "Dispatch finished: channels=%s success=%s failed=%s",
            len(outcomes),
            result.success_count,
            result.failure_count,
        )
        return result

    @staticmethod
    def _cancel(tasks) -> None:
        for task in tasks:
            task.cancel()

    async def _deliver(self, event: NotificationEvent, channel: ChannelConfig) -> DeliveryOutcome:
        started = time.perf_counter()
        timeout_ms = channel.timeout_ms or self._default_timeout_ms
        error: Optional[str] = None
        try:
            sender = self._registry.resolve(channel.kind)
            await asyncio.wait_for(sender.send(event, channel), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            error = TIMEOUT_ERROR
        except ChannelDeliveryFailure as exc:
            error = str(exc)
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
        latency_ms = (time.perf_counter() - started) * 1000

        if error is not None:
            LOGGER.warning("Delivery to %s (%s) failed: %s", channel.channel_id, channel.kind, error)
            return DeliveryOutcome(channel.channel_id, False, error, latency_ms)
        return DeliveryOutcome(channel.channel_id, True, None, latency_ms)

    async def notify_system_error(
        self,
        error: BaseException,
        context: Optional[Mapping[str, Any]] = None,
    ) -> DispatchResult:
        """Send an internal error notice to the admin channels."""

        if not self._admin_channels:
            LOGGER.debug("No admin channels configured; system error notice skipped")
            return DispatchResult(outcomes=())

        context = dict(context or {})
        event = NotificationEvent(
            status=NotificationStatus.ERROR,
            title="Beacon system error",
            message=f"{error.__class__.__name__}: {error}",
            details=", ".join(f"{key}={value}" for key, value in sorted(context.items())),
            context=context,
            metadata=NotificationMetadata(
                timestamp=datetime.now(timezone.utc),
                request_id=str(context.get("request_id", "")),
                organization_id="system",
                user_id="system",
                source="system",
            ),
        )
        return await self.dispatch(event, self._admin_channels)
