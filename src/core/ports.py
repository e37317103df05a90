"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for storage, configuration, channel and
probe adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import Optional, Protocol

from core.config import ChannelConfig, OrganizationConfig
from core.models import (
    DeduplicationRecord,
    HealthCheckResult,
    NotificationEvent,
    RateLimitDecision,
    RuleDecision,
)


class DeduplicationStorePort(Protocol):
    """Recent-notification history, keyed by organization and fingerprint."""

    def get(self, organization_id: str, fingerprint: str) -> Optional[DeduplicationRecord]:
        ...

    def was_seen_recently(self, organization_id: str, fingerprint: str, window_ms: int) -> bool:
        ...

    def record(
        self, organization_id: str, fingerprint: str, window_ms: Optional[int] = None
    ) -> DeduplicationRecord:
        ...

    def check_and_record(self, organization_id: str, fingerprint: str, window_ms: int) -> bool:
        """Atomically: True if seen inside the window, else record and return False."""
        ...

    def cleanup(self, max_age_ms: int) -> int:
        ...

    def ping(self) -> bool:
        ...


class RateLimiterPort(Protocol):
    def admit(self, identifier: str, limit: int, window_ms: int) -> RateLimitDecision:
        ...


class ConfigProviderPort(Protocol):
    def get_organization_config(self, organization_id: str) -> OrganizationConfig:
        ...


class EvaluatorPort(Protocol):
    """Pluggable decision function: should this event be delivered?

    ``evaluate`` may block on storage; the processor runs it in a worker thread.
    """

    def evaluate(self, event: NotificationEvent, config: OrganizationConfig) -> RuleDecision:
        ...

    def should_notify(self, event: NotificationEvent, config: OrganizationConfig) -> bool:
        ...


class ChannelPort(Protocol):
    """Delivers one event to one configured destination."""

    async def send(self, event: NotificationEvent, channel: ChannelConfig) -> None:
        ...


class HealthProbe(Protocol):
    name: str
    critical: bool

    async def check(self) -> HealthCheckResult:
        ...
