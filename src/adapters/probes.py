"""Concrete health probes for the running service."""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from core.config import ChannelConfig
from core.errors import ProbeFailure
from core.health import RequestMetrics
from core.models import HealthCheckResult, HealthStatus
from core.ports import ConfigProviderPort, DeduplicationStorePort
from core.rate_limit import SlidingWindowRateLimiter


class _Probe:
    name = "probe"
    critical = False

    def _result(self, status: HealthStatus, detail=None) -> HealthCheckResult:
        return HealthCheckResult(name=self.name, status=status, critical=self.critical, detail=detail)


class ConfigurationProbe(_Probe):
    """Critical: the provider must be able to serve a configuration."""

    name = "configuration"
    critical = True

    def __init__(self, provider: ConfigProviderPort, organization_id: str = "__default__") -> None:
        self._provider = provider
        self._organization_id = organization_id

    async def check(self) -> HealthCheckResult:
        config = self._provider.get_organization_config(self._organization_id)
        return self._result(
            HealthStatus.HEALTHY,
            {"version": config.version, "channels": len(config.channels)},
        )


class DeduplicationStoreProbe(_Probe):
    """Critical: the store backs suppression for every success event."""

    name = "deduplication_store"
    critical = True

    def __init__(self, store: DeduplicationStorePort) -> None:
        self._store = store

    async def check(self) -> HealthCheckResult:
        # Store calls may block on disk; keep them off the event loop.
        if not await asyncio.to_thread(self._store.ping):
            raise ProbeFailure("deduplication store did not answer ping")
        return self._result(HealthStatus.HEALTHY, {"backend": type(self._store).__name__})


class ChannelsProbe(_Probe):
    """Degraded when nothing would receive a notification."""

    name = "channels"

    def __init__(
        self,
        provider: ConfigProviderPort,
        admin_channels: Iterable[ChannelConfig],
        supported_kinds: Iterable[str],
    ) -> None:
        self._provider = provider
        self._admin_channels = tuple(admin_channels)
        self._supported_kinds = set(supported_kinds)

    async def check(self) -> HealthCheckResult:
        defaults = self._provider.get_organization_config("__default__")
        configured = [c for c in defaults.channels + self._admin_channels if c.enabled]
        unsupported = sorted({c.kind for c in configured if c.kind not in self._supported_kinds})
        detail = {
            "enabled": len(configured),
            "admin": len(self._admin_channels),
            "unsupported_kinds": unsupported,
        }
        if not configured or unsupported:
            return self._result(HealthStatus.DEGRADED, detail)
        return self._result(HealthStatus.HEALTHY, detail)


class RequestErrorRateProbe(_Probe):
    """Degraded when recent requests fail above the tolerated rate."""

    name = "requests"

    def __init__(self, metrics: RequestMetrics, max_error_rate: float = 0.5, min_samples: int = 10) -> None:
        self._metrics = metrics
        self._max_error_rate = max_error_rate
        self._min_samples = min_samples

    async def check(self) -> HealthCheckResult:
        snapshot = self._metrics.snapshot()
        failing = [
            endpoint
            for endpoint, stats in snapshot.items()
            if stats["requests"] >= self._min_samples and stats["error_rate"] > self._max_error_rate
        ]
        status = HealthStatus.DEGRADED if failing else HealthStatus.HEALTHY
        return self._result(status, {"endpoints": snapshot, "failing": failing})


class RateLimiterProbe(_Probe):
    """Degraded when the tracked identifier map grows past a soft cap."""

    name = "rate_limiter"

    def __init__(self, limiter: SlidingWindowRateLimiter, soft_cap: Optional[int] = 10_000) -> None:
        self._limiter = limiter
        self._soft_cap = soft_cap

    async def check(self) -> HealthCheckResult:
        tracked = self._limiter.tracked_identifiers()
        status = HealthStatus.HEALTHY
        if self._soft_cap is not None and tracked > self._soft_cap:
            status = HealthStatus.DEGRADED
        return self._result(status, {"tracked_identifiers": tracked})
