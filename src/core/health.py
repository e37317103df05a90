"""Health aggregation over independent subsystem probes.

Aggregation is stateless given its inputs: every invocation runs all probes,
waits for each to finish or time out, then folds the results with
``aggregate_status``. ``HealthMonitor`` adds the periodic, in-process view.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from core.models import HealthCheckResult, HealthReport, HealthStatus
from core.ports import HealthProbe
from core.tasks import notify_and_ignore

LOGGER = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT_MS = 5_000


def aggregate_status(checks: Mapping[str, HealthCheckResult]) -> HealthStatus:
    """Merge probe results; first matching rule wins.

    1. A critical probe that is unhealthy makes the system unhealthy.
    2. Any degraded probe makes it degraded.
    3. A non-critical unhealthy probe also only degrades it.
    4. Otherwise it is healthy.
    """

    results = list(checks.values())
    if any(r.status is HealthStatus.UNHEALTHY and r.critical for r in results):
        return HealthStatus.UNHEALTHY
    if any(r.status is HealthStatus.DEGRADED for r in results):
        return HealthStatus.DEGRADED
    if any(r.status is HealthStatus.UNHEALTHY for r in results):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def status_code_for(status: HealthStatus) -> int:
    return 503 if status is HealthStatus.UNHEALTHY else 200


class HealthAggregator:
    """Runs a named, extensible set of probes concurrently."""

    def __init__(
        self,
        probes: Sequence[HealthProbe] = (),
        version: str = "0.0.0",
        probe_timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    ) -> None:
        self._probes: dict[str, HealthProbe] = {}
        self._version = version
        self._probe_timeout_ms = probe_timeout_ms
        for probe in probes:
            self.register(probe)

    def register(self, probe: HealthProbe) -> None:
        if probe.name in self._probes:
            raise ValueError(f"duplicate probe name: {probe.name}")
        self._probes[probe.name] = probe

    @property
    def probe_names(self) -> list[str]:
        return list(self._probes)

    async def run(self) -> HealthReport:
        started = time.perf_counter()
        probes = list(self._probes.values())
        results = await asyncio.gather(*(self._run_probe(probe) for probe in probes))
        checks = {result.name: result for result in results}
        status = aggregate_status(checks)
        return HealthReport(
            status=status,
            timestamp=datetime.now(timezone.utc),
            response_time_ms=(time.perf_counter() - started) * 1000,
            checks=checks,
            version=self._version,
        )

    async def _run_probe(self, probe: HealthProbe) -> HealthCheckResult:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(probe.check(), timeout=self._probe_timeout_ms / 1000)
        except asyncio.TimeoutError:
            return self._synthetic_failure(probe, "probe timed out", started)
        except Exception as exc:
            LOGGER.warning("Health probe %s raised: %s", probe.name, exc)
            return self._synthetic_failure(probe, f"probe failed: {exc}", started)
        if not isinstance(result, HealthCheckResult):
            LOGGER.warning("Health probe %s returned %r instead of a result", probe.name, result)
            return self._synthetic_failure(probe, "probe returned no result", started)

        latency_ms = (time.perf_counter() - started) * 1000
        return dataclasses.replace(result, name=probe.name, latency_ms=result.latency_ms or latency_ms)

    @staticmethod
    def _synthetic_failure(probe: HealthProbe, detail: str, started: float) -> HealthCheckResult:
        return HealthCheckResult(
            name=probe.name,
            status=HealthStatus.UNHEALTHY,
            critical=probe.critical,
            detail={"error": detail},
            latency_ms=(time.perf_counter() - started) * 1000,
        )


class RequestMetrics:
    """Rolling window of request outcomes per endpoint."""

    def __init__(self, max_samples: int = 200) -> None:
        self._samples: dict[str, deque] = {}
        self._max_samples = max_samples

    def record(self, endpoint: str, success: bool, response_time_ms: float) -> None:
        samples = self._samples.setdefault(endpoint, deque(maxlen=self._max_samples))
        samples.append((success, response_time_ms))

    def snapshot(self) -> dict[str, dict[str, Any]]:
        summary: dict[str, dict[str, Any]] = {}
        for endpoint, samples in self._samples.items():
            total = len(samples)
            if not total:
                continue
            failures = sum(1 for success, _ in samples if not success)
            summary[endpoint] = {
                "requests": total,
                "errors": failures,
                "error_rate": failures / total,
                "avg_response_ms": sum(ms for _, ms in samples) / total,
            }
        return summary


class HealthMonitor:
    """Periodically runs the aggregator and self-reports degradation."""

    def __init__(
        self,
        aggregator: HealthAggregator,
        on_degraded: Optional[Callable[[HealthReport], Awaitable[Any]]] = None,
    ) -> None:
        self._aggregator = aggregator
        self._on_degraded = on_degraded
        self.last_report: Optional[HealthReport] = None

    async def check_once(self) -> HealthReport:
        report = await self._aggregator.run()
        previous = self.last_report.status if self.last_report else HealthStatus.HEALTHY
        self.last_report = report
        if report.status is not previous:
            LOGGER.info("Health status changed: %s -> %s", previous.value, report.status.value)
            if report.status is not HealthStatus.HEALTHY and self._on_degraded is not None:
                notify_and_ignore(self._on_degraded(report), name="health-degraded-notice")
        return report

    async def run_forever(self, interval_s: float) -> None:
        while True:
            try:
                await self.check_once()
            except Exception:
                LOGGER.exception("Periodic health check failed")
            await asyncio.sleep(interval_s)
