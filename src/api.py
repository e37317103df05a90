"""HTTP surface for beacon.

Two endpoints: ``/notify`` runs the notification pipeline and ``/health``
reports the aggregated probe status. Both answer unsupported methods with a
405 that lists the allowed ones.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from core.auth import TokenValidator
from core.errors import AuthenticationError, RateLimited, ValidationError
from core.health import HealthAggregator, HealthMonitor, RequestMetrics, status_code_for
from core.models import RequestInfo
from core.ports import DeduplicationStorePort
from core.processor import NotificationProcessor
from core.rate_limit import SlidingWindowRateLimiter
from core.tasks import drain_background_tasks, notify_and_ignore

LOGGER = logging.getLogger(__name__)

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
HEALTH_METHODS = ["GET", "POST"]
NOTIFY_METHODS = ["POST"]


@dataclass
class Services:
    """Everything the HTTP layer needs, built once at startup."""

    processor: NotificationProcessor
    health: HealthAggregator
    validator: TokenValidator
    metrics: RequestMetrics = field(default_factory=RequestMetrics)
    version: str = "0.0.0"
    rate_limiter: Optional[SlidingWindowRateLimiter] = None
    dedup_store: Optional[DeduplicationStorePort] = None
    monitor: Optional[HealthMonitor] = None
    sweep_interval_s: Optional[float] = None
    dedup_ttl_ms: Optional[int] = None
    health_interval_s: Optional[float] = None
    closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)


def extract_request_info(request: Request) -> RequestInfo:
    """Collect request facts for logging and correlation."""

    headers = request.headers
    ip = (
        headers.get("x-forwarded-for")
        or headers.get("x-real-ip")
        or (request.client.host if request.client else None)
        or "unknown"
    )
    return RequestInfo(
        request_id=str(uuid.uuid4()),
        ip=ip,
        user_agent=headers.get("user-agent", "unknown"),
        method=request.method,
        path=request.url.path,
        timestamp=datetime.now(timezone.utc),
    )


def _method_not_allowed(allowed: list[str]) -> JSONResponse:
    return JSONResponse(
        {"error": "Method not allowed", "allowed": allowed},
        status_code=405,
        headers={"Allow": ", ".join(allowed)},
    )


async def _every(interval_s: float, func: Callable[[], Any], label: str) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            result = await asyncio.to_thread(func)
            LOGGER.debug("%s finished: %s", label, result)
        except Exception:
            LOGGER.exception("%s failed", label)


def create_app(services: Services) -> FastAPI:
    """Build the FastAPI application around prepared services."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        background: list[asyncio.Task] = []
        if services.rate_limiter is not None and services.sweep_interval_s:
            background.append(
                asyncio.create_task(
                    _every(services.sweep_interval_s, services.rate_limiter.sweep, "Rate limit sweep")
                )
            )
        if services.dedup_store is not None and services.dedup_ttl_ms and services.sweep_interval_s:
            store, ttl_ms = services.dedup_store, services.dedup_ttl_ms
            background.append(
                asyncio.create_task(
                    _every(services.sweep_interval_s, lambda: store.cleanup(ttl_ms), "Dedup cleanup")
                )
            )
        if services.monitor is not None and services.health_interval_s:
            background.append(asyncio.create_task(services.monitor.run_forever(services.health_interval_s)))
        LOGGER.info("Beacon API started with %s background tasks", len(background))
        try:
            yield
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await drain_background_tasks()
            for close in services.closers:
                try:
                    await close()
                except Exception:
                    LOGGER.exception("Error while closing a channel client")
            LOGGER.info("Beacon API stopped")

    app = FastAPI(title="beacon", version=services.version, lifespan=lifespan)
    app.state.services = services

    @app.api_route("/health", methods=ALL_METHODS)
    async def health(request: Request) -> JSONResponse:
        if request.method not in HEALTH_METHODS:
            return _method_not_allowed(HEALTH_METHODS)

        # Authentication is optional here; it only adds the caller's org.
        identity = None
        authorization = request.headers.get("authorization")
        if authorization:
            try:
                identity = services.validator.validate(authorization)
            except AuthenticationError:
                identity = None

        try:
            report = await services.health.run()
        except Exception as exc:
            LOGGER.exception("Health check failed")
            return JSONResponse(
                {
                    "status": "unhealthy",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                    "error": "Health check failed",
                    "message": str(exc),
                },
                status_code=503,
            )

        body = report.to_dict()
        if identity is not None:
            body["authenticated"] = True
            body["org"] = identity.organization_id
        LOGGER.info(
            "Health check performed: status=%s response_ms=%.1f authenticated=%s",
            report.status.value,
            report.response_time_ms,
            identity is not None,
        )
        return JSONResponse(body, status_code=status_code_for(report.status))

    @app.api_route("/notify", methods=ALL_METHODS)
    async def notify(request: Request) -> JSONResponse:
        if request.method not in NOTIFY_METHODS:
            return _method_not_allowed(NOTIFY_METHODS)

        started = time.perf_counter()
        info = extract_request_info(request)
        LOGGER.info("Notification request received: id=%s ip=%s ua=%s", info.request_id, info.ip, info.user_agent)

        try:
            body = await request.json()
        except ValueError:
            body = None

        try:
            result = await services.processor.handle(request.headers.get("authorization"), body, info)
        except AuthenticationError as exc:
            LOGGER.warning("Authentication failed: id=%s ip=%s reason=%s", info.request_id, info.ip, exc)
            return JSONResponse(
                {"error": "Unauthorized", "message": "Invalid or missing authentication token"},
                status_code=401,
            )
        except RateLimited as exc:
            reset_time = exc.decision.reset_time or 0
            retry_after = max(0, int((reset_time - time.time() * 1000) / 1000) + 1)
            return JSONResponse(
                {"error": "Too Many Requests", "message": str(exc), "resetTime": reset_time},
                status_code=429,
                headers={"Retry-After": str(retry_after)},
            )
        except ValidationError as exc:
            return JSONResponse({"error": "Bad Request", "message": str(exc)}, status_code=400)
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000
            LOGGER.exception("Notification processing failed: id=%s time_ms=%.1f", info.request_id, elapsed_ms)
            notify_and_ignore(
                services.processor.dispatcher.notify_system_error(
                    exc,
                    {"endpoint": "notify", "request_id": info.request_id, "processing_ms": round(elapsed_ms, 1)},
                ),
                name="system-error-notice",
            )
            services.metrics.record("notify", False, elapsed_ms)
            return JSONResponse(
                {
                    "success": False,
                    "error": "Internal Server Error",
                    "message": "Failed to process notification",
                    "requestId": info.request_id,
                },
                status_code=500,
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        services.metrics.record("notify", True, elapsed_ms)
        return JSONResponse(
            {
                "success": True,
                "message": "Notification processed",
                "data": {
                    "notified": result.notified,
                    "channels": [
                        {"channel": outcome.channel_id, "success": outcome.success}
                        for outcome in result.dispatch.outcomes
                    ],
                    "config": {
                        "version": result.config.version,
                        "lastOptimized": result.config.last_optimized,
                    },
                    "processingTime": round(elapsed_ms, 2),
                    "requestId": info.request_id,
                },
            }
        )

    return app
