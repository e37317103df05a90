"""Application entry point for the beacon notification gateway."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from typing import Optional

import httpx
import uvicorn
from art import tprint
from dotenv import load_dotenv

import settings as settings_module
from adapters.json_config_provider import JsonConfigProvider
from adapters.log_channel import LogChannel
from adapters.probes import (
    ChannelsProbe,
    ConfigurationProbe,
    DeduplicationStoreProbe,
    RateLimiterProbe,
    RequestErrorRateProbe,
)
from adapters.sqlite_storage import SQLiteDeduplicationStore
from adapters.telegram_bot_notifier import TelegramBotNotifier
from adapters.telegram_notifier import TelegramSavedMessagesNotifier
from adapters.webhook_channel import WebhookChannel
from api import Services, create_app
from client import build_client, telethon_configured
from core.auth import TokenValidator, generate_api_key, generate_token
from core.dedup import InMemoryDeduplicationStore
from core.dispatcher import ChannelDispatcher, ChannelRegistry
from core.health import HealthAggregator, HealthMonitor, RequestMetrics
from core.models import HealthReport, HealthStatus
from core.processor import NotificationProcessor
from core.rate_limit import SlidingWindowRateLimiter
from core.rules_engine import RuleEvaluator
from settings import Settings

NAME = "BEACON"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if not value:
            continue
        if name == "API_KEYS":
            # Mask each key on its own; log lines never contain the whole list.
            values.extend(entry.partition(":")[2].strip() for entry in value.split(","))
        else:
            values.append(value)
    return sorted({value for value in values if value}, key=len, reverse=True)


def _configure_logging(config: dict) -> None:
    config = config or {}
    if not config.get("enabled", True):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/beacon.log")
        if not os.path.isabs(path):
            path = os.path.join(settings_module.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers, force=True)


def _build_registry(settings: Settings, closers: list) -> ChannelRegistry:
    """Register one sender per channel kind that can actually be served."""

    logger = logging.getLogger(__name__)
    http_client = httpx.AsyncClient(timeout=settings.channel_timeout_ms / 1000)
    closers.append(http_client.aclose)

    registry = ChannelRegistry()
    registry.register("webhook", WebhookChannel(http_client))
    registry.register("log", LogChannel())

    if settings.bot_token:
        registry.register("telegram_bot", TelegramBotNotifier(settings.bot_token, http_client))
    else:
        logger.info("BOT_API not set; telegram_bot channels are disabled")

    if telethon_configured():
        client = build_client()

        async def _disconnect() -> None:
            await client.disconnect()

        closers.append(_disconnect)
        registry.register("telegram", TelegramSavedMessagesNotifier(client))
    else:
        logger.info("API_ID/API_HASH not set; telegram channels are disabled")

    logger.info("Selected channel kinds - %s", ", ".join(sorted(registry.kinds())))
    return registry


def build_services(settings: Settings, registry: Optional[ChannelRegistry] = None) -> Services:
    """Wire the pipeline from settings; ``registry`` overrides channel senders."""

    logger = logging.getLogger(__name__)
    closers: list = []

    if settings.dedup_backend == "sqlite":
        store = SQLiteDeduplicationStore(settings.dedup_db_path)
        store.init_db()
    elif settings.dedup_backend == "memory":
        store = InMemoryDeduplicationStore()
    else:
        raise RuntimeError("deduplication.backend must be 'memory' or 'sqlite'")
    logger.info("Selected deduplication backend - %s", settings.dedup_backend)

    if settings.config_path:
        provider = JsonConfigProvider(settings.raw, path=settings.config_path)
    else:
        provider = JsonConfigProvider(settings.raw)

    if registry is None:
        registry = _build_registry(settings, closers)

    if not settings.jwt_secret and not settings.api_keys:
        logger.warning("Neither JWT_SECRET nor API_KEYS is set; every /notify call will be rejected")

    rate_limiter = SlidingWindowRateLimiter(retention_ms=settings.rate_limit_retention_ms)
    validator = TokenValidator(settings.jwt_secret, settings.api_keys)
    dispatcher = ChannelDispatcher(
        registry,
        default_timeout_ms=settings.channel_timeout_ms,
        admin_channels=settings.admin_channels,
    )
    processor = NotificationProcessor(
        validator=validator,
        rate_limiter=rate_limiter,
        config_provider=provider,
        evaluator=RuleEvaluator(store),
        dispatcher=dispatcher,
        rate_limit=settings.rate_limit,
        dispatch_deadline_ms=settings.dispatch_deadline_ms,
    )

    metrics = RequestMetrics()
    aggregator = HealthAggregator(
        probes=[
            ConfigurationProbe(provider),
            DeduplicationStoreProbe(store),
            ChannelsProbe(provider, settings.admin_channels, registry.kinds()),
            RequestErrorRateProbe(metrics, max_error_rate=settings.max_error_rate),
            RateLimiterProbe(rate_limiter),
        ],
        version=settings.version,
        probe_timeout_ms=settings.probe_timeout_ms,
    )

    async def _report_degraded(report: HealthReport) -> None:
        failing = sorted(
            name for name, check in report.checks.items() if check.status is not HealthStatus.HEALTHY
        )
        await dispatcher.notify_system_error(
            RuntimeError(f"health status is {report.status.value}"),
            {"endpoint": "health", "failing": ",".join(failing)},
        )

    return Services(
        processor=processor,
        health=aggregator,
        validator=validator,
        metrics=metrics,
        version=settings.version,
        rate_limiter=rate_limiter,
        dedup_store=store,
        monitor=HealthMonitor(aggregator, on_degraded=_report_degraded),
        sweep_interval_s=settings.rate_limit_sweep_interval_ms / 1000,
        dedup_ttl_ms=settings.dedup_ttl_days * 24 * 60 * 60 * 1000,
        health_interval_s=settings.health_interval_ms / 1000 if settings.health_interval_ms else None,
        closers=closers,
    )


def _serve(config_path: Optional[str]) -> None:
    _print_banner()
    settings = settings_module.load_settings(config_path)
    _configure_logging(settings.logging)
    logger = logging.getLogger(__name__)

    logger.info("Starting beacon %s", settings.version)
    app = create_app(build_services(settings))

    # uvicorn owns the event loop; our logging config stays in place.
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


def _token(args: argparse.Namespace) -> None:
    settings = settings_module.load_settings(args.config)
    if not settings.jwt_secret:
        raise SystemExit("JWT_SECRET must be set to generate tokens")
    permissions = args.permissions.split(",") if args.permissions else ["notify"]
    token = generate_token(
        settings.jwt_secret,
        args.org,
        args.user,
        permissions=permissions,
        expires_in=timedelta(days=args.days),
    )
    print(token)


def _api_key(args: argparse.Namespace) -> None:
    result = generate_api_key(args.org)
    print(f"API key for {result['org']}: {result['api_key']}")
    print(f"Add to API_KEYS: {result['env_format']}")


def _health(config_path: Optional[str]) -> int:
    settings = settings_module.load_settings(config_path)
    _configure_logging({**settings.logging, "level": "WARNING"})
    services = build_services(settings)

    async def _run() -> HealthReport:
        try:
            return await services.health.run()
        finally:
            for close in services.closers:
                await close()

    report = asyncio.run(_run())
    print(json.dumps(report.to_dict(), indent=2, default=str))
    return 1 if report.status is HealthStatus.UNHEALTHY else 0


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="beacon")
    parser.add_argument("--config", help="Path to config.json (default: project root)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Start the HTTP API")

    token_parser = subparsers.add_parser("token", help="Print a signed token for an organization")
    token_parser.add_argument("org")
    token_parser.add_argument("user")
    token_parser.add_argument("--permissions", default="notify", help="Comma-separated permissions")
    token_parser.add_argument("--days", type=int, default=30, help="Token lifetime in days")

    key_parser = subparsers.add_parser("api-key", help="Generate a static API key")
    key_parser.add_argument("org")

    subparsers.add_parser("health", help="Run the health probes once and print the report")

    args = parser.parse_args(argv)
    if args.command == "token":
        _token(args)
        return
    if args.command == "api-key":
        _api_key(args)
        return
    if args.command == "health":
        sys.exit(_health(args.config))
    _serve(args.config)


if __name__ == "__main__":
    main()
