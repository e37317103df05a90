"""Static configuration for beacon.

All non-secret settings (rate limits, dispatch timeouts, organizations and
their channels, logging) live in a single JSON file for quick edits without
touching Python. Secrets come from the environment via python-dotenv.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from core.auth import parse_api_keys
from core.config import ChannelConfig, RateLimitConfig, build_channels

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Override with BEACON_CONFIG_PATH to run several instances from one checkout.
CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")

DEFAULT_VERSION = "2.0.0"


@dataclass(frozen=True)
class Settings:
    config_path: Optional[str]
    raw: dict
    version: str
    host: str
    port: int
    jwt_secret: Optional[str]
    api_keys: dict[str, str]
    rate_limit: RateLimitConfig
    rate_limit_retention_ms: int
    rate_limit_sweep_interval_ms: int
    channel_timeout_ms: int
    dispatch_deadline_ms: Optional[int]
    dedup_backend: str
    dedup_db_path: str
    dedup_ttl_days: int
    probe_timeout_ms: int
    health_interval_ms: Optional[int]
    max_error_rate: float
    admin_channels: tuple[ChannelConfig, ...]
    bot_token: Optional[str]
    logging: dict = field(default_factory=dict)


def _load_json_config(path: str) -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


def load_settings(config_path: Optional[str] = None, raw: Optional[dict] = None) -> Settings:
    """Build Settings from config.json (or ``raw``) plus the environment."""

    load_dotenv()
    if raw is None:
        config_path = config_path or os.getenv("BEACON_CONFIG_PATH") or CONFIG_PATH
        raw = _load_json_config(config_path)

    # Rate limiting: requests per caller identity inside a sliding window.
    _rate = raw.get("rate_limit", {})
    # Dispatch: per-channel timeout and an optional overall deadline.
    _dispatch = raw.get("dispatch", {})
    # Deduplication backend: "memory" (single instance) or "sqlite" (durable).
    _dedup = raw.get("deduplication", {})
    _health = raw.get("health", {})
    _server = raw.get("server", {})

    deadline = _dispatch.get("deadline_ms")
    interval = _health.get("interval_ms")
    return Settings(
        config_path=config_path,
        raw=raw,
        version=str(os.getenv("BEACON_VERSION") or raw.get("version") or DEFAULT_VERSION),
        host=str(_server.get("host", "127.0.0.1")),
        port=int(_server.get("port", 3000)),
        jwt_secret=os.getenv("JWT_SECRET") or None,
        api_keys=parse_api_keys(os.getenv("API_KEYS", "")),
        rate_limit=RateLimitConfig(
            limit=int(_rate.get("limit", 100)),
            window_ms=int(_rate.get("window_ms", 60_000)),
        ),
        rate_limit_retention_ms=int(_rate.get("retention_ms", 60 * 60 * 1000)),
        rate_limit_sweep_interval_ms=int(_rate.get("sweep_interval_ms", 10 * 60 * 1000)),
        channel_timeout_ms=int(_dispatch.get("channel_timeout_ms", 10_000)),
        dispatch_deadline_ms=int(deadline) if deadline else None,
        dedup_backend=str(_dedup.get("backend", "memory")),
        dedup_db_path=_resolve_path(str(_dedup.get("db_path", "beacon.db"))),
        dedup_ttl_days=int(_dedup.get("ttl_days", 7)),
        probe_timeout_ms=int(_health.get("probe_timeout_ms", 5_000)),
        health_interval_ms=int(interval) if interval else None,
        max_error_rate=float(_health.get("max_error_rate", 0.5)),
        admin_channels=build_channels(raw.get("admin_channels", [])),
        # Bot token is only required when a telegram_bot channel is configured.
        bot_token=os.getenv("BOT_API") or None,
        logging=raw.get("logging", {}),
    )
