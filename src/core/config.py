"""Core configuration dataclasses.

We keep config loading outside the core, but these dataclasses define the
shape the core expects. Raw dictionaries are validated once by
``build_organization_config`` at the provider boundary and never again deep
in the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple

from core.errors import ConfigError

DEFAULT_DEDUP_WINDOW_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class ChannelConfig:
    """One configured delivery target."""

    channel_id: str
    kind: str
    enabled: bool
    destination: str
    timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class DeduplicationConfig:
    """Duplicate suppression settings for success notifications."""

    enabled: bool
    window_ms: int


@dataclass(frozen=True)
class RateLimitConfig:
    """Admission settings applied per caller identity."""

    limit: int = 100
    window_ms: int = 60_000


@dataclass(frozen=True)
class OrganizationConfig:
    """Per-organization routing and suppression settings."""

    channels: Tuple[ChannelConfig, ...]
    deduplication: DeduplicationConfig
    version: str
    last_optimized: Optional[str] = None

    @property
    def enabled_channels(self) -> Tuple[ChannelConfig, ...]:
        return tuple(channel for channel in self.channels if channel.enabled)


def _require_int(value: Any, name: str, minimum: int = 0) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer") from exc
    if parsed < minimum:
        raise ConfigError(f"{name} must be >= {minimum}")
    return parsed


def build_channel_config(raw: dict, index: int = 0) -> ChannelConfig:
    """Normalize one channel entry; ``id`` defaults to ``<kind>-<index>``."""

    if not isinstance(raw, dict):
        raise ConfigError(f"channel #{index} must be an object")
    kind = raw.get("kind") or raw.get("type")
    if not kind:
        raise ConfigError(f"channel #{index} is missing 'kind'")
    timeout_ms = raw.get("timeout_ms")
    return ChannelConfig(
        channel_id=str(raw.get("id") or f"{kind}-{index}"),
        kind=str(kind),
        enabled=bool(raw.get("enabled", True)),
        destination=str(raw.get("destination", "")),
        timeout_ms=_require_int(timeout_ms, "timeout_ms", minimum=1) if timeout_ms is not None else None,
    )


def build_channels(raw_channels: Iterable[dict]) -> Tuple[ChannelConfig, ...]:
    channels = tuple(build_channel_config(raw, index) for index, raw in enumerate(raw_channels))
    seen: set[str] = set()
    for channel in channels:
        if channel.channel_id in seen:
            raise ConfigError(f"duplicate channel id: {channel.channel_id}")
        seen.add(channel.channel_id)
    return channels


def build_organization_config(raw: dict, fallback: Optional[OrganizationConfig] = None) -> OrganizationConfig:
    """Validate a raw organization block.

    Missing keys are inherited from ``fallback`` (usually the ``defaults``
    block) so organizations only have to spell out what differs.
    """

    if not isinstance(raw, dict):
        raise ConfigError("organization config must be an object")

    if "channels" in raw:
        raw_channels = raw["channels"]
        if not isinstance(raw_channels, list):
            raise ConfigError("channels must be a list")
        channels = build_channels(raw_channels)
    else:
        channels = fallback.channels if fallback else ()

    raw_dedup = raw.get("deduplication")
    if raw_dedup is None:
        deduplication = fallback.deduplication if fallback else DeduplicationConfig(
            enabled=True, window_ms=DEFAULT_DEDUP_WINDOW_MS
        )
    elif isinstance(raw_dedup, dict):
        base = fallback.deduplication if fallback else None
        deduplication = DeduplicationConfig(
            enabled=bool(raw_dedup.get("enabled", base.enabled if base else True)),
            window_ms=_require_int(
                raw_dedup.get("window_ms", base.window_ms if base else DEFAULT_DEDUP_WINDOW_MS),
                "deduplication.window_ms",
                minimum=1,
            ),
        )
    else:
        raise ConfigError("deduplication must be an object")

    version = raw.get("version", fallback.version if fallback else "1")
    last_optimized = raw.get("last_optimized", fallback.last_optimized if fallback else None)
    return OrganizationConfig(
        channels=channels,
        deduplication=deduplication,
        version=str(version),
        last_optimized=last_optimized,
    )
