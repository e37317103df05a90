"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any transport or channel-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Tuple


class CredentialKind(str, Enum):
    SIGNED = "signed"
    STATIC = "static"


class NotificationStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller, scoped to a single request."""

    organization_id: str
    user_id: str
    permissions: frozenset[str]
    credential_kind: CredentialKind
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class RequestInfo:
    """Transport-level facts about an inbound request, used for logging."""

    request_id: str
    ip: str
    user_agent: str
    method: str
    path: str
    timestamp: datetime


@dataclass(frozen=True)
class NotificationMetadata:
    timestamp: datetime
    request_id: str
    organization_id: str
    user_id: str
    source: str = "api"


@dataclass(frozen=True)
class NotificationEvent:
    """A validated inbound notification, immutable after ingress."""

    status: NotificationStatus
    message: str
    metadata: NotificationMetadata
    title: str = ""
    details: str = ""
    repository: str = ""
    branch: str = ""
    target: str = ""
    source_url: str = ""
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        if not isinstance(self.context, MappingProxyType):
            object.__setattr__(self, "context", MappingProxyType(dict(self.context)))


@dataclass(frozen=True)
class DeduplicationRecord:
    """Recent-notification bookkeeping for one fingerprint (epoch ms)."""

    organization_id: str
    fingerprint: str
    first_seen: float
    last_seen: float
    count: int = 1


@dataclass(frozen=True)
class RuleDecision:
    """Outcome of one rule evaluation with a human-readable reason."""

    notify: bool
    reason: str
    fingerprint: Optional[str] = None
    error: Optional[Exception] = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    remaining: Optional[int] = None
    reset_time: Optional[float] = None


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one delivery attempt to one channel."""

    channel_id: str
    success: bool
    error: Optional[str] = None
    latency_ms: float = 0.0


@dataclass(frozen=True)
class DispatchResult:
    """Every enabled channel's outcome, in channel-declaration order."""

    outcomes: Tuple[DeliveryOutcome, ...] = ()

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)


@dataclass(frozen=True)
class HealthCheckResult:
    name: str
    status: HealthStatus
    critical: bool
    detail: Any = None
    latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "critical": self.critical,
            "detail": self.detail,
            "latencyMs": round(self.latency_ms, 2),
        }


@dataclass(frozen=True)
class HealthReport:
    """Aggregated outcome of one health-check invocation."""

    status: HealthStatus
    timestamp: datetime
    response_time_ms: float
    checks: Mapping[str, HealthCheckResult]
    version: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "responseTime": round(self.response_time_ms, 2),
            "checks": {name: result.to_dict() for name, result in self.checks.items()},
            "version": self.version,
        }
