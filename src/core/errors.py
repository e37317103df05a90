"""Error taxonomy for the notification pipeline.

Authentication and validation errors end a request. Channel and probe
failures are folded into aggregate results by their components and only
surface as exceptions inside those components.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from core.models import RateLimitDecision


class BeaconError(Exception):
    """Base class for every error raised by beacon."""


class AuthenticationError(BeaconError):
    """The caller could not be authenticated."""

    reason = "authentication failed"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.reason)


class MalformedCredential(AuthenticationError):
    reason = "invalid authorization format"


class Unauthorized(AuthenticationError):
    reason = "invalid token"


class Expired(AuthenticationError):
    reason = "token expired"


class RateLimited(BeaconError):
    """Admission was refused by the rate limiter."""

    def __init__(self, identifier: str, decision: "RateLimitDecision") -> None:
        super().__init__(f"Rate limit exceeded for {identifier}")
        self.identifier = identifier
        self.decision = decision


class ValidationError(BeaconError):
    """A request is missing required fields or carries invalid values."""


class ConfigError(BeaconError):
    """Configuration could not be parsed into the expected shape."""


class ChannelDeliveryFailure(BeaconError):
    """A single channel failed to deliver; never escapes the dispatcher."""

    def __init__(self, channel_id: str, message: str) -> None:
        super().__init__(message)
        self.channel_id = channel_id


class ProbeFailure(BeaconError):
    """A health probe failed to produce a result."""


class InternalError(BeaconError):
    """Unexpected failure inside the pipeline."""
