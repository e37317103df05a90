"""Core notification processing pipeline.

This module is transport-agnostic. It only relies on ports for admission,
configuration, evaluation and delivery, enabling other frontends (queues,
CLI replays) without changes here.

The pipeline enforces a strict order:
1) Authenticate the bearer credential
2) Admit the caller through the rate limiter
3) Validate the body and build an immutable NotificationEvent
4) Load the organization's configuration
5) Evaluate suppression rules (fail open)
6) Fan out to the enabled channels if permitted
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from core.auth import TokenValidator
from core.config import OrganizationConfig, RateLimitConfig
from core.dispatcher import ChannelDispatcher
from core.errors import RateLimited, ValidationError
from core.models import (
    DispatchResult,
    Identity,
    NotificationEvent,
    NotificationMetadata,
    NotificationStatus,
    RateLimitDecision,
    RequestInfo,
    RuleDecision,
)
from core.ports import ConfigProviderPort, EvaluatorPort, RateLimiterPort

LOGGER = logging.getLogger(__name__)

_VALID_STATUSES = ", ".join(status.value for status in NotificationStatus)
_OPTIONAL_TEXT_FIELDS = ("title", "details", "repository", "branch", "target", "workflow_url")


@dataclass(frozen=True)
class ProcessingResult:
    event: NotificationEvent
    decision: RuleDecision
    dispatch: DispatchResult
    config: OrganizationConfig
    processing_time_ms: float

    @property
    def notified(self) -> bool:
        return self.decision.notify


def build_event(body: Any, identity: Identity, request: RequestInfo) -> NotificationEvent:
    """Validate a request body and build the event it describes."""

    if not isinstance(body, Mapping):
        raise ValidationError("Request body must be a JSON object")

    status = body.get("status")
    message = body.get("message")
    if not status or not isinstance(message, str) or not message.strip():
        raise ValidationError("Missing required fields: status, message")
    try:
        parsed_status = NotificationStatus(status)
    except ValueError:
        raise ValidationError(f"Invalid status. Must be: {_VALID_STATUSES}") from None

    optional: dict[str, str] = {}
    for name in _OPTIONAL_TEXT_FIELDS:
        value = body.get(name)
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise ValidationError(f"Field '{name}' must be a string")
        optional[name] = value

    context = body.get("context")
    if context is None:
        context = {}
    if not isinstance(context, Mapping):
        raise ValidationError("Field 'context' must be an object")

    return NotificationEvent(
        status=parsed_status,
        message=message,
        title=optional["title"],
        details=optional["details"],
        repository=optional["repository"],
        branch=optional["branch"],
        target=optional["target"],
        source_url=optional["workflow_url"],
        context=context,
        metadata=NotificationMetadata(
            timestamp=datetime.now(timezone.utc),
            request_id=request.request_id,
            organization_id=identity.organization_id,
            user_id=identity.user_id,
            source="api",
        ),
    )


class NotificationProcessor:
    """Orchestrates authentication, admission, evaluation and dispatch."""

    def __init__(
        self,
        validator: TokenValidator,
        rate_limiter: RateLimiterPort,
        config_provider: ConfigProviderPort,
        evaluator: EvaluatorPort,
        dispatcher: ChannelDispatcher,
        rate_limit: RateLimitConfig = RateLimitConfig(),
        dispatch_deadline_ms: Optional[int] = None,
    ) -> None:
        self._validator = validator
        self._rate_limiter = rate_limiter
        self._config_provider = config_provider
        self._evaluator = evaluator
        self._dispatcher = dispatcher
        self._rate_limit = rate_limit
        self._deadline_s = dispatch_deadline_ms / 1000 if dispatch_deadline_ms else None

    @property
    def dispatcher(self) -> ChannelDispatcher:
        return self._dispatcher

    def authenticate(self, authorization: Optional[str]) -> Identity:
        return self._validator.validate(authorization)

    def admit(self, identity: Identity) -> RateLimitDecision:
        # Admission is never rolled back, even if dispatch fails later on.
        identifier = f"{identity.organization_id}:{identity.user_id}"
        decision = self._rate_limiter.admit(identifier, self._rate_limit.limit, self._rate_limit.window_ms)
        if not decision.allowed:
            LOGGER.warning("Rate limit exceeded for %s (%s requests)", identifier, decision.count)
            raise RateLimited(identifier, decision)
        return decision

    async def handle(
        self,
        authorization: Optional[str],
        body: Any,
        request: RequestInfo,
    ) -> ProcessingResult:
        """Process one inbound notification request through the pipeline."""

        started = time.perf_counter()
        identity = self.authenticate(authorization)
        self.admit(identity)
        event = build_event(body, identity, request)

        config = self._config_provider.get_organization_config(identity.organization_id)
        try:
            decision = await asyncio.to_thread(self._evaluator.evaluate, event, config)
        except Exception as exc:
            decision = RuleDecision(notify=True, reason="evaluator raised, failing open", error=exc)
        if decision.error is not None:
            LOGGER.warning(
                "Evaluation error for request %s, notifying anyway: %s",
                request.request_id,
                decision.error,
            )
        LOGGER.info(
            "Evaluation completed: notify=%s reason=%s config_version=%s",
            decision.notify,
            decision.reason,
            config.version,
        )

        dispatch = DispatchResult(outcomes=())
        if decision.notify:
            dispatch = await self._dispatcher.dispatch(event, config.channels, deadline=self._deadline_s)

        processing_time_ms = (time.perf_counter() - started) * 1000
        LOGGER.info(
            "Usage: org=%s repository=%s status=%s notified=%s delivered=%s failed=%s time_ms=%.1f",
            identity.organization_id,
            event.repository or "-",
            event.status.value,
            decision.notify,
            dispatch.success_count,
            dispatch.failure_count,
            processing_time_ms,
        )
        return ProcessingResult(
            event=event,
            decision=decision,
            dispatch=dispatch,
            config=config,
            processing_time_ms=processing_time_ms,
        )
