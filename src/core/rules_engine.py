"""Notification suppression rules (core domain).

The evaluator is rule-based: it decides whether an event reaches any channel
at all. Anything implementing ``EvaluatorPort`` can replace it.
"""

from __future__ import annotations

import logging

from core.config import OrganizationConfig
from core.dedup import compute_fingerprint
from core.models import NotificationEvent, NotificationStatus, RuleDecision
from core.ports import DeduplicationStorePort

LOGGER = logging.getLogger(__name__)


class RuleEvaluator:
    """Applies the suppression policy in priority order.

    1. ``error`` events always notify, duplicates included.
    2. ``success`` events are suppressed when deduplication is enabled and an
       equivalent event was delivered inside the window; otherwise they
       notify. The check and the record happen in one store call, and
       nothing is written while deduplication is disabled.
    3. Everything else notifies.

    Internal failures fail open: the event is delivered and the error is
    handed back in the decision for the caller to log.
    """

    def __init__(self, store: DeduplicationStorePort) -> None:
        self._store = store

    def should_notify(self, event: NotificationEvent, config: OrganizationConfig) -> bool:
        return self.evaluate(event, config).notify

    def evaluate(self, event: NotificationEvent, config: OrganizationConfig) -> RuleDecision:
        if event.status is NotificationStatus.ERROR:
            return RuleDecision(notify=True, reason="errors are always delivered")

        if event.status is not NotificationStatus.SUCCESS:
            return RuleDecision(notify=True, reason=f"{event.status.value} delivered by default")

        dedup = config.deduplication
        fingerprint = None
        try:
            fingerprint = compute_fingerprint(event)
            org = event.metadata.organization_id
            if not dedup.enabled:
                return RuleDecision(notify=True, reason="deduplication disabled", fingerprint=fingerprint)
            if self._store.check_and_record(org, fingerprint, dedup.window_ms):
                LOGGER.info("Dedup skip for %s (fingerprint %s)", org, fingerprint[:12])
                return RuleDecision(
                    notify=False,
                    reason="duplicate within deduplication window",
                    fingerprint=fingerprint,
                )
        except Exception as exc:
            LOGGER.warning("Rule evaluation failed, defaulting to send: %s", exc)
            return RuleDecision(
                notify=True,
                reason="evaluation failed, failing open",
                fingerprint=fingerprint,
                error=exc,
            )
        return RuleDecision(notify=True, reason="no recent duplicate", fingerprint=fingerprint)
