"""Deduplication helpers (core domain)."""

from __future__ import annotations

import hashlib
import json
import re
import threading
import time
from typing import Callable, Optional

from core.models import DeduplicationRecord, NotificationEvent


def _collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def normalize_for_fingerprint(text: str) -> str:
    """Normalize text for deterministic fingerprinting."""

    return _collapse_whitespace(text).lower()


def compute_fingerprint(event: NotificationEvent) -> str:
    """Return a SHA-256 digest of the event's stable fields.

    Metadata (timestamps, request ids, caller) never contributes, so retries
    of the same pipeline result collide on purpose.
    """

    payload = json.dumps(
        {
            "status": event.status.value,
            "repository": event.repository,
            "branch": event.branch,
            "target": event.target,
            "message": normalize_for_fingerprint(event.message),
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _now_ms() -> float:
    return time.time() * 1000


class InMemoryDeduplicationStore:
    """Process-local store satisfying DeduplicationStorePort."""

    def __init__(self, clock: Callable[[], float] = _now_ms) -> None:
        self._clock = clock
        self._records: dict[tuple[str, str], DeduplicationRecord] = {}
        self._lock = threading.Lock()

    def get(self, organization_id: str, fingerprint: str) -> Optional[DeduplicationRecord]:
        with self._lock:
            return self._records.get((organization_id, fingerprint))

    def was_seen_recently(self, organization_id: str, fingerprint: str, window_ms: int) -> bool:
        record = self.get(organization_id, fingerprint)
        if record is None:
            return False
        return self._clock() - record.last_seen < window_ms

    def record(
        self, organization_id: str, fingerprint: str, window_ms: Optional[int] = None
    ) -> DeduplicationRecord:
        """Insert or bump a fingerprint.

        With ``window_ms`` an expired record is restarted instead of bumped.
        """

        with self._lock:
            return self._bump(organization_id, fingerprint, self._clock(), window_ms)

    def check_and_record(self, organization_id: str, fingerprint: str, window_ms: int) -> bool:
        """Return True if seen inside the window; otherwise record it and return False."""

        with self._lock:
            now = self._clock()
            existing = self._records.get((organization_id, fingerprint))
            if existing is not None and now - existing.last_seen < window_ms:
                return True
            self._bump(organization_id, fingerprint, now, window_ms)
            return False

    def _bump(
        self, organization_id: str, fingerprint: str, now: float, window_ms: Optional[int]
    ) -> DeduplicationRecord:
        # Caller holds self._lock.
        key = (organization_id, fingerprint)
        existing = self._records.get(key)
        if existing is None or (window_ms is not None and now - existing.last_seen >= window_ms):
            updated = DeduplicationRecord(organization_id, fingerprint, now, now, 1)
        else:
            updated = DeduplicationRecord(
                organization_id,
                fingerprint,
                existing.first_seen,
                now,
                existing.count + 1,
            )
        self._records[key] = updated
        return updated

    def cleanup(self, max_age_ms: int) -> int:
        """Drop records whose last sighting is older than ``max_age_ms``."""

        with self._lock:
            cutoff = self._clock() - max_age_ms
            stale = [key for key, record in self._records.items() if record.last_seen < cutoff]
            for key in stale:
                del self._records[key]
        return len(stale)

    def ping(self) -> bool:
        return True
