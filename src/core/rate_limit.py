"""Sliding-window request admission, keyed by caller identity.

State lives in process memory and resets on restart. Each identifier keeps
the timestamps (epoch ms) of its admitted requests; a periodic ``sweep``
drops identifiers that have been idle longer than the retention horizon.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from core.models import RateLimitDecision

LOGGER = logging.getLogger(__name__)

DEFAULT_RETENTION_MS = 60 * 60 * 1000


def _now_ms() -> float:
    return time.time() * 1000


class SlidingWindowRateLimiter:
    """In-memory limiter satisfying the RateLimiterPort contract."""

    def __init__(
        self,
        retention_ms: int = DEFAULT_RETENTION_MS,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self._retention_ms = retention_ms
        self._clock = clock
        self._requests: dict[str, list[float]] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._map_lock = threading.Lock()

    def _acquire(self, identifier: str) -> threading.Lock:
        while True:
            with self._map_lock:
                lock = self._key_locks.get(identifier)
                if lock is None:
                    lock = self._key_locks[identifier] = threading.Lock()
            lock.acquire()
            with self._map_lock:
                # A sweep may have retired this lock while we waited for it.
                if self._key_locks.get(identifier) is lock:
                    return lock
            lock.release()

    def admit(self, identifier: str, limit: int, window_ms: int) -> RateLimitDecision:
        """Admit iff fewer than ``limit`` requests were admitted in the window."""

        lock = self._acquire(identifier)
        try:
            now = self._clock()
            window_start = now - window_ms
            with self._map_lock:
                history = self._requests.get(identifier, [])
            recent = [stamp for stamp in history if stamp > window_start]

            if len(recent) >= limit:
                with self._map_lock:
                    self._requests[identifier] = recent
                return RateLimitDecision(
                    allowed=False,
                    count=len(recent),
                    limit=limit,
                    reset_time=min(recent) + window_ms,
                )

            recent.append(now)
            with self._map_lock:
                self._requests[identifier] = recent
            return RateLimitDecision(
                allowed=True,
                count=len(recent),
                limit=limit,
                remaining=limit - len(recent),
            )
        finally:
            lock.release()

    def sweep(self, now: Optional[float] = None) -> int:
        """Forget identifiers idle beyond the retention horizon; return how many."""

        cutoff = (self._clock() if now is None else now) - self._retention_ms
        removed = 0
        with self._map_lock:
            for identifier in list(self._requests):
                lock = self._key_locks.get(identifier)
                # Skip keys with an admission in flight; the next sweep gets them.
                if lock is not None and not lock.acquire(blocking=False):
                    continue
                try:
                    recent = [stamp for stamp in self._requests[identifier] if stamp > cutoff]
                    if recent:
                        self._requests[identifier] = recent
                    else:
                        del self._requests[identifier]
                        self._key_locks.pop(identifier, None)
                        removed += 1
                finally:
                    if lock is not None:
                        lock.release()
        if removed:
            LOGGER.debug("Rate limit sweep removed %s identifiers", removed)
        return removed

    def tracked_identifiers(self) -> int:
        with self._map_lock:
            return len(self._requests)
