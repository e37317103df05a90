"""SQLite deduplication store.

Implements the core DeduplicationStorePort using a simple SQLite database so
recent-notification history survives restarts on a single instance.
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from core.errors import InternalError
from core.models import DeduplicationRecord

# Expired rows (window >= 0 and last_seen outside it) restart at count 1.
_UPSERT_SQL = """
    INSERT INTO dedup_records (organization_id, fingerprint, first_seen, last_seen, count)
    VALUES (:org, :fp, :now, :now, 1)
    ON CONFLICT(organization_id, fingerprint) DO UPDATE SET
        first_seen = CASE
            WHEN :window >= 0 AND :now - dedup_records.last_seen >= :window THEN :now
            ELSE dedup_records.first_seen
        END,
        count = CASE
            WHEN :window >= 0 AND :now - dedup_records.last_seen >= :window THEN 1
            ELSE dedup_records.count + 1
        END,
        last_seen = :now
"""

_SELECT_SQL = """
    SELECT organization_id, fingerprint, first_seen, last_seen, count
    FROM dedup_records
    WHERE organization_id = ? AND fingerprint = ?
"""

_RECENT_SQL = """
    SELECT 1 FROM dedup_records
    WHERE organization_id = ? AND fingerprint = ? AND last_seen > ?
"""


def _now_ms() -> float:
    return time.time() * 1000


def _to_record(row: Optional[sqlite3.Row]) -> Optional[DeduplicationRecord]:
    if row is None:
        return None
    return DeduplicationRecord(
        organization_id=row["organization_id"],
        fingerprint=row["fingerprint"],
        first_seen=float(row["first_seen"]),
        last_seen=float(row["last_seen"]),
        count=int(row["count"]),
    )


class SQLiteDeduplicationStore:
    """Thin SQLite wrapper that satisfies the DeduplicationStorePort contract."""

    def __init__(self, db_path: str, clock: Callable[[], float] = _now_ms) -> None:
        self._db_path = db_path
        self._clock = clock

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on error, always close."""

        conn = self._open()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the database write lock from the first read to the commit."""

        conn = self._open()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - dedup_records: one row per (organization, fingerprint)
        """

        with self._connection() as conn:
            # Fields:
            # - organization_id: owning organization, part of the key
            # - fingerprint: SHA-256 of the event's stable fields
            # - first_seen / last_seen: epoch milliseconds
            # - count: deliveries recorded since first_seen (>= 1)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS dedup_records (
                    organization_id TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    first_seen REAL NOT NULL,
                    last_seen REAL NOT NULL,
                    count INTEGER NOT NULL DEFAULT 1,
                    PRIMARY KEY (organization_id, fingerprint)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_dedup_last_seen ON dedup_records (last_seen)"
            )

    def get(self, organization_id: str, fingerprint: str) -> Optional[DeduplicationRecord]:
        with self._connection() as conn:
            row = conn.execute(_SELECT_SQL, (organization_id, fingerprint)).fetchone()
        return _to_record(row)

    def was_seen_recently(self, organization_id: str, fingerprint: str, window_ms: int) -> bool:
        """Check for a record whose last sighting is inside the window."""

        cutoff = self._clock() - window_ms
        with self._connection() as conn:
            row = conn.execute(_RECENT_SQL, (organization_id, fingerprint, cutoff)).fetchone()
        return row is not None

    def record(
        self, organization_id: str, fingerprint: str, window_ms: Optional[int] = None
    ) -> DeduplicationRecord:
        """Upsert a fingerprint in one statement; expired rows restart at count 1."""

        params = {
            "org": organization_id,
            "fp": fingerprint,
            "now": self._clock(),
            "window": -1 if window_ms is None else window_ms,
        }
        with self._write_transaction() as conn:
            conn.execute(_UPSERT_SQL, params)
            row = conn.execute(_SELECT_SQL, (organization_id, fingerprint)).fetchone()
        record = _to_record(row)
        if record is None:
            raise InternalError(f"dedup record for {organization_id} vanished after upsert")
        return record

    def check_and_record(self, organization_id: str, fingerprint: str, window_ms: int) -> bool:
        """Return True if seen inside the window; otherwise record it and return False."""

        now = self._clock()
        with self._write_transaction() as conn:
            row = conn.execute(_RECENT_SQL, (organization_id, fingerprint, now - window_ms)).fetchone()
            if row is not None:
                return True
            conn.execute(
                _UPSERT_SQL,
                {"org": organization_id, "fp": fingerprint, "now": now, "window": window_ms},
            )
        return False

    def cleanup(self, max_age_ms: int) -> int:
        """Delete old fingerprints and return the number removed."""

        cutoff = self._clock() - max_age_ms
        with self._connection() as conn:
            cur = conn.execute("DELETE FROM dedup_records WHERE last_seen < ?", (cutoff,))
            return cur.rowcount

    def ping(self) -> bool:
        with self._connection() as conn:
            conn.execute("SELECT 1 FROM dedup_records LIMIT 1").fetchall()
        return True
