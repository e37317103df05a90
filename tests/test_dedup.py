from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from adapters import sqlite_storage
from adapters.sqlite_storage import SQLiteDeduplicationStore
from core.dedup import InMemoryDeduplicationStore, compute_fingerprint, normalize_for_fingerprint
from core.models import NotificationEvent, NotificationMetadata, NotificationStatus


class FakeClock:
    def __init__(self, now: float = 5_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_event(
    message: str = "Deploy finished",
    *,
    status: NotificationStatus = NotificationStatus.SUCCESS,
    request_id: str = "req-1",
    repository: str = "acme/api",
    branch: str = "main",
) -> NotificationEvent:
    return NotificationEvent(
        status=status,
        message=message,
        metadata=NotificationMetadata(
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            request_id=request_id,
            organization_id="acme",
            user_id="u1",
        ),
        repository=repository,
        branch=branch,
    )


def test_normalize_collapses_whitespace_and_case() -> None:
    assert normalize_for_fingerprint("  Build\n\tOK  now ") == "build ok now"


def test_fingerprint_ignores_metadata() -> None:
    first = _make_event(request_id="req-1")
    second = _make_event(request_id="req-2")
    assert compute_fingerprint(first) == compute_fingerprint(second)
    assert len(compute_fingerprint(first)) == 64


def test_fingerprint_ignores_message_case_and_spacing() -> None:
    assert compute_fingerprint(_make_event("Deploy  finished")) == compute_fingerprint(
        _make_event("deploy finished")
    )


def test_fingerprint_differs_on_stable_fields() -> None:
    base = compute_fingerprint(_make_event())
    assert compute_fingerprint(_make_event(branch="dev")) != base
    assert compute_fingerprint(_make_event(repository="acme/web")) != base
    assert compute_fingerprint(_make_event(status=NotificationStatus.INFO)) != base
    assert compute_fingerprint(_make_event("Deploy failed")) != base


def _sqlite_store(tmp_path, clock: FakeClock) -> SQLiteDeduplicationStore:
    store = SQLiteDeduplicationStore(str(tmp_path / "dedup.db"), clock=clock)
    store.init_db()
    return store


@pytest.fixture(params=["memory", "sqlite"])
def store_and_clock(request, tmp_path):
    clock = FakeClock()
    if request.param == "memory":
        return InMemoryDeduplicationStore(clock=clock), clock
    return _sqlite_store(tmp_path, clock), clock


def test_unknown_fingerprint_is_not_recent(store_and_clock) -> None:
    store, _ = store_and_clock
    assert store.get("acme", "fp") is None
    assert not store.was_seen_recently("acme", "fp", 1000)


def test_window_boundaries(store_and_clock) -> None:
    store, clock = store_and_clock
    store.record("acme", "fp", 1000)

    clock.now += 999
    assert store.was_seen_recently("acme", "fp", 1000)

    clock.now += 2
    assert not store.was_seen_recently("acme", "fp", 1000)


def test_records_are_scoped_per_organization(store_and_clock) -> None:
    store, _ = store_and_clock
    store.record("acme", "fp", 1000)
    assert not store.was_seen_recently("other", "fp", 1000)


def test_record_bumps_count_inside_window(store_and_clock) -> None:
    store, clock = store_and_clock
    first = store.record("acme", "fp", 1000)
    clock.now += 500
    second = store.record("acme", "fp", 1000)

    assert first.count == 1
    assert second.count == 2
    assert second.first_seen == first.first_seen
    assert second.last_seen == clock.now


def test_record_restarts_after_window(store_and_clock) -> None:
    store, clock = store_and_clock
    store.record("acme", "fp", 1000)
    clock.now += 1000
    restarted = store.record("acme", "fp", 1000)

    assert restarted.count == 1
    assert restarted.first_seen == clock.now


def test_cleanup_removes_stale_records(store_and_clock) -> None:
    store, clock = store_and_clock
    store.record("acme", "old")
    clock.now += 10_000
    store.record("acme", "fresh")

    assert store.cleanup(5_000) == 1
    assert store.get("acme", "old") is None
    assert store.get("acme", "fresh") is not None


def test_check_and_record_suppresses_inside_window(store_and_clock) -> None:
    store, clock = store_and_clock
    assert store.check_and_record("acme", "fp", 1000) is False
    clock.now += 500
    assert store.check_and_record("acme", "fp", 1000) is True
    assert store.get("acme", "fp").count == 1

    clock.now += 1000
    assert store.check_and_record("acme", "fp", 1000) is False
    assert store.get("acme", "fp").first_seen == clock.now


def test_concurrent_records_are_all_counted(store_and_clock) -> None:
    store, _ = store_and_clock

    def bump(_):
        for _ in range(10):
            store.record("acme", "fp", 1000)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(bump, range(8)))

    assert store.get("acme", "fp").count == 80


def test_concurrent_check_and_record_lets_one_through(store_and_clock) -> None:
    store, _ = store_and_clock

    with ThreadPoolExecutor(max_workers=8) as pool:
        seen = list(pool.map(lambda _: store.check_and_record("acme", "fp", 60_000), range(40)))

    assert seen.count(False) == 1
    assert store.get("acme", "fp").count == 1


def test_sqlite_connections_are_closed(tmp_path, monkeypatch) -> None:
    opened = []
    real_connect = sqlite3.connect

    def tracking_connect(*args, **kwargs):
        conn = real_connect(*args, **kwargs)
        opened.append(conn)
        return conn

    monkeypatch.setattr(sqlite_storage.sqlite3, "connect", tracking_connect)
    clock = FakeClock()
    store = _sqlite_store(tmp_path, clock)
    store.record("acme", "fp", 1000)
    store.check_and_record("acme", "fp", 1000)
    store.was_seen_recently("acme", "fp", 1000)
    store.get("acme", "fp")
    store.cleanup(1000)
    store.ping()

    assert len(opened) == 7
    for conn in opened:
        with pytest.raises(sqlite3.ProgrammingError):
            conn.execute("SELECT 1")


def test_ping(store_and_clock) -> None:
    store, _ = store_and_clock
    assert store.ping() is True


def test_sqlite_history_survives_new_instance(tmp_path) -> None:
    clock = FakeClock()
    _sqlite_store(tmp_path, clock).record("acme", "fp", 1000)
    reopened = _sqlite_store(tmp_path, clock)
    assert reopened.was_seen_recently("acme", "fp", 1000)
