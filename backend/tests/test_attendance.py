import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

import database.db as db
from backend.services import attendance
from backend.services.attendance import (
    calendar_day_for,
    get_daily_status,
    next_event_kind,
    record_scan,
)
from backend.services.clock import epoch_ms
from backend.services.outcomes import EventKind, RejectReason, TransientFailure

T0 = datetime(2026, 3, 2, 8, 50, 0, tzinfo=timezone.utc)


def _event(kind: str, at: datetime) -> dict:
    return {"event_kind": kind, "recorded_at_ms": epoch_ms(at)}


def _count_events(user_id: str, kind: str) -> int:
    conn = db.connect_db()
    (count,) = conn.execute(
        "SELECT COUNT(*) FROM attendance_events WHERE user_id = ? AND event_kind = ?",
        (user_id, kind),
    ).fetchone()
    conn.close()
    return count


# -----------------------------
# Transition function
# -----------------------------
def test_next_event_kind_walks_the_daily_window():
    assert next_event_kind([], T0) is EventKind.ENTRADA

    checked_in = [_event("entrada", T0)]
    assert next_event_kind(checked_in, T0 + timedelta(hours=8)) is EventKind.SALIDA

    checked_out = checked_in + [_event("salida", T0 + timedelta(hours=8))]
    assert next_event_kind(checked_out, T0 + timedelta(hours=9)) is RejectReason.EXIT_LIMIT_REACHED


def test_next_event_kind_treats_quick_repeat_as_repeated_entry():
    checked_in = [_event("entrada", T0)]

    assert (
        next_event_kind(checked_in, T0 + timedelta(minutes=5), cooldown_seconds=900)
        is RejectReason.ENTRY_LIMIT_REACHED
    )
    assert next_event_kind(checked_in, T0 + timedelta(minutes=15), cooldown_seconds=900) is EventKind.SALIDA
    assert next_event_kind(checked_in, T0 + timedelta(seconds=1), cooldown_seconds=0) is EventKind.SALIDA


def test_calendar_day_follows_reference_timezone(monkeypatch):
    late_evening_utc = datetime(2026, 3, 3, 2, 0, tzinfo=timezone.utc)
    assert calendar_day_for(late_evening_utc) == "2026-03-03"

    monkeypatch.setattr(attendance, "TIMEZONE", "Etc/GMT+6")
    assert calendar_day_for(late_evening_utc) == "2026-03-02"


# -----------------------------
# record_scan
# -----------------------------
def test_first_scan_of_the_day_is_entrada(location):
    outcome = record_scan("ana", "hq", T0)

    assert outcome.ok
    assert outcome.event_kind is EventKind.ENTRADA
    assert outcome.recorded_at == T0
    assert outcome.location_id == "hq"
    assert _count_events("ana", "entrada") == 1


def test_repeat_scan_within_minutes_is_entry_limit(location):
    assert record_scan("ana", "hq", T0).event_kind is EventKind.ENTRADA

    outcome = record_scan("ana", "hq", T0 + timedelta(minutes=5))

    assert not outcome.ok
    assert outcome.rejection.reason is RejectReason.ENTRY_LIMIT_REACHED
    assert _count_events("ana", "salida") == 0


def test_full_day_then_exit_limit(location):
    assert record_scan("ana", "hq", T0).event_kind is EventKind.ENTRADA

    salida = record_scan("ana", "hq", datetime(2026, 3, 2, 17, 30, tzinfo=timezone.utc))
    assert salida.event_kind is EventKind.SALIDA

    third = record_scan("ana", "hq", datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc))
    assert third.rejection.reason is RejectReason.EXIT_LIMIT_REACHED
    assert _count_events("ana", "entrada") == 1
    assert _count_events("ana", "salida") == 1


def test_new_day_starts_absent(location):
    record_scan("ana", "hq", T0)
    record_scan("ana", "hq", T0 + timedelta(hours=8))

    outcome = record_scan("ana", "hq", T0 + timedelta(days=1))

    assert outcome.event_kind is EventKind.ENTRADA


def test_users_do_not_share_daily_windows(location):
    assert record_scan("ana", "hq", T0).event_kind is EventKind.ENTRADA
    assert record_scan("luis", "hq", T0).event_kind is EventKind.ENTRADA


def test_salida_is_never_recorded_before_entrada(location):
    record_scan("ana", "hq", T0, cooldown_seconds=0)

    # Clock skew: the second scan carries an earlier timestamp.
    outcome = record_scan("ana", "hq", T0 - timedelta(seconds=2), cooldown_seconds=0)

    assert outcome.event_kind is EventKind.SALIDA
    assert outcome.recorded_at > T0


def test_concurrent_scans_record_a_single_entrada(location):
    workers = 8
    barrier = threading.Barrier(workers)
    results = []
    results_lock = threading.Lock()

    def scan():
        barrier.wait()
        outcome = record_scan("ana", "hq", T0)
        with results_lock:
            results.append(outcome)

    threads = [threading.Thread(target=scan) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    accepted = [r for r in results if r.ok]
    rejected = [r for r in results if not r.ok]
    assert len(accepted) == 1
    assert accepted[0].event_kind is EventKind.ENTRADA
    assert {r.rejection.reason for r in rejected} == {RejectReason.ENTRY_LIMIT_REACHED}
    assert _count_events("ana", "entrada") == 1
    assert _count_events("ana", "salida") == 0


def test_concurrent_scans_without_cooldown_never_duplicate_kinds(location):
    workers = 6
    barrier = threading.Barrier(workers)

    def scan():
        barrier.wait()
        record_scan("ana", "hq", T0, cooldown_seconds=0)

    threads = [threading.Thread(target=scan) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert _count_events("ana", "entrada") == 1
    assert _count_events("ana", "salida") == 1


def test_unique_constraint_resolves_a_lost_race(location, monkeypatch):
    record_scan("ana", "hq", T0)

    # A stale read makes the state machine believe the day is still empty.
    monkeypatch.setattr(attendance, "get_day_events", lambda *args, **kwargs: [])
    outcome = record_scan("ana", "hq", T0 + timedelta(seconds=1))

    assert outcome.rejection.reason is RejectReason.ENTRY_LIMIT_REACHED
    assert _count_events("ana", "entrada") == 1


def test_storage_error_is_retried_once(location, monkeypatch):
    real_insert = attendance.insert_attendance_event
    calls = []

    def flaky_insert(**kwargs):
        calls.append(kwargs["event_kind"])
        if len(calls) == 1:
            raise sqlite3.OperationalError("disk I/O error")
        return real_insert(**kwargs)

    monkeypatch.setattr(attendance, "insert_attendance_event", flaky_insert)

    outcome = record_scan("ana", "hq", T0)

    assert outcome.event_kind is EventKind.ENTRADA
    assert calls == ["entrada", "entrada"]
    assert _count_events("ana", "entrada") == 1


def test_persistent_storage_error_raises_transient_failure(location, monkeypatch):
    def broken_insert(**kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(attendance, "insert_attendance_event", broken_insert)

    with pytest.raises(TransientFailure):
        record_scan("ana", "hq", T0)
    assert _count_events("ana", "entrada") == 0


def test_lock_wait_fails_closed_with_timeout(location, monkeypatch):
    def locked_insert(**kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(attendance, "insert_attendance_event", locked_insert)

    outcome = record_scan("ana", "hq", T0)

    assert outcome.rejection.reason is RejectReason.TIMEOUT
    assert _count_events("ana", "entrada") == 0


def test_expired_deadline_returns_timeout_without_writing(location):
    outcome = record_scan("ana", "hq", T0, deadline=time.monotonic() - 1)

    assert outcome.rejection.reason is RejectReason.TIMEOUT
    assert _count_events("ana", "entrada") == 0


def test_held_write_lock_times_out(location):
    blocker = db.connect_db(autocommit=True)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        outcome = record_scan("ana", "hq", T0, deadline=time.monotonic() + 0.2)
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert outcome.rejection.reason is RejectReason.TIMEOUT
    assert _count_events("ana", "entrada") == 0


def test_attendance_events_are_immutable(location):
    record_scan("ana", "hq", T0)
    conn = db.connect_db()
    try:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("UPDATE attendance_events SET event_kind = 'salida'")
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM attendance_events")
    finally:
        conn.close()
    assert _count_events("ana", "entrada") == 1


# -----------------------------
# Daily status
# -----------------------------
def test_daily_status_reports_state_and_next_kind(location):
    status = get_daily_status("ana", T0)
    assert status["state"] == "absent"
    assert status["next_event_kind"] == "entrada"
    assert status["calendar_day"] == "2026-03-02"
    assert status["events"] == []

    record_scan("ana", "hq", T0)
    status = get_daily_status("ana", T0 + timedelta(minutes=1))
    assert status["state"] == "checked_in"
    assert status["next_event_kind"] == "salida"
    assert [e["event_kind"] for e in status["events"]] == ["entrada"]

    record_scan("ana", "hq", T0 + timedelta(hours=8))
    status = get_daily_status("ana", T0 + timedelta(hours=9))
    assert status["state"] == "checked_out"
    assert status["next_event_kind"] is None
