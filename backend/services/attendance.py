import logging
import sqlite3
import time
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

from backend.config import (
    ATTENDANCE_DUPLICATE_COOLDOWN_SECONDS,
    SCAN_TIMEOUT_SECONDS,
    TIMEZONE,
)
from backend.services.clock import epoch_ms, from_epoch_ms
from backend.services.outcomes import (
    AttendanceState,
    EventKind,
    RejectReason,
    Rejection,
    ScanOutcome,
    TransientFailure,
)
from database.db import connect_db, get_day_events, insert_attendance_event

logger = logging.getLogger(__name__)

SCAN_ATTEMPTS = 2
LIMIT_FOR_KIND = {
    EventKind.ENTRADA: RejectReason.ENTRY_LIMIT_REACHED,
    EventKind.SALIDA: RejectReason.EXIT_LIMIT_REACHED,
}


def reference_timezone() -> tzinfo:
    if TIMEZONE.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(TIMEZONE)


def calendar_day_for(moment: datetime) -> str:
    return moment.astimezone(reference_timezone()).date().isoformat()


def daily_state(events: list[dict]) -> AttendanceState:
    kinds = {e["event_kind"] for e in events}
    if EventKind.SALIDA.value in kinds:
        return AttendanceState.CHECKED_OUT
    if EventKind.ENTRADA.value in kinds:
        return AttendanceState.CHECKED_IN
    return AttendanceState.ABSENT


def next_event_kind(
    events: list[dict],
    now: datetime,
    *,
    cooldown_seconds: int | None = None,
) -> EventKind | RejectReason:
    """
    Decide what a scan means given the day's events (ordered by recorded_at).

    Absent -> entrada, CheckedIn -> salida, CheckedOut -> exit limit. A scan
    inside the cooldown after the entrada counts as a repeated check-in.
    """
    cooldown = ATTENDANCE_DUPLICATE_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
    kinds = [e["event_kind"] for e in events]
    has_entrada = EventKind.ENTRADA.value in kinds
    has_salida = EventKind.SALIDA.value in kinds

    if has_entrada and has_salida:
        return RejectReason.EXIT_LIMIT_REACHED

    last = events[-1] if events else None
    if last is None or last["event_kind"] == EventKind.SALIDA.value:
        target = EventKind.ENTRADA
    else:
        target = EventKind.SALIDA

    if target is EventKind.ENTRADA and has_entrada:
        return RejectReason.ENTRY_LIMIT_REACHED
    if target is EventKind.SALIDA and has_salida:
        return RejectReason.EXIT_LIMIT_REACHED

    if target is EventKind.SALIDA and cooldown > 0:
        since_entrada_ms = epoch_ms(now) - int(last["recorded_at_ms"])
        if since_entrada_ms < cooldown * 1000:
            return RejectReason.ENTRY_LIMIT_REACHED

    return target


def _is_lock_timeout(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


def _record_scan_once(
    user_id: str,
    location_id: str,
    now: datetime,
    *,
    qr_code_id: int | None,
    deadline: float,
    cooldown_seconds: int | None,
) -> ScanOutcome:
    timeout = max(0.0, deadline - time.monotonic())
    conn = connect_db(timeout=timeout, autocommit=True)
    try:
        # IMMEDIATE takes the write lock up front so the read and the insert
        # below see the same daily window.
        conn.execute("BEGIN IMMEDIATE")
        calendar_day = calendar_day_for(now)
        events = get_day_events(user_id, calendar_day, conn=conn)
        decision = next_event_kind(events, now, cooldown_seconds=cooldown_seconds)
        if isinstance(decision, RejectReason):
            _rollback(conn)
            return ScanOutcome(rejection=Rejection.of(decision))

        recorded_ms = epoch_ms(now)
        if events:
            recorded_ms = max(recorded_ms, int(events[-1]["recorded_at_ms"]) + 1)
        recorded_at = from_epoch_ms(recorded_ms)

        try:
            insert_attendance_event(
                user_id=user_id,
                location_id=location_id,
                qr_code_id=qr_code_id,
                event_kind=decision.value,
                calendar_day=calendar_day,
                recorded_at=recorded_at.isoformat(),
                recorded_at_ms=recorded_ms,
                conn=conn,
            )
        except sqlite3.IntegrityError as exc:
            _rollback(conn)
            if "UNIQUE" not in str(exc).upper():
                raise
            # A concurrent scan won the slot.
            return ScanOutcome(rejection=Rejection.of(LIMIT_FOR_KIND[decision]))

        if time.monotonic() > deadline:
            _rollback(conn)
            return ScanOutcome(rejection=Rejection.of(RejectReason.TIMEOUT))

        conn.execute("COMMIT")
        return ScanOutcome(event_kind=decision, recorded_at=recorded_at, location_id=location_id)
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


def record_scan(
    user_id: str,
    location_id: str,
    now: datetime,
    *,
    qr_code_id: int | None = None,
    deadline: float | None = None,
    cooldown_seconds: int | None = None,
) -> ScanOutcome:
    """
    Commit the next attendance event for `user_id`, or explain why not.

    Lock waits that outlive the deadline fail closed with TIMEOUT. Other
    storage errors are retried once with a fresh read, then raised as
    `TransientFailure`.
    """
    scan_deadline = deadline if deadline is not None else time.monotonic() + SCAN_TIMEOUT_SECONDS

    last_error: sqlite3.OperationalError | None = None
    for attempt in range(1, SCAN_ATTEMPTS + 1):
        if time.monotonic() > scan_deadline:
            return ScanOutcome(rejection=Rejection.of(RejectReason.TIMEOUT))
        try:
            outcome = _record_scan_once(
                user_id,
                location_id,
                now,
                qr_code_id=qr_code_id,
                deadline=scan_deadline,
                cooldown_seconds=cooldown_seconds,
            )
        except sqlite3.OperationalError as exc:
            if _is_lock_timeout(exc):
                logger.warning("Attendance store lock wait timed out for user %s", user_id)
                return ScanOutcome(rejection=Rejection.of(RejectReason.TIMEOUT))
            last_error = exc
            logger.warning(
                "Attendance insert attempt %s/%s failed for user %s: %s",
                attempt,
                SCAN_ATTEMPTS,
                user_id,
                exc,
            )
            continue

        if outcome.ok:
            logger.info(
                "Recorded %s for user %s at location %s (%s)",
                outcome.event_kind.value,
                user_id,
                location_id,
                outcome.recorded_at.isoformat(),
            )
        else:
            logger.info("Scan by user %s rejected: %s", user_id, outcome.rejection.reason.value)
        return outcome

    raise TransientFailure("Attendance event could not be stored.") from last_error


def get_daily_status(user_id: str, now: datetime) -> dict:
    calendar_day = calendar_day_for(now)
    events = get_day_events(user_id, calendar_day)
    decision = next_event_kind(events, now, cooldown_seconds=0)
    return {
        "calendar_day": calendar_day,
        "state": daily_state(events).value,
        "next_event_kind": decision.value if isinstance(decision, EventKind) else None,
        "events": [
            {
                "event_kind": e["event_kind"],
                "location_id": e["location_id"],
                "recorded_at": e["recorded_at"],
            }
            for e in events
        ],
    }
