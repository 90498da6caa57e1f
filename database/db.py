import hashlib
import hmac
import secrets
import sqlite3
from typing import Any

from backend.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
    SCAN_TIMEOUT_SECONDS,
)


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db(*, timeout: float | None = None, autocommit: bool = False):
    """
    Open a new connection to the attendance store.

    `timeout` bounds how long a writer waits on the sqlite lock; with
    `autocommit=True` the caller drives transactions explicitly
    (`BEGIN IMMEDIATE` ... `COMMIT`).
    """
    busy_timeout = SCAN_TIMEOUT_SECONDS if timeout is None else timeout
    conn = sqlite3.connect(
        str(DB_PATH),
        timeout=busy_timeout,
        check_same_thread=False,
        isolation_level=None if autocommit else "",
    )
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (username, password_hash, role)
        VALUES (?, ?, 'admin')
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('admin', 'user')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS locations (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        owner_username TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    # Issued QR tokens. A row is the proof that the issuer minted the token.
    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS qr_codes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        nonce TEXT NOT NULL UNIQUE,
        location_id TEXT NOT NULL,
        code TEXT NOT NULL UNIQUE,
        signature TEXT NOT NULL UNIQUE,
        expires_at_ms INTEGER NOT NULL,
        created_by TEXT NOT NULL,
        revoked_at TIMESTAMP,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (location_id) REFERENCES locations(id) ON DELETE CASCADE
    )
    """
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_qr_codes_expires_at ON qr_codes(expires_at_ms)"
    )

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS attendance_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        location_id TEXT NOT NULL,
        qr_code_id INTEGER,
        event_kind TEXT NOT NULL CHECK (event_kind IN ('entrada', 'salida')),
        calendar_day TEXT NOT NULL,      -- YYYY-MM-DD in the reference time zone
        recorded_at TEXT NOT NULL,       -- ISO-8601 UTC
        recorded_at_ms INTEGER NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (location_id) REFERENCES locations(id),
        FOREIGN KEY (qr_code_id) REFERENCES qr_codes(id),
        UNIQUE(user_id, calendar_day, event_kind)
    )
    """
    )
    cursor.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_attendance_events_user_day
        ON attendance_events(user_id, calendar_day, recorded_at_ms)
        """
    )

    # Attendance events are the audit trail.
    cursor.execute(
        """
    CREATE TRIGGER IF NOT EXISTS attendance_events_no_update
    BEFORE UPDATE ON attendance_events
    BEGIN
        SELECT RAISE(ABORT, 'attendance events are immutable');
    END
    """
    )
    cursor.execute(
        """
    CREATE TRIGGER IF NOT EXISTS attendance_events_no_delete
    BEFORE DELETE ON attendance_events
    BEGIN
        SELECT RAISE(ABORT, 'attendance events are immutable');
    END
    """
    )

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Users
# -----------------------------
def create_user(username: str, password: str, *, role: str = "user") -> int:
    clean_username = username.strip()
    if not clean_username or not password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO users (username, password_hash, role)
            VALUES (?, ?, ?)
            """,
            (clean_username, _hash_password(password), role),
        )
        user_id = int(cur.lastrowid)
        conn.commit()
        return user_id
    finally:
        conn.close()


def verify_user_credentials(username: str, password: str) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash, role
        FROM users
        WHERE username = ? COLLATE NOCASE
        LIMIT 1
        """,
        (username.strip(),),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None
    if not _verify_password(password, str(row[2])):
        return None
    return {
        "id": int(row[0]),
        "username": str(row[1]),
        "role": str(row[3]),
    }


# -----------------------------
# Locations
# -----------------------------
def create_location(location_id: str, name: str, owner_username: str) -> dict:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO locations (id, name, owner_username)
            VALUES (?, ?, ?)
            """,
            (location_id, name, owner_username),
        )
        conn.commit()
    finally:
        conn.close()
    return {
        "id": location_id,
        "name": name,
        "owner_username": owner_username,
        "is_active": True,
    }


def get_location(location_id: str, *, conn: sqlite3.Connection | None = None) -> dict | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT id, name, owner_username, is_active
            FROM locations
            WHERE id = ?
            """,
            (location_id,),
        )
        row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()

    if not row:
        return None
    return {
        "id": str(row[0]),
        "name": str(row[1]),
        "owner_username": str(row[2]),
        "is_active": bool(row[3]),
    }


def get_active_locations() -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, name, owner_username
        FROM locations
        WHERE is_active = 1
        ORDER BY name
        """
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {"id": r[0], "name": r[1], "owner_username": r[2]}
        for r in rows
    ]


# -----------------------------
# QR tokens
# -----------------------------
def insert_qr_code(
    *,
    nonce: str,
    location_id: str,
    code: str,
    signature: str,
    expires_at_ms: int,
    created_by: str,
    conn: sqlite3.Connection | None = None,
) -> int:
    """
    Persist an issued token and return `qr_codes.id`.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO qr_codes (
                nonce,
                location_id,
                code,
                signature,
                expires_at_ms,
                created_by
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (nonce, location_id, code, signature, expires_at_ms, created_by),
        )
        qr_code_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return qr_code_id
    finally:
        if owns_conn:
            active_conn.close()


def find_live_qr_code(
    *,
    nonce: str,
    signature: str,
    now_ms: int,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """
    Look up a stored, non-revoked token that is still inside its validity window.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT id, location_id, expires_at_ms
            FROM qr_codes
            WHERE nonce = ?
              AND signature = ?
              AND revoked_at IS NULL
              AND expires_at_ms >= ?
            LIMIT 1
            """,
            (nonce, signature, now_ms),
        )
        row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()

    if not row:
        return None
    return {
        "id": int(row[0]),
        "location_id": str(row[1]),
        "expires_at_ms": int(row[2]),
    }


def revoke_qr_code(*, nonce: str, location_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            UPDATE qr_codes
            SET revoked_at = CURRENT_TIMESTAMP
            WHERE nonce = ?
              AND location_id = ?
              AND revoked_at IS NULL
            """,
            (nonce, location_id),
        )
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()


# -----------------------------
# Attendance events
# -----------------------------
def get_day_events(
    user_id: str,
    calendar_day: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> list[dict[str, Any]]:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT id, event_kind, location_id, qr_code_id, recorded_at, recorded_at_ms
            FROM attendance_events
            WHERE user_id = ? AND calendar_day = ?
            ORDER BY recorded_at_ms ASC, id ASC
            """,
            (user_id, calendar_day),
        )
        rows = cur.fetchall()
    finally:
        if owns_conn:
            active_conn.close()

    return [
        {
            "id": int(r[0]),
            "event_kind": str(r[1]),
            "location_id": str(r[2]),
            "qr_code_id": r[3],
            "recorded_at": str(r[4]),
            "recorded_at_ms": int(r[5]),
        }
        for r in rows
    ]


def insert_attendance_event(
    *,
    user_id: str,
    location_id: str,
    qr_code_id: int | None,
    event_kind: str,
    calendar_day: str,
    recorded_at: str,
    recorded_at_ms: int,
    conn: sqlite3.Connection,
) -> int:
    """
    Insert one attendance event inside the caller's transaction.

    Raises `sqlite3.IntegrityError` when the (user, day, kind) slot is taken.
    """
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO attendance_events (
            user_id,
            location_id,
            qr_code_id,
            event_kind,
            calendar_day,
            recorded_at,
            recorded_at_ms
        )
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            location_id,
            qr_code_id,
            event_kind,
            calendar_day,
            recorded_at,
            recorded_at_ms,
        ),
    )
    return int(cur.lastrowid)
