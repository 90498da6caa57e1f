import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("NOMIA_DB_PATH", BASE_DIR / "database" / "nomia.db"))
ADMIN_USERNAME = os.getenv("NOMIA_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("NOMIA_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("NOMIA_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("NOMIA_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("NOMIA_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("NOMIA_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("NOMIA_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("NOMIA_CORS_ALLOW_CREDENTIALS"), True)

LOG_LEVEL = (os.getenv("NOMIA_LOG_LEVEL", "INFO").strip() or "INFO").upper()

# QR token protocol
QR_SIGNING_SECRET = (
    os.getenv("NOMIA_QR_SIGNING_SECRET", "").strip()
    or secrets.token_urlsafe(32)
)
QR_SIGNING_SECRET_PREVIOUS = _parse_csv(os.getenv("NOMIA_QR_SIGNING_SECRET_PREVIOUS"), [])
QR_TOKEN_PREFIX = os.getenv("NOMIA_QR_TOKEN_PREFIX", "nomia").strip() or "nomia"
QR_VALIDITY_SECONDS = _parse_int(os.getenv("NOMIA_QR_VALIDITY_SECONDS"), 30, minimum=1)
QR_ROTATION_LEAD_SECONDS = _parse_int(os.getenv("NOMIA_QR_ROTATION_LEAD_SECONDS"), 5)
ROTATION_LOCATIONS = _parse_csv(os.getenv("NOMIA_ROTATION_LOCATIONS"), [])

# Scan handling
SCAN_TIMEOUT_SECONDS = float(os.getenv("NOMIA_SCAN_TIMEOUT_SECONDS", "5"))
TIMEZONE = os.getenv("NOMIA_TIMEZONE", "UTC").strip() or "UTC"
ATTENDANCE_DUPLICATE_COOLDOWN_SECONDS = _parse_int(
    os.getenv("NOMIA_ATTENDANCE_DUPLICATE_COOLDOWN_SECONDS"),
    900,
)

# Repeated cryptographic/provenance rejections from one identity
SECURITY_ALERT_THRESHOLD = _parse_int(os.getenv("NOMIA_SECURITY_ALERT_THRESHOLD"), 3, minimum=1)
SECURITY_ALERT_WINDOW_SECONDS = _parse_int(os.getenv("NOMIA_SECURITY_ALERT_WINDOW_SECONDS"), 300, minimum=1)
