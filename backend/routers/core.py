from fastapi import APIRouter

from backend.config import (
    ATTENDANCE_DUPLICATE_COOLDOWN_SECONDS,
    QR_TOKEN_PREFIX,
    QR_VALIDITY_SECONDS,
    SCAN_TIMEOUT_SECONDS,
    TIMEZONE,
)
from backend.services.rotation import rotation_interval_seconds

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/qr")
def qr_config():
    return {
        "token_prefix": QR_TOKEN_PREFIX,
        "validity_seconds": QR_VALIDITY_SECONDS,
        "rotation_interval_seconds": rotation_interval_seconds(),
        "scan_timeout_seconds": SCAN_TIMEOUT_SECONDS,
        "timezone": TIMEZONE,
        "attendance_duplicate_cooldown_seconds": ATTENDANCE_DUPLICATE_COOLDOWN_SECONDS,
    }
