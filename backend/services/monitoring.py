import logging
import threading
import time

from backend.config import SECURITY_ALERT_THRESHOLD, SECURITY_ALERT_WINDOW_SECONDS
from backend.services.outcomes import RejectReason, Rejection

logger = logging.getLogger(__name__)

SECURITY_REASONS = {RejectReason.BAD_SIGNATURE, RejectReason.NOT_FOUND}

MONITOR_LOCK = threading.Lock()
_SECURITY_REJECTIONS: dict[str, list[float]] = {}


def _prune(entries: list[float], now: float) -> list[float]:
    return [t for t in entries if now - t <= SECURITY_ALERT_WINDOW_SECONDS]


def record_rejection(user_id: str, rejection: Rejection, *, nonce: str | None = None) -> bool:
    """
    Log a rejected scan at the severity of its category.

    Returns True when the rejection pushes the caller over the repeated
    cryptographic/provenance rejection threshold.
    """
    reason = rejection.reason
    if reason is RejectReason.BAD_SIGNATURE:
        logger.warning("Invalid QR signature submitted by user %s", user_id)
    elif reason is RejectReason.NOT_FOUND:
        logger.error(
            "QR token not found in issuer store (user=%s nonce=%s)",
            user_id,
            nonce or "-",
        )
    elif reason is RejectReason.EXPIRED:
        logger.info("Expired QR used by user %s: %s", user_id, rejection.message)
    elif reason is RejectReason.TIMEOUT:
        logger.warning("Scan by user %s timed out", user_id)
    elif reason is RejectReason.TRANSIENT_FAILURE:
        logger.error("Scan by user %s failed on infrastructure", user_id)
    else:
        logger.info("Scan by user %s rejected: %s", user_id, reason.value)

    if reason not in SECURITY_REASONS:
        return False

    now = time.monotonic()
    with MONITOR_LOCK:
        for key in [k for k, v in _SECURITY_REJECTIONS.items() if not _prune(v, now)]:
            _SECURITY_REJECTIONS.pop(key, None)
        entries = _prune(_SECURITY_REJECTIONS.get(user_id, []), now)
        entries.append(now)
        _SECURITY_REJECTIONS[user_id] = entries
        count = len(entries)

    if count >= SECURITY_ALERT_THRESHOLD:
        logger.error(
            "Security alert: %s forged or unknown QR tokens from user %s within %ss",
            count,
            user_id,
            SECURITY_ALERT_WINDOW_SECONDS,
        )
        return True
    return False


def security_rejection_count(user_id: str) -> int:
    now = time.monotonic()
    with MONITOR_LOCK:
        entries = _prune(_SECURITY_REJECTIONS.get(user_id, []), now)
        if entries:
            _SECURITY_REJECTIONS[user_id] = entries
        else:
            _SECURITY_REJECTIONS.pop(user_id, None)
        return len(entries)


def reset() -> None:
    with MONITOR_LOCK:
        _SECURITY_REJECTIONS.clear()
