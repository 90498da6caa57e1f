import logging
import sqlite3
import time
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.config import SCAN_TIMEOUT_SECONDS
from backend.security import require_session
from backend.services import clock, monitoring
from backend.services.attendance import get_daily_status, record_scan
from backend.services.outcomes import (
    EventKind,
    RejectReason,
    Rejection,
    TransientFailure,
    ValidationOutcome,
)
from backend.services.validator import parse_token, validate

logger = logging.getLogger(__name__)

router = APIRouter()

VALIDATION_ATTEMPTS = 2


class ScanRequest(BaseModel):
    # Loosely typed so a missing or non-string value gets a coded rejection.
    token_string: Any = None


def _validate_token(token_string: str, now: datetime) -> ValidationOutcome:
    last_error: sqlite3.OperationalError | None = None
    for attempt in range(1, VALIDATION_ATTEMPTS + 1):
        try:
            return validate(token_string, now)
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower():
                return ValidationOutcome(rejection=Rejection.of(RejectReason.TIMEOUT))
            last_error = exc
            logger.warning("Token lookup attempt %s/%s failed: %s", attempt, VALIDATION_ATTEMPTS, exc)
    raise TransientFailure("Token store unavailable.") from last_error


def _reject(user_id: str, rejection: Rejection, token_string: str | None = None) -> JSONResponse:
    parsed = parse_token(token_string) if token_string else None
    monitoring.record_rejection(user_id, rejection, nonce=parsed.nonce if parsed else None)
    return JSONResponse(status_code=rejection.http_status, content=rejection.to_payload())


@router.post("/attendance/scan")
def scan(payload: ScanRequest, session: dict = Depends(require_session)):
    user_id = str(session["sub"])
    if not isinstance(payload.token_string, str):
        return _reject(user_id, Rejection.of(RejectReason.MALFORMED_TOKEN))
    token_string = payload.token_string.strip()
    deadline = time.monotonic() + SCAN_TIMEOUT_SECONDS
    now = clock.utc_now()

    try:
        validation = _validate_token(token_string, now)
    except TransientFailure:
        return _reject(user_id, Rejection.of(RejectReason.TRANSIENT_FAILURE))
    if not validation.ok:
        return _reject(user_id, validation.rejection, token_string)

    if time.monotonic() > deadline:
        return _reject(user_id, Rejection.of(RejectReason.TIMEOUT))

    token = validation.token
    try:
        outcome = record_scan(
            user_id,
            token.location_id,
            now,
            qr_code_id=token.qr_code_id,
            deadline=deadline,
        )
    except TransientFailure:
        return _reject(user_id, Rejection.of(RejectReason.TRANSIENT_FAILURE))
    if not outcome.ok:
        return _reject(user_id, outcome.rejection)

    label = "Entrada" if outcome.event_kind is EventKind.ENTRADA else "Salida"
    return {
        "event_kind": outcome.event_kind.value,
        "recorded_at": outcome.recorded_at.isoformat(),
        "location_id": outcome.location_id,
        "message": f"{label} registrada correctamente.",
    }


@router.get("/attendance/today")
def today(session: dict = Depends(require_session)):
    return get_daily_status(str(session["sub"]), clock.utc_now())
