import base64
import logging
import re
import secrets
import sqlite3
from datetime import datetime
from urllib.parse import quote

from backend.config import QR_TOKEN_PREFIX, QR_VALIDITY_SECONDS
from backend.services import signer as signer_module
from backend.services.clock import epoch_ms, utc_now
from backend.services.outcomes import InvalidLocation, IssuedToken, TransientFailure
from backend.services.signer import Signer
from database.db import get_location, insert_qr_code

logger = logging.getLogger(__name__)

FIELD_DELIMITER = "|"
NONCE_BYTES = 18
LOCATION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
ISSUE_ATTEMPTS = 2


def is_valid_location_id(location_id: str) -> bool:
    return isinstance(location_id, str) and bool(LOCATION_ID_RE.match(location_id))


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def encode_location(location_id: str) -> str:
    # Percent-encoding guarantees the field never carries the delimiter.
    return quote(location_id, safe="")


def build_payload(nonce: str, location_field: str, expires_at_ms: int) -> bytes:
    """Exact bytes covered by the signature: `nonce|location|expiry_ms`."""
    return FIELD_DELIMITER.join((nonce, location_field, str(expires_at_ms))).encode("ascii")


def encode_token(
    nonce: str,
    location_id: str,
    expires_at_ms: int,
    tag: bytes,
    *,
    prefix: str | None = None,
) -> str:
    location_field = encode_location(location_id)
    body = FIELD_DELIMITER.join((nonce, location_field, str(expires_at_ms), b64url_encode(tag)))
    return f"{prefix or QR_TOKEN_PREFIX}:{body}"


def issue(
    location_id: str,
    *,
    created_by: str,
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
    signer: Signer | None = None,
) -> IssuedToken:
    """
    Mint a token for `location_id` and persist it before handing it out.

    Raises `InvalidLocation` for unknown/inactive locations and
    `TransientFailure` when the token could not be stored after a retry.
    """
    if not is_valid_location_id(location_id):
        raise InvalidLocation(location_id)

    try:
        location = get_location(location_id, conn=conn)
    except sqlite3.Error as exc:
        raise TransientFailure("Location lookup failed.") from exc
    if not location or not location["is_active"]:
        raise InvalidLocation(location_id)

    active_signer = signer or signer_module.DEFAULT_SIGNER
    issued_at = now or utc_now()
    validity_seconds = QR_VALIDITY_SECONDS
    expires_at_ms = epoch_ms(issued_at) + validity_seconds * 1000
    location_field = encode_location(location_id)

    last_error: Exception | None = None
    for attempt in range(1, ISSUE_ATTEMPTS + 1):
        try:
            nonce = secrets.token_urlsafe(NONCE_BYTES)
            tag = active_signer.sign(build_payload(nonce, location_field, expires_at_ms))
            token_string = encode_token(nonce, location_id, expires_at_ms, tag)
            qr_code_id = insert_qr_code(
                nonce=nonce,
                location_id=location_id,
                code=token_string,
                signature=b64url_encode(tag),
                expires_at_ms=expires_at_ms,
                created_by=created_by,
                conn=conn,
            )
            if conn is not None:
                conn.commit()
        except (sqlite3.Error, OSError) as exc:
            last_error = exc
            logger.warning(
                "QR issuance attempt %s/%s for location %s failed: %s",
                attempt,
                ISSUE_ATTEMPTS,
                location_id,
                exc.__class__.__name__,
            )
            continue

        logger.info(
            "Issued QR token nonce=%s location=%s expires_at_ms=%s by=%s",
            nonce,
            location_id,
            expires_at_ms,
            created_by,
        )
        return IssuedToken(
            token_string=token_string,
            qr_code_id=qr_code_id,
            nonce=nonce,
            location_id=location_id,
            expires_at_ms=expires_at_ms,
            validity_seconds=validity_seconds,
        )

    raise TransientFailure("QR token could not be persisted.") from last_error
