import base64
import binascii
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import unquote

from backend.config import QR_TOKEN_PREFIX
from backend.services import signer as signer_module
from backend.services.clock import epoch_ms
from backend.services.issuer import (
    FIELD_DELIMITER,
    b64url_encode,
    build_payload,
    encode_location,
    is_valid_location_id,
)
from backend.services.outcomes import (
    RejectReason,
    Rejection,
    ValidatedToken,
    ValidationOutcome,
)
from backend.services.signer import TAG_SIZE, Signer
from database.db import find_live_qr_code

MAX_TOKEN_LENGTH = 512
MAX_LOCATION_FIELD_LENGTH = 192
NONCE_RE = re.compile(r"^[A-Za-z0-9_-]{16,64}$")
EXPIRY_RE = re.compile(r"^[0-9]{1,15}$")
SIGNATURE_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


@dataclass(frozen=True)
class ParsedToken:
    nonce: str
    location_id: str
    location_field: str
    expires_at_ms: int
    signature: str
    tag: bytes

    @property
    def payload(self) -> bytes:
        return build_payload(self.nonce, self.location_field, self.expires_at_ms)


def _decode_tag(signature: str) -> bytes | None:
    try:
        tag = base64.urlsafe_b64decode(signature + "=" * (-len(signature) % 4))
    except (binascii.Error, ValueError):
        return None
    # Reject non-canonical encodings so one tag has exactly one wire form.
    if len(tag) != TAG_SIZE or b64url_encode(tag) != signature:
        return None
    return tag


def parse_token(token_string: str, *, prefix: str | None = None) -> ParsedToken | None:
    if not isinstance(token_string, str) or len(token_string) > MAX_TOKEN_LENGTH:
        return None

    head = f"{prefix or QR_TOKEN_PREFIX}:"
    if not token_string.startswith(head):
        return None

    parts = token_string[len(head):].split(FIELD_DELIMITER)
    if len(parts) != 4:
        return None

    nonce, location_field, expiry_text, signature = parts
    if not NONCE_RE.match(nonce):
        return None
    if not location_field or len(location_field) > MAX_LOCATION_FIELD_LENGTH:
        return None
    location_id = unquote(location_field)
    if not is_valid_location_id(location_id) or encode_location(location_id) != location_field:
        return None
    if not EXPIRY_RE.match(expiry_text):
        return None
    if not SIGNATURE_RE.match(signature):
        return None
    tag = _decode_tag(signature)
    if tag is None:
        return None

    return ParsedToken(
        nonce=nonce,
        location_id=location_id,
        location_field=location_field,
        expires_at_ms=int(expiry_text),
        signature=signature,
        tag=tag,
    )


def validate(
    token_string: str,
    now: datetime,
    *,
    conn: sqlite3.Connection | None = None,
    signer: Signer | None = None,
) -> ValidationOutcome:
    """
    Check a scanned token: structure, signature, freshness, then provenance.

    Expected rejections come back as a `ValidationOutcome`; only storage
    errors raise. Nothing is written.
    """
    parsed = parse_token(token_string)
    if parsed is None:
        return ValidationOutcome(rejection=Rejection.of(RejectReason.MALFORMED_TOKEN))

    active_signer = signer or signer_module.DEFAULT_SIGNER
    if not active_signer.verify(parsed.payload, parsed.tag):
        return ValidationOutcome(rejection=Rejection.of(RejectReason.BAD_SIGNATURE))

    now_ms = epoch_ms(now)
    if now_ms > parsed.expires_at_ms:
        expired_ago = (now_ms - parsed.expires_at_ms) // 1000
        return ValidationOutcome(
            rejection=Rejection.of(
                RejectReason.EXPIRED,
                f"Código QR expirado hace {expired_ago} segundos. Solicita uno nuevo.",
            )
        )

    row = find_live_qr_code(
        nonce=parsed.nonce,
        signature=parsed.signature,
        now_ms=now_ms,
        conn=conn,
    )
    if not row or row["location_id"] != parsed.location_id:
        return ValidationOutcome(rejection=Rejection.of(RejectReason.NOT_FOUND))

    return ValidationOutcome(
        token=ValidatedToken(
            qr_code_id=row["id"],
            nonce=parsed.nonce,
            location_id=parsed.location_id,
            expires_at_ms=parsed.expires_at_ms,
        )
    )
