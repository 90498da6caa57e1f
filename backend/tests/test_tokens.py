import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import database.db as db
from backend.services import issuer
from backend.services.clock import epoch_ms
from backend.services.issuer import build_payload, encode_location, encode_token, issue
from backend.services.outcomes import InvalidLocation, RejectReason, TransientFailure
from backend.services.signer import Signer
from backend.services.validator import parse_token, validate

T0 = datetime(2026, 3, 2, 8, 50, 0, tzinfo=timezone.utc)


def _stored_rows():
    conn = db.connect_db()
    rows = conn.execute(
        "SELECT nonce, location_id, code, signature, expires_at_ms, created_by FROM qr_codes"
    ).fetchall()
    conn.close()
    return rows


# -----------------------------
# Issuer
# -----------------------------
def test_issue_encodes_and_persists_token(location, signer):
    token = issue("hq", created_by="admin", now=T0, signer=signer)

    assert token.token_string.startswith("nomia:")
    fields = token.token_string[len("nomia:"):].split("|")
    assert len(fields) == 4
    assert fields[0] == token.nonce
    assert fields[1] == "hq"
    assert int(fields[2]) == epoch_ms(T0) + 30_000
    assert "=" not in fields[3]

    assert token.validity_seconds == 30
    assert token.expires_at == T0 + timedelta(seconds=30)

    rows = _stored_rows()
    assert len(rows) == 1
    nonce, location_id, code, signature, expires_at_ms, created_by = rows[0]
    assert (nonce, location_id, code) == (token.nonce, "hq", token.token_string)
    assert signature == fields[3]
    assert expires_at_ms == token.expires_at_ms
    assert created_by == "admin"


def test_issue_draws_fresh_nonces(location, signer):
    nonces = {issue("hq", created_by="admin", now=T0, signer=signer).nonce for _ in range(5)}
    assert len(nonces) == 5


def test_issue_honours_configured_validity(location, signer, monkeypatch):
    monkeypatch.setattr(issuer, "QR_VALIDITY_SECONDS", 45)
    token = issue("hq", created_by="admin", now=T0, signer=signer)
    assert token.expires_at_ms == epoch_ms(T0) + 45_000
    assert token.validity_seconds == 45


@pytest.mark.parametrize("location_id", ["missing", "bad|id", "", "x" * 65])
def test_issue_rejects_unknown_or_invalid_location(location, signer, location_id):
    with pytest.raises(InvalidLocation):
        issue(location_id, created_by="admin", now=T0, signer=signer)
    assert _stored_rows() == []


def test_issue_rejects_inactive_location(location, signer):
    conn = db.connect_db()
    conn.execute("UPDATE locations SET is_active = 0 WHERE id = 'hq'")
    conn.commit()
    conn.close()

    with pytest.raises(InvalidLocation):
        issue("hq", created_by="admin", now=T0, signer=signer)


def test_issue_retries_once_then_fails_when_store_is_down(location, signer, monkeypatch):
    calls = []

    def broken_insert(**kwargs):
        calls.append(kwargs["nonce"])
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(issuer, "insert_qr_code", broken_insert)

    with pytest.raises(TransientFailure):
        issue("hq", created_by="admin", now=T0, signer=signer)
    assert len(calls) == 2
    assert calls[0] != calls[1]


def test_issue_recovers_when_retry_succeeds(location, signer, monkeypatch):
    real_insert = issuer.insert_qr_code
    calls = []

    def flaky_insert(**kwargs):
        calls.append(kwargs["nonce"])
        if len(calls) == 1:
            raise sqlite3.OperationalError("disk I/O error")
        return real_insert(**kwargs)

    monkeypatch.setattr(issuer, "insert_qr_code", flaky_insert)

    token = issue("hq", created_by="admin", now=T0, signer=signer)
    assert token.nonce == calls[1]
    assert validate(token.token_string, T0, signer=signer).ok


# -----------------------------
# Validator
# -----------------------------
def test_validate_fresh_token_returns_bound_location(location, signer):
    token = issue("hq", created_by="admin", now=T0, signer=signer)

    outcome = validate(token.token_string, T0 + timedelta(seconds=5), signer=signer)

    assert outcome.ok
    assert outcome.rejection is None
    assert outcome.token.location_id == "hq"
    assert outcome.token.qr_code_id == token.qr_code_id
    assert outcome.token.nonce == token.nonce


def test_validate_freshness_boundary(location, signer):
    token = issue("hq", created_by="admin", now=T0, signer=signer)
    expiry = T0 + timedelta(seconds=30)

    assert validate(token.token_string, expiry, signer=signer).ok

    late = validate(token.token_string, expiry + timedelta(milliseconds=1), signer=signer)
    assert not late.ok
    assert late.rejection.reason is RejectReason.EXPIRED


def test_validate_expired_message_reports_elapsed_seconds(location, signer):
    token = issue("hq", created_by="admin", now=T0, signer=signer)

    outcome = validate(token.token_string, T0 + timedelta(seconds=31), signer=signer)

    assert outcome.rejection.reason is RejectReason.EXPIRED
    assert "hace 1 segundos" in outcome.rejection.message


def test_validate_rejects_signed_but_never_issued_token(location, signer):
    expires_at_ms = epoch_ms(T0) + 30_000
    nonce = "Zm9yZ2VkLW5vbmNlLXZhbHVl"
    tag = signer.sign(build_payload(nonce, encode_location("hq"), expires_at_ms))
    forged = encode_token(nonce, "hq", expires_at_ms, tag)

    outcome = validate(forged, T0, signer=signer)

    assert outcome.rejection.reason is RejectReason.NOT_FOUND


def test_validate_rejects_tampered_location(location, signer):
    db.create_location("branch", "Sucursal", "admin")
    token = issue("hq", created_by="admin", now=T0, signer=signer)
    tampered = token.token_string.replace("|hq|", "|branch|")

    outcome = validate(tampered, T0, signer=signer)

    assert outcome.rejection.reason is RejectReason.BAD_SIGNATURE


def test_validate_rejects_token_signed_with_other_secret(location, signer):
    token = issue("hq", created_by="admin", now=T0, signer=Signer(b"leaked-elsewhere"))

    outcome = validate(token.token_string, T0, signer=signer)

    assert outcome.rejection.reason is RejectReason.BAD_SIGNATURE


def test_validate_accepts_token_from_previous_secret(location):
    token = issue("hq", created_by="admin", now=T0, signer=Signer(b"old-secret"))
    rotated = Signer(b"new-secret", [b"old-secret"])

    assert validate(token.token_string, T0, signer=rotated).ok


def test_validate_rejects_revoked_token(location, signer):
    token = issue("hq", created_by="admin", now=T0, signer=signer)
    assert db.revoke_qr_code(nonce=token.nonce, location_id="hq") is True

    outcome = validate(token.token_string, T0, signer=signer)

    assert outcome.rejection.reason is RejectReason.NOT_FOUND


@pytest.mark.parametrize(
    "mutate",
    [
        lambda s: s.replace("nomia:", "other:"),
        lambda s: s[len("nomia:"):],
        lambda s: s + "|extra",
        lambda s: s.rsplit("|", 1)[0],
        lambda s: s.replace("|hq|", "|h%7Cq|"),
        lambda s: s[:-1],
        lambda s: s + "A" * 600,
        lambda s: "nomia:short|hq|1|" + s.rsplit("|", 1)[1],
        lambda s: s.replace("|hq|", "|hq|abc"),
        lambda s: "",
    ],
)
def test_validate_rejects_malformed_structure(location, signer, mutate):
    token = issue("hq", created_by="admin", now=T0, signer=signer)

    outcome = validate(mutate(token.token_string), T0, signer=signer)

    assert outcome.rejection.reason is RejectReason.MALFORMED_TOKEN


def test_parse_token_rejects_non_string_input():
    assert parse_token(None) is None
    assert parse_token(b"nomia:abc") is None


def test_validate_does_not_write(location, signer):
    token = issue("hq", created_by="admin", now=T0, signer=signer)
    before = _stored_rows()

    validate(token.token_string, T0, signer=signer)
    validate(token.token_string + "x", T0, signer=signer)

    assert _stored_rows() == before
