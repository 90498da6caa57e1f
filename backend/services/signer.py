import hashlib
import hmac
from typing import Iterable

from backend.config import QR_SIGNING_SECRET, QR_SIGNING_SECRET_PREVIOUS

DIGEST = hashlib.sha256
TAG_SIZE = DIGEST().digest_size


def sign(payload: bytes, secret: bytes) -> bytes:
    return hmac.new(secret, payload, DIGEST).digest()


def verify(payload: bytes, tag: bytes, secret: bytes) -> bool:
    """
    Constant-time tag check. Any malformed input is a mismatch, never an error.
    """
    if not isinstance(payload, (bytes, bytearray)) or not isinstance(tag, (bytes, bytearray)):
        return False
    if not isinstance(secret, (bytes, bytearray)) or not secret:
        return False
    expected = hmac.new(bytes(secret), bytes(payload), DIGEST).digest()
    return hmac.compare_digest(expected, bytes(tag))


class Signer:
    """
    Holds the QR signing secret for the lifetime of the process.

    `previous_secrets` keep tokens signed before a secret rotation verifiable
    until they expire; new tags always use the active secret.
    """

    __slots__ = ("_secret", "_previous")

    def __init__(self, secret: str | bytes, previous_secrets: Iterable[str | bytes] = ()):
        active = _as_bytes(secret)
        if not active:
            raise ValueError("QR signing secret must not be empty.")
        self._secret = active
        self._previous = tuple(_as_bytes(s) for s in previous_secrets if s)

    def __repr__(self) -> str:
        return f"Signer(previous_secrets={len(self._previous)})"

    def sign(self, payload: bytes) -> bytes:
        return sign(payload, self._secret)

    def verify(self, payload: bytes, tag: bytes) -> bool:
        # Every configured secret is checked so timing does not reveal which one matched.
        results = [verify(payload, tag, secret) for secret in (self._secret, *self._previous)]
        return any(results)


def _as_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


DEFAULT_SIGNER = Signer(QR_SIGNING_SECRET, QR_SIGNING_SECRET_PREVIOUS)
