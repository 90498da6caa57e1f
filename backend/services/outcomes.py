from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from backend.services.clock import from_epoch_ms


class EventKind(str, Enum):
    ENTRADA = "entrada"
    SALIDA = "salida"


class AttendanceState(str, Enum):
    ABSENT = "absent"
    CHECKED_IN = "checked_in"
    CHECKED_OUT = "checked_out"


class RejectReason(str, Enum):
    """Stable machine-readable rejection codes returned to scanning clients."""

    MALFORMED_TOKEN = "MALFORMED_TOKEN"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    EXPIRED = "EXPIRED"
    NOT_FOUND = "NOT_FOUND"
    ENTRY_LIMIT_REACHED = "ENTRY_LIMIT_REACHED"
    EXIT_LIMIT_REACHED = "EXIT_LIMIT_REACHED"
    TIMEOUT = "TIMEOUT"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"


REJECT_MESSAGES: dict[RejectReason, str] = {
    RejectReason.MALFORMED_TOKEN: "Código QR inválido. Formato no reconocido.",
    RejectReason.BAD_SIGNATURE: "Código QR manipulado o inválido.",
    RejectReason.EXPIRED: "Código QR expirado. Solicita uno nuevo.",
    RejectReason.NOT_FOUND: "Código QR no encontrado o ya no está vigente.",
    RejectReason.ENTRY_LIMIT_REACHED: "Ya registraste tu entrada hoy.",
    RejectReason.EXIT_LIMIT_REACHED: "Ya registraste tu salida hoy.",
    RejectReason.TIMEOUT: "La validación tardó demasiado. Intenta de nuevo.",
    RejectReason.TRANSIENT_FAILURE: "Error interno del servidor. Intenta de nuevo.",
}

REJECT_HTTP_STATUS: dict[RejectReason, int] = {
    RejectReason.MALFORMED_TOKEN: 400,
    RejectReason.BAD_SIGNATURE: 400,
    RejectReason.EXPIRED: 400,
    RejectReason.NOT_FOUND: 400,
    RejectReason.ENTRY_LIMIT_REACHED: 409,
    RejectReason.EXIT_LIMIT_REACHED: 409,
    RejectReason.TIMEOUT: 504,
    RejectReason.TRANSIENT_FAILURE: 503,
}


class TransientFailure(Exception):
    """Storage or randomness source unavailable after the internal retry."""


class InvalidLocation(Exception):
    """The location does not exist, is inactive, or is not a valid identifier."""


@dataclass(frozen=True)
class IssuedToken:
    token_string: str
    qr_code_id: int
    nonce: str
    location_id: str
    expires_at_ms: int
    validity_seconds: int

    @property
    def expires_at(self) -> datetime:
        return from_epoch_ms(self.expires_at_ms)


@dataclass(frozen=True)
class ValidatedToken:
    qr_code_id: int
    nonce: str
    location_id: str
    expires_at_ms: int


@dataclass(frozen=True)
class Rejection:
    reason: RejectReason
    message: str

    @classmethod
    def of(cls, reason: RejectReason, message: str | None = None) -> Rejection:
        return cls(reason=reason, message=message or REJECT_MESSAGES[reason])

    @property
    def http_status(self) -> int:
        return REJECT_HTTP_STATUS[self.reason]

    def to_payload(self) -> dict:
        return {"error_message": self.message, "error_code": self.reason.value}


@dataclass(frozen=True)
class ValidationOutcome:
    token: ValidatedToken | None = None
    rejection: Rejection | None = None

    @property
    def ok(self) -> bool:
        return self.token is not None


@dataclass(frozen=True)
class ScanOutcome:
    event_kind: EventKind | None = None
    recorded_at: datetime | None = None
    location_id: str | None = None
    rejection: Rejection | None = None

    @property
    def ok(self) -> bool:
        return self.event_kind is not None
