import io
import threading
from datetime import datetime

import qrcode

from backend.services.clock import epoch_ms, utc_now
from backend.services.outcomes import IssuedToken

# -----------------------------
# Live tokens per location (in-memory)
# -----------------------------
DISPLAY_LOCK = threading.Lock()
LIVE_TOKENS: dict[str, IssuedToken] = {}


def publish(token: IssuedToken) -> None:
    with DISPLAY_LOCK:
        existing = LIVE_TOKENS.get(token.location_id)
        if existing is None or token.expires_at_ms >= existing.expires_at_ms:
            LIVE_TOKENS[token.location_id] = token


def current(location_id: str, *, now: datetime | None = None) -> IssuedToken | None:
    """Latest published token for the location, if it is still inside its window."""
    now_ms = epoch_ms(now or utc_now())
    with DISPLAY_LOCK:
        token = LIVE_TOKENS.get(location_id)
    if token is None or token.expires_at_ms < now_ms:
        return None
    return token


def clear() -> None:
    with DISPLAY_LOCK:
        LIVE_TOKENS.clear()


def render_qr_png(token_string: str, *, box_size: int = 10, border: int = 4) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(token_string)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()
