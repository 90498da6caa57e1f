from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from backend.routers.locations import owned_location
from backend.security import require_admin
from backend.services import display, issuer
from backend.services.outcomes import InvalidLocation, IssuedToken, TransientFailure
from backend.services.rotation import rotation_status, start_rotation
from backend.services.validator import parse_token
from database.db import revoke_qr_code

router = APIRouter(dependencies=[Depends(require_admin)])


class IssueRequest(BaseModel):
    location_id: str


class RevokeRequest(BaseModel):
    token_string: str


def _token_payload(token: IssuedToken) -> dict:
    return {
        "token_string": token.token_string,
        "location_id": token.location_id,
        "expires_at": token.expires_at.isoformat(),
        "expires_at_ms": token.expires_at_ms,
        "validity_seconds": token.validity_seconds,
    }


@router.post("/qr/issue")
def issue_qr(payload: IssueRequest, session: dict = Depends(require_admin)):
    location = owned_location(payload.location_id.strip(), session)

    try:
        token = issuer.issue(location["id"], created_by=session["sub"])
    except InvalidLocation:
        raise HTTPException(status_code=404, detail="Invalid location.")
    except TransientFailure:
        raise HTTPException(status_code=503, detail="Failed to create QR code. Please retry.")

    display.publish(token)
    return _token_payload(token)


@router.get("/qr/current/{location_id}")
def current_qr(location_id: str, session: dict = Depends(require_admin)):
    owned_location(location_id, session)
    token = display.current(location_id)
    if token is None:
        raise HTTPException(status_code=404, detail="No live QR code for this location.")
    return _token_payload(token)


@router.get("/qr/current/{location_id}/image")
def current_qr_image(location_id: str, session: dict = Depends(require_admin)):
    owned_location(location_id, session)
    token = display.current(location_id)
    if token is None:
        raise HTTPException(status_code=404, detail="No live QR code for this location.")
    return Response(
        content=display.render_qr_png(token.token_string),
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )


@router.post("/qr/revoke")
def revoke_qr(payload: RevokeRequest, session: dict = Depends(require_admin)):
    parsed = parse_token(payload.token_string.strip())
    if parsed is None:
        raise HTTPException(status_code=400, detail="Malformed QR token.")

    owned_location(parsed.location_id, session)
    if not revoke_qr_code(nonce=parsed.nonce, location_id=parsed.location_id):
        raise HTTPException(status_code=404, detail="QR code not found or already revoked.")
    return {"ok": True, "nonce": parsed.nonce}


@router.post("/qr/rotation/{location_id}/start")
def start_location_rotation(location_id: str, session: dict = Depends(require_admin)):
    owned_location(location_id, session)
    start_rotation([location_id])
    return {"ok": True, **rotation_status()}


@router.get("/qr/rotation")
def get_rotation_status():
    return rotation_status()
