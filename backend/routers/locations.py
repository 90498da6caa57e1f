import sqlite3
import uuid

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_admin, require_session
from backend.services.issuer import is_valid_location_id
from database.db import create_location, get_active_locations, get_location

router = APIRouter()


class LocationCreate(BaseModel):
    name: str
    id: str | None = None


def owned_location(location_id: str, session: dict) -> dict:
    """Resolve a location the calling admin may administer, or raise."""
    if not is_valid_location_id(location_id):
        raise HTTPException(status_code=404, detail="Invalid location.")
    location = get_location(location_id)
    if not location or not location["is_active"]:
        raise HTTPException(status_code=404, detail="Invalid location.")
    if location["owner_username"].lower() != str(session.get("sub", "")).lower():
        raise HTTPException(status_code=403, detail="You do not administer this location.")
    return location


@router.post("/locations")
def add_location(payload: LocationCreate, session: dict = Depends(require_admin)):
    name = payload.name.strip()
    location_id = (payload.id or "").strip() or uuid.uuid4().hex

    if not name:
        raise HTTPException(status_code=400, detail="Name is required.")
    if not is_valid_location_id(location_id):
        raise HTTPException(
            status_code=400,
            detail="Location id must be 1-64 letters, digits, '-' or '_'.",
        )

    try:
        return create_location(location_id, name, session["sub"])
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Location id already exists.")


@router.get("/locations")
def locations(_session: dict = Depends(require_session)):
    return get_active_locations()
