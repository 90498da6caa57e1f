import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
    ROTATION_LOCATIONS,
)
from backend.routers import attendance, auth, core, locations, qr
from backend.services.attendance import reference_timezone
from backend.services.rotation import start_rotation, stop_rotation
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Nomia Attendance API")

# -----------------------------
# CORS (React dev server)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(auth.router)
app.include_router(locations.router)
app.include_router(qr.router)
app.include_router(attendance.router)


# -----------------------------
# Startup / Shutdown
# -----------------------------
@app.on_event("startup")
def _startup():
    # Unknown NOMIA_TIMEZONE keys fail here instead of on the first scan.
    logger.info("Attendance calendar day uses time zone %s", reference_timezone())
    create_tables()
    if ROTATION_LOCATIONS:
        start_rotation(ROTATION_LOCATIONS)


@app.on_event("shutdown")
def _shutdown():
    stop_rotation()
    logger.info("Nomia API stopped")
