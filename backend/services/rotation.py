import logging
import threading
from datetime import datetime, timezone
from typing import Iterable

from apscheduler.schedulers.background import BackgroundScheduler

from backend.config import QR_ROTATION_LEAD_SECONDS, QR_VALIDITY_SECONDS
from backend.services import display, issuer
from backend.services.outcomes import InvalidLocation, IssuedToken, TransientFailure

logger = logging.getLogger(__name__)

ROTATION_ACTOR = "rotation-scheduler"

# -----------------------------
# Scheduler state (in-memory)
# -----------------------------
SCHEDULER_LOCK = threading.Lock()
STATUS_LOCK = threading.Lock()
SCHEDULER: BackgroundScheduler | None = None

ROTATION_STATUS: dict[str, dict] = {}


def rotation_interval_seconds() -> int:
    return max(1, QR_VALIDITY_SECONDS - QR_ROTATION_LEAD_SECONDS)


def _job_id(location_id: str) -> str:
    return f"qr-rotation:{location_id}"


def _update_status(location_id: str, **changes) -> None:
    with STATUS_LOCK:
        entry = ROTATION_STATUS.setdefault(
            location_id,
            {
                "last_success": None,    # ISO string
                "last_error": None,
                "consecutive_failures": 0,
                "nonce": None,
            },
        )
        entry.update(changes)


def rotate_once(location_id: str) -> IssuedToken | None:
    """
    Issue a replacement token and hand it to the display surface.

    On failure the previously published token stays live until it expires;
    the next tick tries again.
    """
    try:
        token = issuer.issue(location_id, created_by=ROTATION_ACTOR)
    except (InvalidLocation, TransientFailure) as exc:
        with STATUS_LOCK:
            failures = ROTATION_STATUS.get(location_id, {}).get("consecutive_failures", 0) + 1
        logger.error(
            "QR rotation for location %s failed (%s consecutive): %s",
            location_id,
            failures,
            exc.__class__.__name__,
        )
        _update_status(location_id, last_error=exc.__class__.__name__, consecutive_failures=failures)
        return None

    display.publish(token)
    _update_status(
        location_id,
        last_success=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        last_error=None,
        consecutive_failures=0,
        nonce=token.nonce,
    )
    return token


def start_rotation(location_ids: Iterable[str], *, run_now: bool = True) -> list[str]:
    global SCHEDULER

    interval = rotation_interval_seconds()
    started: list[str] = []
    with SCHEDULER_LOCK:
        if SCHEDULER is None:
            SCHEDULER = BackgroundScheduler(timezone=timezone.utc)
            SCHEDULER.start()

        for location_id in location_ids:
            job_kwargs = {}
            if run_now:
                job_kwargs["next_run_time"] = datetime.now(timezone.utc)
            SCHEDULER.add_job(
                rotate_once,
                "interval",
                seconds=interval,
                args=[location_id],
                id=_job_id(location_id),
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                **job_kwargs,
            )
            _update_status(location_id)
            started.append(location_id)

    if started:
        logger.info("QR rotation every %ss for locations: %s", interval, ", ".join(started))
    return started


def stop_rotation() -> None:
    global SCHEDULER

    with SCHEDULER_LOCK:
        if SCHEDULER is None:
            return
        SCHEDULER.shutdown(wait=False)
        SCHEDULER = None
    with STATUS_LOCK:
        ROTATION_STATUS.clear()


def rotation_status() -> dict:
    with SCHEDULER_LOCK:
        running = SCHEDULER is not None and SCHEDULER.running
        jobs = [job.id for job in SCHEDULER.get_jobs()] if SCHEDULER is not None else []
    with STATUS_LOCK:
        locations = {k: dict(v) for k, v in ROTATION_STATUS.items()}
    return {
        "running": running,
        "interval_seconds": rotation_interval_seconds(),
        "jobs": jobs,
        "locations": locations,
    }
