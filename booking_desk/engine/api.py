import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from booking_desk.config import ServerConfig, load_config
from booking_desk.engine.calendar_sync import SyncResult
from booking_desk.engine.service import SchedulingService
from booking_desk.errors import CredentialError, SchedulingError, ValidationError
from booking_desk.models import Requester

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "credential": status.HTTP_401_UNAUTHORIZED,
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_state": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "upstream": status.HTTP_502_BAD_GATEWAY,
}


class EngineState:
    def __init__(self):
        self.config: Optional[ServerConfig] = None
        self.service: Optional[SchedulingService] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.running = False


state = EngineState()


# Request models
class BookingRequest(BaseModel):
    start_time: datetime
    end_time: datetime
    requester_name: str
    requester_email: str
    notes: Optional[str] = None
    video_provider: Optional[str] = None
    timezone: Optional[str] = None
    title: Optional[str] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class AvailabilityBlockRequest(BaseModel):
    day_of_week: int
    start_time: str
    end_time: str
    timezone: Optional[str] = None
    is_active: bool = True


class AvailabilityBlockUpdate(BaseModel):
    day_of_week: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    timezone: Optional[str] = None
    is_active: Optional[bool] = None


class CalendarConnectRequest(BaseModel):
    code: str
    redirect_uri: Optional[str] = None


def _service() -> SchedulingService:
    if not state.service:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine not ready",
        )
    return state.service


def _sync_response(result: SyncResult) -> dict[str, Any]:
    if isinstance(result.error, CredentialError):
        raise result.error
    return {"status": "ok", "sync": result.to_dict()}


async def sync_loop():
    """Periodic incremental sync of every active calendar."""
    service = _service()
    interval = service.config.sync.interval_seconds
    loop = asyncio.get_running_loop()
    logger.info(f"Sync loop started (interval: {interval}s)")

    while state.running:
        try:
            await loop.run_in_executor(None, service.sync_active_integrations)
            await loop.run_in_executor(None, service.sync.cleanup_old_intervals)
        except Exception as e:
            logger.error(f"Sync error: {e}", exc_info=True)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting booking engine...")

    if state.service is None:
        state.config = load_config()
        state.service = SchedulingService.from_config(state.config)
    state.running = True

    if not state.service.config.google:
        logger.warning("Google OAuth not configured - background calendar sync disabled")
    elif state.service.config.sync.run_in_engine:
        state.sync_task = asyncio.create_task(sync_loop())
    else:
        logger.info("Periodic calendar sync left to the calendar worker")

    yield

    logger.info("Shutting down booking engine...")
    state.running = False

    if state.sync_task:
        state.sync_task.cancel()
        try:
            await state.sync_task
        except asyncio.CancelledError:
            pass
        state.sync_task = None

    if state.service:
        state.service.close()


app = FastAPI(title="Booking Engine", lifespan=lifespan)


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError):
    status_code = ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "code": exc.code, "detail": exc.message},
    )


# ============================================================================
# Status endpoints
# ============================================================================


@app.get("/health")
async def health():
    return {
        "service": "booking-engine",
        "health": "healthy" if state.running else "stopped",
    }


@app.get("/api/status")
def get_status():
    service = _service()
    return {
        "status": "running" if state.running else "stopped",
        "database_type": type(service.db).__name__,
        "google_configured": service.config.google is not None,
        "zoom_configured": service.config.zoom is not None,
        **service.summary(),
    }


# ============================================================================
# Slot and booking endpoints
# ============================================================================


@app.get("/api/admins/{admin_id}/slots")
def get_slots(
    admin_id: int,
    start: datetime,
    end: datetime,
    timezone: Optional[str] = None,
    granularity: Optional[int] = None,
):
    service = _service()
    display_timezone = timezone or service.get_admin(admin_id).timezone
    slots = service.slots.compute_slots(admin_id, start, end, display_timezone, granularity)
    return {
        "status": "ok",
        "timezone": display_timezone,
        "slots": [slot.to_dict() for slot in slots],
    }


@app.post("/api/admins/{admin_id}/bookings", status_code=status.HTTP_201_CREATED)
def create_booking(admin_id: int, req: BookingRequest):
    booking = _service().guard.request_booking(
        admin_id,
        req.start_time,
        req.end_time,
        Requester(name=req.requester_name, email=req.requester_email),
        notes=req.notes,
        video_provider=req.video_provider,
        timezone_name=req.timezone,
        title=req.title,
    )
    return {"status": "ok", "booking": booking.to_dict()}


@app.get("/api/admins/{admin_id}/bookings")
def list_bookings(
    admin_id: int,
    status_filter: Optional[List[str]] = Query(default=None, alias="status"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
):
    bookings = _service().guard.list_bookings(admin_id, status_filter, start, end)
    return {"status": "ok", "bookings": [b.to_dict() for b in bookings]}


@app.get("/api/admins/{admin_id}/bookings/{booking_id}")
def get_booking(admin_id: int, booking_id: str):
    booking = _service().guard.get_booking(booking_id, admin_id)
    return {"status": "ok", "booking": booking.to_dict()}


@app.post("/api/admins/{admin_id}/bookings/{booking_id}/approve")
def approve_booking(admin_id: int, booking_id: str):
    outcome = _service().approve_booking(booking_id, admin_id)
    return {"status": "ok", **outcome.to_dict()}


@app.post("/api/admins/{admin_id}/bookings/{booking_id}/reject")
def reject_booking(admin_id: int, booking_id: str, req: Optional[RejectRequest] = None):
    outcome = _service().reject_booking(booking_id, admin_id, req.reason if req else None)
    return {"status": "ok", **outcome.to_dict()}


@app.post("/api/admins/{admin_id}/bookings/{booking_id}/cancel")
def cancel_booking(admin_id: int, booking_id: str):
    outcome = _service().cancel_booking(booking_id, admin_id)
    return {"status": "ok", **outcome.to_dict()}


# ============================================================================
# Availability endpoints
# ============================================================================


def _block_dict(block: Any) -> dict[str, Any]:
    return {
        "id": block.id,
        "day_of_week": block.day_of_week,
        "start_time": block.start_time.strftime("%H:%M"),
        "end_time": block.end_time.strftime("%H:%M"),
        "timezone": block.timezone,
        "is_active": block.is_active,
    }


@app.get("/api/admins/{admin_id}/availability")
def list_availability(admin_id: int, include_inactive: bool = False):
    blocks = _service().blocks.list_blocks(admin_id, include_inactive)
    return {"status": "ok", "blocks": [_block_dict(b) for b in blocks]}


@app.post("/api/admins/{admin_id}/availability", status_code=status.HTTP_201_CREATED)
def create_availability(admin_id: int, req: AvailabilityBlockRequest):
    block = _service().blocks.create_block(
        admin_id,
        req.day_of_week,
        req.start_time,
        req.end_time,
        timezone_name=req.timezone,
        is_active=req.is_active,
    )
    return {"status": "ok", "block": _block_dict(block)}


@app.patch("/api/admins/{admin_id}/availability/{block_id}")
def update_availability(admin_id: int, block_id: str, req: AvailabilityBlockUpdate):
    block = _service().blocks.update_block(
        block_id,
        admin_id,
        day_of_week=req.day_of_week,
        start_time=req.start_time,
        end_time=req.end_time,
        timezone_name=req.timezone,
        is_active=req.is_active,
    )
    return {"status": "ok", "block": _block_dict(block)}


@app.delete("/api/admins/{admin_id}/availability/{block_id}")
def delete_availability(admin_id: int, block_id: str):
    _service().blocks.delete_block(block_id, admin_id)
    return {"status": "ok"}


# ============================================================================
# Calendar connection endpoints
# ============================================================================


@app.get("/api/admins/{admin_id}/calendar")
def calendar_status(admin_id: int):
    integration = _service().calendar_status(admin_id)
    if not integration:
        return {"status": "ok", "connected": False}
    return {
        "status": "ok",
        "connected": True,
        "integration_id": integration.id,
        "sync_status": integration.status.value,
        "last_sync_at": integration.last_sync_at.isoformat()
        if integration.last_sync_at
        else None,
        "last_error": integration.last_error,
    }


@app.get("/api/admins/{admin_id}/calendar/authorize")
def authorize_calendar(admin_id: int, redirect_uri: Optional[str] = None):
    url = _service().vault.begin_authorization(admin_id, redirect_uri)
    return {"status": "ok", "authorization_url": url}


@app.post("/api/admins/{admin_id}/calendar/connect")
def connect_calendar(admin_id: int, req: CalendarConnectRequest):
    result = _service().connect_calendar(admin_id, req.code, req.redirect_uri)
    return _sync_response(result)


def _admin_from_state(value: str) -> int:
    parts = value.split("-")
    if len(parts) != 3 or parts[0] != "admin" or not parts[1].isdigit():
        raise ValidationError("Malformed OAuth state")
    return int(parts[1])


@app.get("/api/calendar/callback")
def oauth_callback(
    code: Optional[str] = None,
    oauth_state: Optional[str] = Query(default=None, alias="state"),
    error: Optional[str] = None,
):
    if error:
        raise ValidationError(f"Authorization was not granted: {error}")
    if not code or not oauth_state:
        raise ValidationError("Missing code or state")
    result = _service().connect_calendar(_admin_from_state(oauth_state), code)
    return _sync_response(result)


@app.post("/api/admins/{admin_id}/calendar/sync")
def trigger_sync(admin_id: int, full: bool = False):
    return _sync_response(_service().sync_admin(admin_id, full=full))


@app.delete("/api/admins/{admin_id}/calendar")
def disconnect_calendar(admin_id: int):
    _service().disconnect_calendar(admin_id)
    return {"status": "ok"}


def run_engine():
    import argparse

    parser = argparse.ArgumentParser(description="Booking Engine API")
    parser.add_argument("--host", type=str, default=None, help="TCP host to bind to")
    parser.add_argument("--port", type=int, default=None, help="TCP port to bind to")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    args = parser.parse_args()

    state.config = load_config(args.config)
    state.service = SchedulingService.from_config(state.config)

    host = args.host or state.config.server.host
    port = args.port or state.config.server.port
    logger.info(f"Starting Engine API on TCP {host}:{port}")
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))
    server.run()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_engine()
