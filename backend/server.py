from fastapi import FastAPI, APIRouter, HTTPException, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import asyncio
import os
import json
import logging
from pathlib import Path
from pydantic import BaseModel, ValidationError
from typing import List, Optional
from datetime import date, timedelta

from medkiosk.bus import (
    CAREGIVER,
    KIOSK,
    MIRROR,
    REMINDERS_UPDATED,
    SETTINGS_UPDATED,
    SyncBus,
    broadcast_kiosk_state,
)
from medkiosk.clock import Clock, day_bounds, parse_yyyy_mm_dd, to_iso
from medkiosk.completions import CompletionRecorder
from medkiosk.config import AppConfig, build_mongo_uri
from medkiosk.errors import KioskError
from medkiosk.machine import Activity, ClientStateChange, KioskStateMachine, SettingsChanged, UserComplete, UserSkip
from medkiosk.models import KioskStateChange, Reminder, ReminderCreate, ReminderUpdate, SettingsUpdate
from medkiosk.schedule import resolve_schedule
from medkiosk.stats import MAX_WINDOW_DAYS, daily_stats, day_detail, reminder_performance
from medkiosk.store import MongoStore
from medkiosk.ticker import TickScheduler

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

config = AppConfig.from_env()

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

CONNECT_EVENTS = {
    "kiosk-connect": KIOSK,
    "caregiver-connect": CAREGIVER,
    "mirror-connect": MIRROR,
}

# ==================== SERVICES ====================

class KioskServices:
    """Everything one app instance shares: store, bus, recorder, machine, ticker."""

    def __init__(self, database, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self.store = MongoStore(database)
        self.bus = SyncBus()
        self.recorder = CompletionRecorder(self.store, self.bus, self.clock)
        self.machine = KioskStateMachine(self.store, self.bus, self.recorder, self.clock)
        self.ticker = TickScheduler(self.machine, self.bus, self.clock)

def get_services(request: Request) -> KioskServices:
    return request.app.state.services

async def schedule_changed(services: KioskServices):
    """Tell every surface to re-read, then let the kiosk re-select."""
    services.bus.publish(REMINDERS_UPDATED)
    await services.ticker.tick()

def describe_validation_error(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path"))
        msg = err.get("msg", "Invalid value")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "Invalid request"

async def window_completions(services: KioskServices, today: date, days: int) -> List[dict]:
    start, _ = day_bounds(today - timedelta(days=days - 1))
    _, end = day_bounds(today)
    return await services.store.completions_between(to_iso(start), to_iso(end))

class KioskAction(BaseModel):
    notes: Optional[str] = None

# ==================== REMINDERS ====================

@api_router.get("/reminders", response_model=List[dict])
async def get_reminders(services: KioskServices = Depends(get_services)):
    """All reminders ordered by time of day"""
    return await services.store.list_reminders()

@api_router.get("/reminders/{reminder_id}", response_model=dict)
async def get_reminder(reminder_id: str, services: KioskServices = Depends(get_services)):
    reminder = await services.store.get_reminder(reminder_id)
    if not reminder:
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder

@api_router.post("/reminders", response_model=dict, status_code=201)
async def create_reminder(
    reminder: ReminderCreate,
    services: KioskServices = Depends(get_services)
):
    """Create a new reminder"""
    now_iso = to_iso(services.clock.now())
    reminder_obj = Reminder(**reminder.model_dump(), created_at=now_iso, updated_at=now_iso)
    doc = await services.store.create_reminder(reminder_obj.to_doc())
    logger.info(f"Created reminder {doc['id']} ({doc['title']} at {doc['time']})")
    await schedule_changed(services)
    return doc

@api_router.put("/reminders/{reminder_id}", response_model=dict)
async def update_reminder(
    reminder_id: str,
    reminder: ReminderUpdate,
    services: KioskServices = Depends(get_services)
):
    update_data = reminder.changes()
    update_data["updatedAt"] = to_iso(services.clock.now())
    updated = await services.store.update_reminder(reminder_id, update_data)
    if not updated:
        raise HTTPException(status_code=404, detail="Reminder not found")
    await schedule_changed(services)
    return updated

@api_router.delete("/reminders/{reminder_id}")
async def delete_reminder(reminder_id: str, services: KioskServices = Depends(get_services)):
    """Delete a reminder and its recorded history"""
    deleted = await services.store.delete_reminder(reminder_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Reminder not found")
    logger.info(f"Deleted reminder {reminder_id}")
    await schedule_changed(services)
    return {"message": "Reminder deleted"}

# ==================== KIOSK ====================

@api_router.get("/kiosk/today", response_model=List[dict])
async def get_kiosk_today(services: KioskServices = Depends(get_services)):
    """Today's reminders with isCompleted (completed or skipped)"""
    now = services.clock.now()
    reminders = await services.store.list_reminders(active_only=True, day=now.date())
    completions = await services.store.completions_for_day(now.date())
    settings = await services.store.get_settings()
    return resolve_schedule(reminders, completions, settings, now).today

@api_router.post("/kiosk/complete/{reminder_id}", response_model=dict)
async def complete_reminder(
    reminder_id: str,
    action: Optional[KioskAction] = None,
    services: KioskServices = Depends(get_services)
):
    notes = action.notes if action else None
    transition = await services.ticker.dispatch(UserComplete(reminder_id, notes=notes))
    return {"message": "Reminder completed", "completion": transition.recorded[0]}

@api_router.post("/kiosk/skip/{reminder_id}", response_model=dict)
async def skip_reminder(
    reminder_id: str,
    action: Optional[KioskAction] = None,
    services: KioskServices = Depends(get_services)
):
    notes = action.notes if action else None
    transition = await services.ticker.dispatch(UserSkip(reminder_id, notes=notes))
    return {"message": "Reminder skipped", "completion": transition.recorded[0]}

@api_router.get("/kiosk/state", response_model=dict)
async def get_kiosk_state(services: KioskServices = Depends(get_services)):
    return await services.store.get_kiosk_state_view()

# ==================== SETTINGS ====================

@api_router.get("/settings", response_model=dict)
async def get_settings(services: KioskServices = Depends(get_services)):
    return await services.store.get_settings()

@api_router.put("/settings", response_model=dict)
async def update_settings(
    update: SettingsUpdate,
    services: KioskServices = Depends(get_services)
):
    settings = await services.store.update_settings(update.changes())
    logger.info(
        f"Settings updated: lead={settings.get('reminderLeadTime')} "
        f"displayOnly={settings.get('displayOnly')} autoSkip={settings.get('autoSkipTimeout')}"
    )
    services.bus.publish(SETTINGS_UPDATED, settings)
    await services.ticker.dispatch(SettingsChanged(settings))
    return settings

# ==================== STATS ====================

@api_router.get("/completions", response_model=List[dict])
async def get_completions(
    days: int = Query(7, ge=1, le=MAX_WINDOW_DAYS),
    services: KioskServices = Depends(get_services)
):
    """Completions scheduled within the last `days` days, newest first"""
    since = services.clock.now() - timedelta(days=days)
    completions = await services.store.completions_since(to_iso(since))
    reminders = {r["id"]: r for r in await services.store.list_reminders()}
    return [{**c, "reminder": reminders.get(c["reminderId"])} for c in completions]

@api_router.get("/stats/daily", response_model=List[dict])
async def get_daily_stats(
    days: int = Query(30, ge=1, le=MAX_WINDOW_DAYS),
    services: KioskServices = Depends(get_services)
):
    today = services.clock.now().date()
    reminders = await services.store.list_reminders()
    completions = await window_completions(services, today, days)
    return daily_stats(reminders, completions, today, days)

@api_router.get("/stats/reminders", response_model=List[dict])
async def get_reminder_stats(
    days: int = Query(30, ge=1, le=MAX_WINDOW_DAYS),
    services: KioskServices = Depends(get_services)
):
    today = services.clock.now().date()
    reminders = await services.store.list_reminders()
    completions = await window_completions(services, today, days)
    return reminder_performance(reminders, completions, today, days)

@api_router.get("/stats/day/{day}", response_model=dict)
async def get_day_stats(day: str, services: KioskServices = Depends(get_services)):
    target = parse_yyyy_mm_dd(day)
    if not target:
        raise HTTPException(status_code=400, detail="date must use YYYY-MM-DD")
    reminders = await services.store.list_reminders()
    completions = await services.store.completions_for_day(target)
    return day_detail(reminders, completions, target, services.clock.now())

# ==================== SYNC SOCKET ====================

async def forward_to_socket(websocket: WebSocket, subscription):
    while True:
        message = await subscription.next()
        await websocket.send_json(message)

async def stop_sender(sender: asyncio.Task):
    """Cancel the socket sender and collect how it ended."""
    sender.cancel()
    try:
        await sender
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.warning(f"Socket sender stopped with error: {e}")

async def on_surface_connect(services: KioskServices, event: str):
    if event == "kiosk-connect":
        now_iso = to_iso(services.clock.now())
        await services.store.update_kiosk_state({"connectedAt": now_iso, "lastActivity": now_iso})
        await broadcast_kiosk_state(services.bus, services.store)
        logger.info("Kiosk connected")
    elif event == "mirror-connect":
        await broadcast_kiosk_state(services.bus, services.store)
        logger.info("Mirror view connected")
    else:
        logger.info("Caregiver connected")

async def on_kiosk_message(services: KioskServices, event: str, data: dict):
    if event == "kiosk-state-change":
        change = KioskStateChange.model_validate(data)
        await services.ticker.dispatch(ClientStateChange(change.current_reminder_id, change.current_view))
    elif event == "kiosk-activity":
        await services.ticker.dispatch(Activity())
    else:
        logger.warning(f"Ignoring unknown socket event: {event}")

async def sync_socket(websocket: WebSocket):
    """Live sync for kiosk, caregiver and mirror surfaces.

    Frames are JSON objects {"event": ..., "data": ...}. The first frame names
    the surface role; the server answers "connected" and from then on pushes
    bus topics. Only the kiosk may send state changes and activity.
    """
    services: KioskServices = websocket.app.state.services
    await websocket.accept()
    subscription = None
    sender = None
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed socket frame")
                continue
            if not isinstance(message, dict):
                continue
            event = message.get("event")
            data = message.get("data") or {}

            try:
                if event in CONNECT_EVENTS:
                    if subscription is None:
                        subscription = services.bus.subscribe(CONNECT_EVENTS[event])
                        subscription.deliver("connected", {"role": subscription.role})
                        sender = asyncio.create_task(forward_to_socket(websocket, subscription))
                    await on_surface_connect(services, event)
                elif subscription is None or subscription.role != KIOSK:
                    logger.warning(f"Ignoring {event} from a socket that is not the kiosk")
                else:
                    await on_kiosk_message(services, event, data)
            except KioskError as e:
                logger.warning(f"Rejected socket event {event} [{e.code}]: {e.message}")
            except ValidationError as e:
                logger.warning(f"Rejected socket event {event}: {e}")
    except WebSocketDisconnect:
        role = subscription.role if subscription else "unidentified"
        logger.info(f"{role} surface disconnected")
    finally:
        services.bus.unsubscribe(subscription)
        if sender is not None:
            await stop_sender(sender)

# ==================== MISC ====================

@api_router.get("/")
async def root():
    return {"message": "Medication Kiosk API"}

@api_router.get("/health")
async def health():
    return {"ok": True}

# ==================== APP ====================

def create_app(database=None, clock: Optional[Clock] = None, run_ticker: bool = True) -> FastAPI:
    """Build the app; tests pass their own database and clock."""
    mongo_client = None
    if database is None:
        mongo_client = AsyncIOMotorClient(build_mongo_uri(config))
        database = mongo_client[config.mongo_database]

    app = FastAPI(
        title="Medication Kiosk",
        description="Reminder schedule, kiosk presentation state and live sync for caregivers.",
    )
    app.state.services = KioskServices(database, clock)

    # Include the router in the main app
    app.include_router(api_router)
    app.add_api_websocket_route("/ws", sync_socket)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(KioskError)
    async def kiosk_error_handler(request: Request, exc: KioskError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed [{exc.code}]: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected [{exc.code}]: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": describe_validation_error(exc)})

    if config.frontend_dist and os.path.isdir(config.frontend_dist):
        app.mount("/", StaticFiles(directory=config.frontend_dist, html=True), name="frontend")

    @app.on_event("startup")
    async def start_kiosk():
        services = app.state.services
        await services.store.ensure_indexes()
        await services.machine.start()
        if run_ticker:
            services.ticker.start()
        logger.info("Medication kiosk started")

    @app.on_event("shutdown")
    async def shutdown_kiosk():
        services = app.state.services
        await services.ticker.stop()
        await services.machine.stop()
        if mongo_client is not None:
            mongo_client.close()
        logger.info("Medication kiosk stopped")

    return app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=config.host, port=config.port)
