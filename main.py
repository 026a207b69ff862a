import os
import logging
from contextlib import asynccontextmanager
from datetime import date as dt_date
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from database import get_store
from notifications import InboxNotifier, NotificationEngine
from schemas import (
    Medication,
    MedicationCreate,
    MedicationUpdate,
    PermissionUpdate,
    RescheduleCreate,
    TakenRequest,
    TemporaryReschedule,
    UntakenRequest,
    WEEKDAYS,
)
from tracker import MedicationNotFound, MedicationTracker, RescheduleNotAllowed, TrackerError

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - load persisted state and run the daily reset if the day changed
    - start the reminder engine on an AsyncIOScheduler
    - re-run the daily reset every day at 00:00
    - cancel every pending reminder on shutdown
    """
    tracker = MedicationTracker(get_store())
    tracker.load()

    notifier = InboxNotifier(
        permission=os.getenv("NOTIFICATION_PERMISSION", "default"),
        maxlen=int(os.getenv("NOTIFICATION_INBOX_SIZE", 50)),
    )
    scheduler = AsyncIOScheduler()
    engine = NotificationEngine(tracker, scheduler, notifier)

    async def _daily_reset_job():
        tracker.ensure_daily_reset()
        engine.reconcile()

    scheduler.add_job(_daily_reset_job, CronTrigger(hour=0, minute=0), id="daily_reset")
    scheduler.start()
    engine.start()

    app.state.tracker = tracker
    app.state.notifier = notifier
    app.state.engine = engine
    try:
        yield
    finally:
        engine.shutdown()
        scheduler.shutdown(wait=False)
        logger.info("Reminder scheduler stopped")


app = FastAPI(title="Pill Reminder API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_tracker(request: Request) -> MedicationTracker:
    return request.app.state.tracker


def get_engine(request: Request) -> NotificationEngine:
    return request.app.state.engine


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, MedicationNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, RescheduleNotAllowed):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    return HTTPException(status_code=500, detail=str(e))


@app.get("/")
def read_root():
    return {"message": "Pill Reminder Backend Running"}


@app.get("/test")
async def test_database(tracker: MedicationTracker = Depends(get_tracker)):
    store = tracker.store
    response = {
        "backend": "✅ Running",
        "store": store.name,
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "medications": len(tracker.medications),
    }
    if store.name == "memory":
        response["database"] = "⚠️  In-memory only, data is lost on restart"
    elif store.ping():
        response["database"] = "✅ Connected & Working"
    else:
        response["database"] = "⚠️  Configured but not reachable"
    return response


# Medications
@app.get("/api/medications", response_model=List[Medication])
async def list_medications(tracker: MedicationTracker = Depends(get_tracker)):
    return tracker.medications


@app.post("/api/medications", response_model=Medication, status_code=201)
async def create_medication(payload: MedicationCreate, tracker: MedicationTracker = Depends(get_tracker)):
    try:
        return tracker.add_medication(payload)
    except TrackerError as e:
        raise _http_error(e)


@app.get("/api/medications/{medication_id}", response_model=Medication)
async def get_medication(medication_id: str, tracker: MedicationTracker = Depends(get_tracker)):
    try:
        return tracker.get_medication(medication_id)
    except TrackerError as e:
        raise _http_error(e)


@app.patch("/api/medications/{medication_id}", response_model=Medication)
async def update_medication(
    medication_id: str,
    payload: MedicationUpdate,
    tracker: MedicationTracker = Depends(get_tracker),
):
    try:
        return tracker.update_medication(medication_id, payload)
    except (TrackerError, ValidationError) as e:
        raise _http_error(e)


@app.delete("/api/medications/{medication_id}")
async def delete_medication(medication_id: str, tracker: MedicationTracker = Depends(get_tracker)):
    try:
        tracker.delete_medication(medication_id)
        return {"deleted": medication_id}
    except TrackerError as e:
        raise _http_error(e)


# Schedule endpoint for a given date
@app.get("/api/schedule")
async def get_schedule(date: Optional[str] = None, tracker: MedicationTracker = Depends(get_tracker)):
    if date:
        try:
            target = dt_date.fromisoformat(date)
        except ValueError:
            raise HTTPException(status_code=400, detail="date must be YYYY-MM-DD")
    else:
        target = tracker.today()
    items = tracker.occurrences_for(target)
    return {
        "date": target.isoformat(),
        "weekday": WEEKDAYS[target.weekday()],
        "is_today": target == tracker.today(),
        "items": items,
    }


# Taken log
@app.post("/api/taken")
async def mark_taken(payload: TakenRequest, tracker: MedicationTracker = Depends(get_tracker)):
    try:
        tracker.mark_taken(payload.medication_id, payload.date, payload.scheduled_time, payload.actual_taken_time)
    except TrackerError as e:
        raise _http_error(e)
    return {"medication_id": payload.medication_id, "date": payload.date,
            "scheduled_time": payload.scheduled_time, "taken": True}


@app.delete("/api/taken")
async def unmark_taken(payload: UntakenRequest, tracker: MedicationTracker = Depends(get_tracker)):
    try:
        tracker.unmark_taken(payload.medication_id, payload.date, payload.scheduled_time)
    except TrackerError as e:
        raise _http_error(e)
    return {"medication_id": payload.medication_id, "date": payload.date,
            "scheduled_time": payload.scheduled_time, "taken": False}


# Reschedules
@app.get("/api/reschedules", response_model=List[TemporaryReschedule])
async def list_reschedules(tracker: MedicationTracker = Depends(get_tracker)):
    return tracker.reschedules


@app.post("/api/reschedules", response_model=TemporaryReschedule, status_code=201)
async def add_reschedule(payload: RescheduleCreate, tracker: MedicationTracker = Depends(get_tracker)):
    try:
        return tracker.add_reschedule(
            payload.medication_id, payload.original_date, payload.original_time, payload.new_time
        )
    except TrackerError as e:
        raise _http_error(e)


# Notifications
@app.get("/api/notifications")
async def list_notifications(request: Request):
    return list(request.app.state.notifier.inbox)


@app.get("/api/notifications/permission")
async def get_permission(request: Request):
    return {"permission": request.app.state.notifier.permission}


@app.put("/api/notifications/permission")
async def set_permission(payload: PermissionUpdate, request: Request, engine: NotificationEngine = Depends(get_engine)):
    request.app.state.notifier.set_permission(payload.permission)
    engine.reconcile()
    return {"permission": payload.permission, "scheduled": len(engine.pending_job_ids)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
