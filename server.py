"""FastAPI surface for the alerting engine: job trigger, notification management and budget progress."""

import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import database
from budget_metrics import load_budget_progress
from clock import SystemClock
from config import Settings, configure_logging, load_settings
from domain import NOTIFICATION_TYPES
from errors import AuthorizationError, ConfigurationError, DataUnavailableError, ValidationError
from notification_job import run_notification_job
from repository import SqlAlchemyRepository

logger = logging.getLogger(__name__)

app = FastAPI(title="Budget Alerts Server", version="0.1.0")

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_repository() -> SqlAlchemyRepository:
    return SqlAlchemyRepository(database.SessionLocal)


def get_clock():
    return SystemClock()


def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Owner of the request, as established by the upstream auth layer."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def verify_job_secret(authorization: Optional[str], secret: Optional[str]):
    if not secret:
        return
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise AuthorizationError("Invalid or missing job secret")


@app.exception_handler(DataUnavailableError)
async def data_unavailable_handler(request, exc: DataUnavailableError):
    logger.error("Store unavailable while handling %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# --- Job trigger ---

@app.post("/api/v1/notifications/trigger")
async def trigger_notification_job(
    authorization: Optional[str] = Header(None),
    repository: SqlAlchemyRepository = Depends(get_repository),
    clock=Depends(get_clock),
    settings: Settings = Depends(get_settings),
):
    try:
        verify_job_secret(authorization, settings.job_secret)
    except AuthorizationError:
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        report = await run_notification_job(repository, clock, settings)
    except Exception:
        logger.exception("Error running notification job")
        report = None

    timestamp = clock.now().isoformat()
    if report is None or not report.ok:
        content = {"error": "Failed to run notification job", "timestamp": timestamp}
        if report is not None:
            content["report"] = report.as_dict()
        return JSONResponse(status_code=500, content=content)

    return {
        "message": "Notification job completed successfully",
        "timestamp": timestamp,
        "report": report.as_dict(),
    }


@app.get("/api/v1/notifications/trigger")
async def trigger_status(clock=Depends(get_clock)):
    return {
        "status": "Notification trigger endpoint is active",
        "timestamp": clock.now().isoformat(),
        "usage": "POST to this endpoint to trigger notification checks for all users",
    }


# --- Notifications ---

class NotificationUpdate(BaseModel):
    read: Optional[bool] = None
    title: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    action_url: Optional[str] = None
    expires_at: Optional[datetime] = None


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    hasMore: bool


class NotificationListResponse(BaseModel):
    notifications: List[Dict[str, Any]]
    pagination: Pagination


@app.get("/api/v1/notifications", response_model=NotificationListResponse)
async def list_notifications(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    read: Optional[bool] = None,
    type: Optional[str] = None,
    user_id: str = Depends(current_user_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
):
    if type is not None and type not in NOTIFICATION_TYPES:
        raise HTTPException(status_code=400, detail="Invalid notification type")
    notifications, total = repository.list_notifications(user_id, limit, offset, read, type)
    return NotificationListResponse(
        notifications=[n.as_dict() for n in notifications],
        pagination=Pagination(total=total, limit=limit, offset=offset, hasMore=offset + limit < total),
    )


@app.post("/api/v1/notifications/mark-all-read")
async def mark_all_read(
    user_id: str = Depends(current_user_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
    clock=Depends(get_clock),
):
    now = clock.now()
    marked = repository.mark_all_read(user_id, now)
    return {"message": f"Marked {marked} notifications as read", "markedCount": marked, "readAt": now.isoformat()}


@app.delete("/api/v1/notifications/clear-all")
async def clear_all_notifications(
    user_id: str = Depends(current_user_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
):
    deleted = repository.delete_all_notifications(user_id)
    return {"message": f"Deleted {deleted} notifications", "deletedCount": deleted}


@app.patch("/api/v1/notifications/{notification_id}")
async def update_notification(
    notification_id: str,
    body: NotificationUpdate,
    user_id: str = Depends(current_user_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
    clock=Depends(get_clock),
):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields provided for update")
    expires_at = changes.get("expires_at")
    if expires_at is not None and expires_at.tzinfo is not None:
        changes["expires_at"] = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    notification = repository.update_notification(user_id, notification_id, changes, clock.now())
    if notification is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"notification": notification.as_dict()}


@app.delete("/api/v1/notifications/{notification_id}")
async def delete_notification(
    notification_id: str,
    user_id: str = Depends(current_user_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
):
    deleted = repository.delete_notification(user_id, notification_id)
    return {"deleted": deleted, "id": notification_id}


# --- Preferences ---

class PreferencesUpdate(BaseModel):
    budget_alerts: Optional[bool] = None
    goal_reminders: Optional[bool] = None
    transaction_alerts: Optional[bool] = None
    email_notifications: Optional[bool] = None
    budget_thresholds: Optional[List[float]] = None
    goal_reminder_days: Optional[int] = Field(None, ge=0, le=365)
    goal_reminder_frequency: Optional[str] = None
    transaction_min_amount: Optional[float] = Field(None, gt=0)
    unusual_spending: Optional[bool] = None


@app.get("/api/v1/notification-preferences")
async def get_notification_preferences(
    user_id: str = Depends(current_user_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
):
    preferences = repository.get_notification_preferences(user_id)
    return {"notificationPreferences": preferences.model_dump(exclude={"owner"})}


@app.patch("/api/v1/notification-preferences")
async def update_notification_preferences(
    body: PreferencesUpdate,
    user_id: str = Depends(current_user_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No valid fields provided for update")
    try:
        preferences = repository.update_notification_preferences(user_id, changes)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "notificationPreferences": preferences.model_dump(exclude={"owner"}),
        "message": "Notification preferences updated successfully",
        "updatedFields": sorted(changes),
    }


# --- Budgets ---

@app.get("/api/v1/budgets/{budget_id}/progress")
async def budget_progress(
    budget_id: str,
    user_id: str = Depends(current_user_id),
    repository: SqlAlchemyRepository = Depends(get_repository),
    clock=Depends(get_clock),
):
    budget = repository.get_budget(user_id, budget_id)
    if budget is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    try:
        progress = load_budget_progress(repository, budget, clock.now())
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return progress.as_dict()


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    database.init_db()
    uvicorn.run("server:app", host="0.0.0.0", port=8001, reload=True)
