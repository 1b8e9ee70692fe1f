"""
Time clock API routes.
Clock-in/out, location pings, lunch toggles and admin corrections.
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import ensure_personnel_access, get_current_user, require_time_admin
from ..db import get_db
from ..models.models import Personnel, Project, TimeEntry, User
from ..schemas.time_clock import (
    ClockInRequest,
    ClockOutRequest,
    EntryUpdate,
    GeofenceSettingsUpdate,
    LocationPing,
)
from ..services import time_entries
from ..services.audit import compute_diff, create_audit_log, get_audit_logs
from ..services.errors import TimeClockError
from ..services.geofence import effective_radius, validate_radius
from ..services.permissions import can_manage_time, get_role_name
from ..services.time_rules import ensure_utc

router = APIRouter(prefix="/time-clock", tags=["time-clock"])


def _http_error(e: TimeClockError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


def _authorize_entry(db: Session, user: User, entry_id) -> TimeEntry:
    try:
        entry = time_entries.get_entry(db, entry_id)
    except TimeClockError as e:
        raise _http_error(e)
    personnel = db.query(Personnel).filter(Personnel.id == entry.personnel_id).first()
    if personnel is None:
        raise HTTPException(status_code=404, detail="Personnel not found")
    ensure_personnel_access(user, personnel, db)
    return entry


@router.post("/clock-in")
def clock_in(
    payload: ClockInRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """
    Open a clock entry for personnel on a project.
    skip_schedule_check is an admin override of the late clock-in guard.
    """
    personnel = db.query(Personnel).filter(Personnel.id == payload.personnel_id).first()
    if not personnel:
        raise HTTPException(status_code=404, detail="Personnel not found")
    ensure_personnel_access(user, personnel, db)
    if payload.skip_schedule_check and not can_manage_time(user, db):
        raise HTTPException(status_code=403, detail="Only admins can skip the schedule check")

    try:
        entry = time_entries.clock_in(
            db,
            personnel_id=personnel.id,
            project_id=payload.project_id,
            lat=payload.lat,
            lng=payload.lng,
            accuracy=payload.accuracy,
            source=payload.source,
            skip_schedule_check=payload.skip_schedule_check,
            actor_id=user.id,
            actor_role=get_role_name(user, db),
        )
    except TimeClockError as e:
        raise _http_error(e)
    return time_entries.serialize_entry(entry)


@router.post("/entries/{entry_id}/clock-out")
def clock_out(
    entry_id: uuid.UUID,
    payload: Optional[ClockOutRequest] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    entry = _authorize_entry(db, user, entry_id)
    payload = payload or ClockOutRequest()
    try:
        entry, already_closed = time_entries.clock_out(
            db,
            entry.id,
            lat=payload.lat,
            lng=payload.lng,
            accuracy=payload.accuracy,
            actor_id=user.id,
            actor_role=get_role_name(user, db),
        )
    except TimeClockError as e:
        raise _http_error(e)
    return {"already_closed": already_closed, "entry": time_entries.serialize_entry(entry)}


@router.post("/entries/{entry_id}/location")
def location_ping(
    entry_id: uuid.UUID,
    payload: LocationPing,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Liveness ping. May auto-clock-out when the device has left the site."""
    entry = _authorize_entry(db, user, entry_id)
    try:
        return time_entries.record_location_ping(db, entry.id, payload.lat, payload.lng, payload.accuracy)
    except TimeClockError as e:
        raise _http_error(e)


@router.post("/entries/{entry_id}/lunch/start")
def start_lunch(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    entry = _authorize_entry(db, user, entry_id)
    try:
        entry = time_entries.start_lunch(db, entry.id, actor_id=user.id)
    except TimeClockError as e:
        raise _http_error(e)
    return time_entries.serialize_entry(entry)


@router.post("/entries/{entry_id}/lunch/end")
def end_lunch(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    entry = _authorize_entry(db, user, entry_id)
    try:
        entry = time_entries.end_lunch(db, entry.id, actor_id=user.id)
    except TimeClockError as e:
        raise _http_error(e)
    return time_entries.serialize_entry(entry)


@router.patch("/entries/{entry_id}")
def update_entry(
    entry_id: uuid.UUID,
    payload: EntryUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No changes provided")
    try:
        entry = time_entries.update_entry(db, entry_id, changes, actor_id=user.id, actor_role=get_role_name(user, db))
    except TimeClockError as e:
        raise _http_error(e)
    return time_entries.serialize_entry(entry)


@router.post("/entries/{entry_id}/clear-block")
def clear_block(
    entry_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    try:
        entry = time_entries.clear_clock_block(db, entry_id, actor_id=user.id, actor_role=get_role_name(user, db))
    except TimeClockError as e:
        raise _http_error(e)
    return time_entries.serialize_entry(entry)


@router.get("/open")
def get_open_entry(
    personnel_id: uuid.UUID,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """The open clock entry for personnel+project, used to resume a session after a restart."""
    personnel = db.query(Personnel).filter(Personnel.id == personnel_id).first()
    if not personnel:
        raise HTTPException(status_code=404, detail="Personnel not found")
    ensure_personnel_access(user, personnel, db)
    entry = time_entries.get_open_entry(db, personnel.id, project_id)
    return {"entry": time_entries.serialize_entry(entry) if entry else None}


@router.get("/history")
def get_history(
    personnel_id: uuid.UUID,
    days: int = 14,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    personnel = db.query(Personnel).filter(Personnel.id == personnel_id).first()
    if not personnel:
        raise HTTPException(status_code=404, detail="Personnel not found")
    ensure_personnel_access(user, personnel, db)
    entries = time_entries.get_clock_history(db, personnel.id, days=max(1, min(days, 90)))
    return [time_entries.serialize_entry(e) for e in entries]


@router.put("/projects/{project_id}/geofence")
def update_geofence_settings(
    project_id: uuid.UUID,
    payload: GeofenceSettingsUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")

    changes = payload.model_dump(exclude_unset=True)
    if changes.get("geofence_radius_miles") is not None:
        try:
            validate_radius(changes["geofence_radius_miles"])
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    fields = ("site_lat", "site_lng", "geofence_radius_miles", "require_clock_location", "time_clock_enabled")
    before = {f: getattr(project, f) for f in fields}
    for field, value in changes.items():
        setattr(project, field, value)
    after = {f: getattr(project, f) for f in fields}

    create_audit_log(
        db, "project", project.id, "UPDATE_GEOFENCE",
        actor_id=user.id, actor_role=get_role_name(user, db), source="admin",
        changes_json=compute_diff(before, after),
    )
    db.commit()
    db.refresh(project)
    return {
        "id": str(project.id),
        "site_lat": float(project.site_lat) if project.site_lat is not None else None,
        "site_lng": float(project.site_lng) if project.site_lng is not None else None,
        "geofence_radius_miles": effective_radius(project),
        "require_clock_location": project.require_clock_location,
        "time_clock_enabled": project.time_clock_enabled,
    }


@router.get("/audit")
def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    """Audit trail of clock actions, closeouts and geofence changes, newest first."""
    logs = get_audit_logs(db, entity_type, entity_id, limit, offset)
    return [
        {
            "id": str(log.id),
            "entity_type": log.entity_type,
            "entity_id": str(log.entity_id),
            "action": log.action,
            "actor_id": str(log.actor_id) if log.actor_id else None,
            "actor_role": log.actor_role,
            "source": log.source,
            "changes_json": log.changes_json,
            "timestamp_utc": ensure_utc(log.timestamp_utc).isoformat() if log.timestamp_utc else None,
            "context": log.context,
            "integrity_hash": log.integrity_hash,
        }
        for log in logs
    ]
