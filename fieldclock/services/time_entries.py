"""
Time entry store.
Clock-in/out, lunch toggles, location pings and admin edits of TimeEntry rows.
Every mutation goes through assert_entry_editable so locked weeks stay frozen.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Personnel, PersonnelSchedule, Project, TimeEntry
from . import clock_alerts
from .audit import compute_diff, create_audit_log
from .errors import (
    ClockBlockedError,
    EntryConflictError,
    EntryLockedError,
    GeofenceViolationError,
    InvalidEntryUpdateError,
    LateClockInError,
    LocationRequiredError,
    NotFoundError,
    OpenEntryExistsError,
    SiteNotGeocodedError,
    TimeClockDisabledError,
)
from .geofence import INSIDE, NOT_GEOCODED, OUTSIDE, evaluate_project_geofence
from .notifications import create_admin_notification
from .time_rules import (
    combine_date_time,
    compute_total_hours,
    ensure_utc,
    local_date,
    resolve_timezone,
    utcnow,
)

logger = structlog.get_logger(__name__)

EDITABLE_FIELDS = ("clock_in_at", "clock_out_at", "lunch_duration_minutes", "hourly_rate", "notes")
NON_NULLABLE_FIELDS = ("clock_in_at", "lunch_duration_minutes")


def serialize_entry(entry: TimeEntry) -> Dict[str, Any]:
    def _iso(value):
        value = ensure_utc(value)
        return value.isoformat() if value else None

    return {
        "id": str(entry.id),
        "personnel_id": str(entry.personnel_id),
        "project_id": str(entry.project_id),
        "week_closeout_id": str(entry.week_closeout_id) if entry.week_closeout_id else None,
        "entry_date": entry.entry_date.isoformat() if entry.entry_date else None,
        "entry_source": entry.entry_source,
        "clock_in_at": _iso(entry.clock_in_at),
        "clock_in_lat": float(entry.clock_in_lat) if entry.clock_in_lat is not None else None,
        "clock_in_lng": float(entry.clock_in_lng) if entry.clock_in_lng is not None else None,
        "clock_out_at": _iso(entry.clock_out_at),
        "last_location_check_at": _iso(entry.last_location_check_at),
        "total_hours": entry.total_hours,
        "is_on_lunch": entry.is_on_lunch,
        "lunch_start_at": _iso(entry.lunch_start_at),
        "lunch_duration_minutes": entry.lunch_duration_minutes,
        "is_locked": entry.is_locked,
        "auto_clocked_out": entry.auto_clocked_out,
        "auto_clock_out_reason": entry.auto_clock_out_reason,
        "clock_blocked_until": _iso(entry.clock_blocked_until),
        "hourly_rate": float(entry.hourly_rate) if entry.hourly_rate is not None else None,
        "notes": entry.notes,
    }


def get_entry(db: Session, entry_id) -> TimeEntry:
    entry = db.query(TimeEntry).filter(TimeEntry.id == entry_id).first()
    if not entry:
        raise NotFoundError("Time entry not found", entry_id=str(entry_id))
    return entry


def _get_project(db: Session, project_id) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFoundError("Project not found", project_id=str(project_id))
    return project


def _get_personnel(db: Session, personnel_id) -> Personnel:
    personnel = db.query(Personnel).filter(Personnel.id == personnel_id).first()
    if not personnel:
        raise NotFoundError("Personnel not found", personnel_id=str(personnel_id))
    return personnel


def assert_entry_editable(entry: TimeEntry) -> None:
    """The write guard every component must respect while a week is closed."""
    if entry.is_locked:
        raise EntryLockedError(entry.id, entry.week_closeout_id)


def get_open_entry(db: Session, personnel_id, project_id) -> Optional[TimeEntry]:
    return (
        db.query(TimeEntry)
        .filter(
            TimeEntry.personnel_id == personnel_id,
            TimeEntry.project_id == project_id,
            TimeEntry.entry_source == "clock",
            TimeEntry.clock_in_at.isnot(None),
            TimeEntry.clock_out_at.is_(None),
        )
        .order_by(TimeEntry.clock_in_at.desc())
        .first()
    )


def get_latest_entry(db: Session, personnel_id, project_id) -> Optional[TimeEntry]:
    return (
        db.query(TimeEntry)
        .filter(
            TimeEntry.personnel_id == personnel_id,
            TimeEntry.project_id == project_id,
            TimeEntry.clock_in_at.isnot(None),
        )
        .order_by(TimeEntry.clock_in_at.desc())
        .first()
    )


def check_clock_block(db: Session, personnel_id, project_id, now: datetime) -> None:
    """Refuse clock-in while the most recent entry carries a future clock_blocked_until."""
    latest = get_latest_entry(db, personnel_id, project_id)
    if latest is None:
        return
    blocked_until = ensure_utc(latest.clock_blocked_until)
    if blocked_until and blocked_until > now:
        raise ClockBlockedError(blocked_until)


def check_schedule_lateness(db: Session, personnel: Personnel, project: Project, now: datetime) -> None:
    """
    Refuse a clock-in that comes more than the grace period after today's
    scheduled start. The attempt is recorded as an alert and admins are told.
    """
    tz = resolve_timezone(project.timezone)
    today = local_date(now, tz)
    schedule = db.query(PersonnelSchedule).filter(
        PersonnelSchedule.personnel_id == personnel.id,
        PersonnelSchedule.project_id == project.id,
        PersonnelSchedule.scheduled_date == today,
    ).order_by(PersonnelSchedule.scheduled_start_time.asc()).first()
    if not schedule:
        return

    scheduled_utc = combine_date_time(today, schedule.scheduled_start_time, tz)
    minutes_late = (now - scheduled_utc).total_seconds() / 60
    if minutes_late <= settings.missed_clock_in_grace_minutes:
        return

    start_str = schedule.scheduled_start_time.strftime("%H:%M:%S")
    alert = clock_alerts.create_clock_alert(
        db,
        clock_alerts.LATE_CLOCK_ATTEMPT,
        personnel.id,
        project.id,
        today,
        metadata={
            "scheduled_start_time": start_str,
            "attempted_at": now.isoformat(),
            "minutes_late": round(minutes_late),
        },
        dedupe_key=clock_alerts.late_clock_attempt_key(personnel.id, project.id, today),
    )
    if alert is not None:
        create_admin_notification(
            db,
            notification_type="late_clock_attempt",
            title="Late Clock-In Attempt",
            message=f"{personnel.full_name} tried to clock in to {project.name} {round(minutes_late)} minutes after the scheduled start ({start_str}).",
            link_url=f"/personnel/{personnel.id}",
            related_id=personnel.id,
            metadata={"project_id": str(project.id), "scheduled_start_time": start_str, "minutes_late": round(minutes_late)},
        )
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
    logger.info("late_clock_in_blocked", personnel_id=str(personnel.id), project_id=str(project.id), minutes_late=round(minutes_late))
    raise LateClockInError(round(minutes_late), start_str)


def clock_in(
    db: Session,
    personnel_id,
    project_id,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    accuracy: Optional[float] = None,
    source: str = "app",
    skip_schedule_check: bool = False,
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TimeEntry:
    """
    Open a clock entry. Nothing is written unless every gate passes:
    time clock enabled, no active clock block, geofence, schedule lateness,
    no other open entry.
    """
    now = ensure_utc(now) or utcnow()
    personnel = _get_personnel(db, personnel_id)
    project = _get_project(db, project_id)

    if not project.time_clock_enabled:
        raise TimeClockDisabledError("Time clock is not enabled for this project", project_id=str(project.id))

    check_clock_block(db, personnel.id, project.id, now)

    if project.require_clock_location:
        if lat is None or lng is None:
            raise LocationRequiredError("This project requires your location to clock in")
        geo = evaluate_project_geofence(project, lat, lng)
        if geo.status == NOT_GEOCODED:
            raise SiteNotGeocodedError(project.id)
        if geo.status == OUTSIDE:
            logger.info("clock_in_outside_geofence", personnel_id=str(personnel.id), project_id=str(project.id), distance_miles=round(geo.distance_miles, 3))
            raise GeofenceViolationError(geo.distance_miles, geo.radius_miles)

    if not skip_schedule_check:
        check_schedule_lateness(db, personnel, project, now)

    existing = get_open_entry(db, personnel.id, project.id)
    if existing:
        raise OpenEntryExistsError(existing.id)

    entry = TimeEntry(
        personnel_id=personnel.id,
        project_id=project.id,
        entry_date=local_date(now, project.timezone),
        entry_source="clock",
        clock_in_at=now,
        clock_in_lat=lat,
        clock_in_lng=lng,
        clock_in_accuracy=accuracy,
        last_location_check_at=now,
        last_location_lat=lat,
        last_location_lng=lng,
        is_on_lunch=False,
        lunch_duration_minutes=0,
        created_at=now,
    )
    db.add(entry)
    try:
        db.flush()
        create_audit_log(
            db,
            entity_type="time_entry",
            entity_id=entry.id,
            action="CLOCK_IN",
            actor_id=actor_id,
            actor_role=actor_role,
            source=source,
            context={"personnel_id": personnel.id, "project_id": project.id, "gps_lat": lat, "gps_lng": lng, "gps_accuracy": accuracy},
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise OpenEntryExistsError()

    db.refresh(entry)
    logger.info("clocked_in", entry_id=str(entry.id), personnel_id=str(personnel.id), project_id=str(project.id))
    return entry


def _finish_lunch(entry: TimeEntry, now: datetime) -> None:
    if entry.is_on_lunch and entry.lunch_start_at:
        minutes = round((now - ensure_utc(entry.lunch_start_at)).total_seconds() / 60)
        entry.lunch_duration_minutes = (entry.lunch_duration_minutes or 0) + max(0, minutes)
        entry.lunch_end_at = now
    entry.is_on_lunch = False


def clock_out(
    db: Session,
    entry_id,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    accuracy: Optional[float] = None,
    actor_id=None,
    actor_role: Optional[str] = None,
    source: str = "app",
    now: Optional[datetime] = None,
) -> Tuple[TimeEntry, bool]:
    """
    Close an open entry.

    Returns:
        (entry, already_closed). An entry that was already closed, e.g. by
        the stale-session reaper, is returned untouched with already_closed=True.
    """
    now = ensure_utc(now) or utcnow()
    entry = get_entry(db, entry_id)

    if entry.clock_out_at is not None:
        logger.info("clock_out_already_closed", entry_id=str(entry.id), auto_clocked_out=entry.auto_clocked_out)
        return entry, True

    assert_entry_editable(entry)

    _finish_lunch(entry, now)
    entry.clock_out_at = now
    entry.clock_out_lat = lat
    entry.clock_out_lng = lng
    entry.clock_out_accuracy = accuracy
    entry.total_hours = compute_total_hours(entry.clock_in_at, now, entry.lunch_duration_minutes)
    entry.updated_at = now

    create_audit_log(
        db,
        entity_type="time_entry",
        entity_id=entry.id,
        action="CLOCK_OUT",
        actor_id=actor_id,
        actor_role=actor_role,
        source=source,
        context={"total_hours": entry.total_hours, "lunch_minutes": entry.lunch_duration_minutes},
    )
    db.commit()
    db.refresh(entry)
    logger.info("clocked_out", entry_id=str(entry.id), total_hours=entry.total_hours)
    return entry, False


def force_close_entry(
    db: Session,
    entry: TimeEntry,
    reason: str,
    now: datetime,
    lunch_minutes: int = 0,
) -> float:
    """
    Auto-clock-out an entry and block re-clock-in for clock_block_hours.
    Adds to the current transaction; the caller commits.

    Returns:
        Hours worked recorded on the entry
    """
    blocked_until = now + timedelta(hours=settings.clock_block_hours)
    hours_worked = compute_total_hours(entry.clock_in_at, now, lunch_minutes)

    entry.clock_out_at = now
    entry.auto_clocked_out = True
    entry.auto_clock_out_reason = reason
    entry.clock_blocked_until = blocked_until
    entry.total_hours = hours_worked
    entry.is_on_lunch = False
    entry.updated_at = now

    create_audit_log(
        db,
        entity_type="time_entry",
        entity_id=entry.id,
        action="AUTO_CLOCK_OUT",
        actor_role="system",
        source="system",
        context={"reason": reason, "hours_worked": hours_worked, "blocked_until": blocked_until},
    )
    return hours_worked


def record_location_ping(
    db: Session,
    entry_id,
    lat: float,
    lng: float,
    accuracy: Optional[float] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Refresh the liveness signal of an open entry.
    A ping outside the geofence of a location-required project closes the
    entry immediately (unless the worker is on lunch).
    """
    now = ensure_utc(now) or utcnow()
    entry = get_entry(db, entry_id)

    if entry.clock_out_at is not None:
        return {
            "status": "already_closed",
            "auto_clocked_out": entry.auto_clocked_out,
            "reason": entry.auto_clock_out_reason,
            "blocked_until": ensure_utc(entry.clock_blocked_until).isoformat() if entry.clock_blocked_until else None,
        }

    assert_entry_editable(entry)

    entry.last_location_lat = lat
    entry.last_location_lng = lng
    entry.last_location_check_at = now

    if entry.is_on_lunch:
        db.commit()
        return {"status": "on_lunch", "auto_clocked_out": False}

    project = _get_project(db, entry.project_id)
    geo = evaluate_project_geofence(project, lat, lng)
    if geo.status != OUTSIDE:
        db.commit()
        return {"status": "updated", "auto_clocked_out": False, "inside_geofence": geo.status == INSIDE}

    reason = f"Left job site - {geo.distance_miles:.2f} miles from site (limit: {geo.radius_miles} miles)"
    hours_worked = force_close_entry(db, entry, reason, now, lunch_minutes=entry.lunch_duration_minutes)
    entry.clock_out_lat = lat
    entry.clock_out_lng = lng
    entry.clock_out_accuracy = accuracy

    personnel = _get_personnel(db, entry.personnel_id)
    today = local_date(now, project.timezone)
    clock_alerts.create_clock_alert(
        db,
        clock_alerts.AUTO_CLOCK_OUT,
        entry.personnel_id,
        entry.project_id,
        today,
        metadata={
            "reason": "left_geofence",
            "distance_miles": round(geo.distance_miles, 4),
            "radius_miles": geo.radius_miles,
            "location": {"lat": lat, "lng": lng},
        },
        time_entry_id=entry.id,
        dedupe_key=clock_alerts.auto_clock_out_key(entry.id),
    )
    create_admin_notification(
        db,
        notification_type="geofence_violation",
        title="Personnel Auto-Clocked Out",
        message=f"{personnel.full_name} was automatically clocked out from {project.name} for leaving the job site ({geo.distance_miles:.2f} mi away).",
        link_url=f"/personnel/{entry.personnel_id}",
        related_id=entry.personnel_id,
        metadata={"time_entry_id": str(entry.id), "project_id": str(project.id), "distance_miles": round(geo.distance_miles, 4)},
    )
    db.commit()
    logger.warning("geofence_exit_auto_clock_out", entry_id=str(entry.id), distance_miles=round(geo.distance_miles, 3))
    return {
        "status": "auto_clocked_out",
        "auto_clocked_out": True,
        "reason": reason,
        "hours_worked": hours_worked,
        "blocked_until": ensure_utc(entry.clock_blocked_until).isoformat(),
    }


def start_lunch(db: Session, entry_id, actor_id=None, now: Optional[datetime] = None) -> TimeEntry:
    now = ensure_utc(now) or utcnow()
    entry = get_entry(db, entry_id)
    if not entry.is_open:
        raise NotFoundError("No open clock entry", entry_id=str(entry_id))
    assert_entry_editable(entry)
    if not entry.is_on_lunch:
        entry.is_on_lunch = True
        entry.lunch_start_at = now
        entry.updated_at = now
        create_audit_log(db, "time_entry", entry.id, "LUNCH_START", actor_id=actor_id, source="app")
        db.commit()
        db.refresh(entry)
    return entry


def end_lunch(db: Session, entry_id, actor_id=None, now: Optional[datetime] = None) -> TimeEntry:
    """End lunch and restart the liveness window."""
    now = ensure_utc(now) or utcnow()
    entry = get_entry(db, entry_id)
    if not entry.is_open:
        raise NotFoundError("No open clock entry", entry_id=str(entry_id))
    assert_entry_editable(entry)
    if entry.is_on_lunch:
        _finish_lunch(entry, now)
        entry.last_location_check_at = now
        entry.updated_at = now
        create_audit_log(
            db, "time_entry", entry.id, "LUNCH_END", actor_id=actor_id, source="app",
            context={"lunch_duration_minutes": entry.lunch_duration_minutes},
        )
        db.commit()
        db.refresh(entry)
    return entry


def update_entry(
    db: Session,
    entry_id,
    changes: Dict[str, Any],
    actor_id=None,
    actor_role: Optional[str] = None,
) -> TimeEntry:
    """
    Admin correction of an entry. Locked entries are refused.

    clock_in_at and lunch_duration_minutes cannot be cleared, and clearing
    clock_out_at would reopen a closed entry, so explicit nulls for those are
    rejected.
    """
    entry = get_entry(db, entry_id)
    assert_entry_editable(entry)

    changes = {field: value for field, value in changes.items() if field in EDITABLE_FIELDS}
    for field in NON_NULLABLE_FIELDS:
        if field in changes and changes[field] is None:
            raise InvalidEntryUpdateError(f"{field} cannot be cleared", field=field)
    if "clock_out_at" in changes and changes["clock_out_at"] is None and entry.clock_out_at is not None:
        raise InvalidEntryUpdateError("A closed entry cannot be reopened", field="clock_out_at")

    clock_in_at = ensure_utc(changes.get("clock_in_at", entry.clock_in_at))
    clock_out_at = ensure_utc(changes.get("clock_out_at", entry.clock_out_at))
    if clock_in_at is not None and clock_out_at is not None and clock_out_at < clock_in_at:
        raise InvalidEntryUpdateError("clock_out_at must be after clock_in_at", field="clock_out_at")

    before = {field: getattr(entry, field) for field in EDITABLE_FIELDS}
    for field, value in changes.items():
        if field in ("clock_in_at", "clock_out_at"):
            value = ensure_utc(value)
        setattr(entry, field, value)

    if clock_in_at is not None and clock_out_at is not None:
        entry.total_hours = compute_total_hours(clock_in_at, clock_out_at, entry.lunch_duration_minutes)
    entry.updated_at = utcnow()

    after = {field: getattr(entry, field) for field in EDITABLE_FIELDS}
    create_audit_log(
        db, "time_entry", entry.id, "UPDATE",
        actor_id=actor_id, actor_role=actor_role, source="admin",
        changes_json=compute_diff(before, after),
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning("entry_update_conflict", entry_id=str(entry_id))
        raise EntryConflictError("Update conflicts with another time entry", entry_id=str(entry_id))
    db.refresh(entry)
    return entry


def clear_clock_block(db: Session, entry_id, actor_id=None, actor_role: Optional[str] = None) -> TimeEntry:
    """Admin lifts the re-clock-in block left by an auto-clock-out."""
    entry = get_entry(db, entry_id)
    if entry.clock_blocked_until is not None:
        previous = entry.clock_blocked_until
        entry.clock_blocked_until = None
        entry.updated_at = utcnow()
        create_audit_log(
            db, "time_entry", entry.id, "CLEAR_BLOCK",
            actor_id=actor_id, actor_role=actor_role, source="admin",
            changes_json={"clock_blocked_until": {"before": previous, "after": None}},
        )
        db.commit()
        db.refresh(entry)
    return entry


def get_clock_history(db: Session, personnel_id, days: int = 14, now: Optional[datetime] = None) -> List[TimeEntry]:
    now = ensure_utc(now) or utcnow()
    since = (now - timedelta(days=days)).date()
    return (
        db.query(TimeEntry)
        .filter(
            TimeEntry.personnel_id == personnel_id,
            TimeEntry.entry_source == "clock",
            TimeEntry.entry_date >= since,
        )
        .order_by(TimeEntry.clock_in_at.desc())
        .all()
    )
