"""
Week closeout manager.

Closing a week snapshots missing hourly rates, records the closeout and locks
every entry of the project week. A week with open clock entries is refused,
since a locked open entry could never be clocked out or reaped. Reopening
unlocks the entries. Both transitions run in a single database transaction.
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import Personnel, Project, TimeEntry, WeekCloseout
from .audit import create_audit_log
from .errors import CloseoutNotClosedError, NotFoundError, OpenEntriesInWeekError, WeekAlreadyClosedError
from .notifications import create_admin_notification
from .time_rules import ensure_utc, utcnow, week_bounds

logger = structlog.get_logger(__name__)


def serialize_closeout(closeout: WeekCloseout) -> Dict[str, Any]:
    def _iso(value):
        value = ensure_utc(value)
        return value.isoformat() if value else None

    return {
        "id": str(closeout.id),
        "project_id": str(closeout.project_id),
        "customer_id": str(closeout.customer_id) if closeout.customer_id else None,
        "week_start_date": closeout.week_start_date.isoformat(),
        "week_end_date": closeout.week_end_date.isoformat(),
        "status": closeout.status,
        "notes": closeout.notes,
        "closed_at": _iso(closeout.closed_at),
        "closed_by": str(closeout.closed_by) if closeout.closed_by else None,
        "reopened_at": _iso(closeout.reopened_at),
        "reopened_by": str(closeout.reopened_by) if closeout.reopened_by else None,
    }


def _week_entries(db: Session, project_id, week_start: date, week_end: date) -> List[TimeEntry]:
    return (
        db.query(TimeEntry)
        .filter(
            TimeEntry.project_id == project_id,
            TimeEntry.entry_date >= week_start,
            TimeEntry.entry_date <= week_end,
        )
        .all()
    )


def snapshot_missing_rates(db: Session, entries: List[TimeEntry]) -> List[str]:
    """
    Stamp each personnel's current rate onto entries that have none.

    Returns:
        IDs of entries left without a rate because the personnel has none
    """
    missing: List[str] = []
    rates: Dict[Any, Optional[float]] = {}
    for entry in entries:
        if entry.hourly_rate is not None:
            continue
        if entry.personnel_id not in rates:
            personnel = db.query(Personnel).filter(Personnel.id == entry.personnel_id).first()
            rates[entry.personnel_id] = personnel.hourly_rate if personnel else None
        rate = rates[entry.personnel_id]
        if rate is None:
            missing.append(str(entry.id))
            continue
        entry.hourly_rate = rate
    return missing


def close_week(
    db: Session,
    project_id,
    week_start_date: date,
    customer_id=None,
    notes: Optional[str] = None,
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Close the Monday-Sunday week containing week_start_date.

    Returns:
        {closeout, entries_locked, rates_snapshotted, missing_rate_entry_ids}
    """
    now = ensure_utc(now) or utcnow()
    week_start, week_end = week_bounds(week_start_date)

    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise NotFoundError("Project not found", project_id=str(project_id))

    existing = db.query(WeekCloseout).filter(
        WeekCloseout.project_id == project.id,
        WeekCloseout.week_start_date == week_start,
        WeekCloseout.status == "closed",
    ).first()
    if existing:
        raise WeekAlreadyClosedError(
            f"Week of {week_start.isoformat()} is already closed",
            closeout_id=str(existing.id),
        )

    open_ids = [
        row.id
        for row in db.query(TimeEntry.id).filter(
            TimeEntry.project_id == project.id,
            TimeEntry.entry_date >= week_start,
            TimeEntry.entry_date <= week_end,
            TimeEntry.clock_out_at.is_(None),
        )
    ]
    if open_ids:
        raise OpenEntriesInWeekError(open_ids)

    try:
        entries = _week_entries(db, project.id, week_start, week_end)
        had_rate = sum(1 for e in entries if e.hourly_rate is not None)
        missing_rate_ids = snapshot_missing_rates(db, entries)

        closeout = WeekCloseout(
            project_id=project.id,
            customer_id=customer_id or project.customer_id,
            week_start_date=week_start,
            week_end_date=week_end,
            status="closed",
            notes=notes,
            closed_at=now,
            closed_by=actor_id,
        )
        db.add(closeout)
        db.flush()

        for entry in entries:
            entry.is_locked = True
            entry.week_closeout_id = closeout.id
            entry.updated_at = now

        create_audit_log(
            db, "week_closeout", closeout.id, "WEEK_CLOSE",
            actor_id=actor_id, actor_role=actor_role, source="admin",
            context={
                "project_id": project.id,
                "week_start_date": week_start,
                "entries_locked": len(entries),
                "missing_rate_entry_ids": missing_rate_ids,
            },
        )
        create_admin_notification(
            db,
            notification_type="week_closed",
            title="Week Closed",
            message=f"{project.name}: week of {week_start.isoformat()} closed ({len(entries)} entries locked).",
            link_url=f"/projects/{project.id}/time",
            related_id=closeout.id,
            metadata={"project_id": str(project.id), "week_start_date": week_start.isoformat(), "missing_rate_entry_ids": missing_rate_ids},
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("week_close_failed", project_id=str(project_id), week_start_date=week_start.isoformat())
        raise

    db.refresh(closeout)
    if missing_rate_ids:
        logger.warning("week_closed_with_missing_rates", closeout_id=str(closeout.id), entry_ids=missing_rate_ids)
    logger.info("week_closed", closeout_id=str(closeout.id), entries_locked=len(entries))
    return {
        "closeout": closeout,
        "entries_locked": len(entries),
        "rates_snapshotted": len(entries) - had_rate - len(missing_rate_ids),
        "missing_rate_entry_ids": missing_rate_ids,
    }


def reopen_week(
    db: Session,
    closeout_id,
    actor_id=None,
    actor_role: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Unlock and unlink every entry of a closed week and mark the closeout reopened.
    Snapshotted rates stay on the entries.
    """
    now = ensure_utc(now) or utcnow()
    closeout = db.query(WeekCloseout).filter(WeekCloseout.id == closeout_id).first()
    if not closeout:
        raise NotFoundError("Week closeout not found", closeout_id=str(closeout_id))
    if closeout.status != "closed":
        raise CloseoutNotClosedError(
            f"Week closeout is {closeout.status}, not closed",
            closeout_id=str(closeout.id),
        )

    try:
        entries = db.query(TimeEntry).filter(TimeEntry.week_closeout_id == closeout.id).all()
        for entry in entries:
            entry.is_locked = False
            entry.week_closeout_id = None
            entry.updated_at = now

        closeout.status = "reopened"
        closeout.reopened_at = now
        closeout.reopened_by = actor_id

        create_audit_log(
            db, "week_closeout", closeout.id, "WEEK_REOPEN",
            actor_id=actor_id, actor_role=actor_role, source="admin",
            context={"project_id": closeout.project_id, "entries_unlocked": len(entries)},
        )
        create_admin_notification(
            db,
            notification_type="week_reopened",
            title="Week Reopened",
            message=f"Week of {closeout.week_start_date.isoformat()} was reopened ({len(entries)} entries unlocked).",
            link_url=f"/projects/{closeout.project_id}/time",
            related_id=closeout.id,
            metadata={"project_id": str(closeout.project_id), "week_start_date": closeout.week_start_date.isoformat()},
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("week_reopen_failed", closeout_id=str(closeout_id))
        raise

    db.refresh(closeout)
    logger.info("week_reopened", closeout_id=str(closeout.id), entries_unlocked=len(entries))
    return {"closeout": closeout, "entries_unlocked": len(entries)}


def list_closeouts(db: Session, project_id=None) -> List[WeekCloseout]:
    query = db.query(WeekCloseout)
    if project_id:
        query = query.filter(WeekCloseout.project_id == project_id)
    return query.order_by(WeekCloseout.week_start_date.desc(), WeekCloseout.closed_at.desc()).all()
