"""
Stale-session reaper.

Scheduled reconciliation that force-closes clock entries whose location
liveness signal is overdue. Each entry is committed on its own; one bad row
is logged and reported without stopping the batch.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Personnel, Project, TimeEntry
from . import clock_alerts
from .notifications import create_admin_notification
from .time_entries import force_close_entry
from .time_rules import ensure_utc, local_date, utcnow

logger = structlog.get_logger(__name__)

STALE_REASON = "No location update for {minutes}+ minutes"


def find_stale_entries(db: Session, now: datetime) -> List[TimeEntry]:
    """
    Open, unlocked, not-on-lunch entries on location-required projects whose
    last location check is older than the staleness window.
    """
    threshold = now - timedelta(minutes=settings.stale_location_minutes)
    return (
        db.query(TimeEntry)
        .join(Project, Project.id == TimeEntry.project_id)
        .filter(
            TimeEntry.clock_out_at.is_(None),
            TimeEntry.clock_in_at.isnot(None),
            TimeEntry.auto_clocked_out.is_(False),
            TimeEntry.is_on_lunch.is_(False),
            TimeEntry.is_locked.is_(False),
            TimeEntry.last_location_check_at < threshold,
            Project.require_clock_location.is_(True),
        )
        .order_by(TimeEntry.clock_in_at.asc())
        .all()
    )


def _reap_entry(db: Session, entry: TimeEntry, now: datetime, reason: str) -> Dict[str, Any]:
    project = db.query(Project).filter(Project.id == entry.project_id).first()
    personnel = db.query(Personnel).filter(Personnel.id == entry.personnel_id).first()
    personnel_name = personnel.full_name if personnel else "Unknown personnel"
    project_name = project.name if project else "Unknown project"
    last_check = ensure_utc(entry.last_location_check_at)

    hours_worked = force_close_entry(db, entry, reason, now)
    blocked_until = ensure_utc(entry.clock_blocked_until)

    alert = clock_alerts.create_clock_alert(
        db,
        clock_alerts.AUTO_CLOCK_OUT,
        entry.personnel_id,
        entry.project_id,
        local_date(now, project.timezone if project else None),
        metadata={
            "reason": "stale_location",
            "last_location_check_at": last_check.isoformat() if last_check else None,
            "hours_worked": f"{hours_worked:.2f}",
            "blocked_until": blocked_until.isoformat(),
        },
        time_entry_id=entry.id,
        dedupe_key=clock_alerts.auto_clock_out_key(entry.id),
    )

    create_admin_notification(
        db,
        notification_type="auto_clock_out",
        title="Personnel Auto-Clocked Out (Stale Location)",
        message=(
            f"{personnel_name} was automatically clocked out from {project_name} - "
            f"no location update received for {settings.stale_location_minutes}+ minutes."
        ),
        link_url=f"/personnel/{entry.personnel_id}",
        related_id=entry.id,
        metadata={
            "personnel_id": str(entry.personnel_id),
            "personnel_name": personnel_name,
            "project_id": str(entry.project_id),
            "project_name": project_name,
            "reason": "stale_location",
            "hours_worked": f"{hours_worked:.2f}",
        },
    )

    return {
        "id": str(entry.id),
        "success": True,
        "personnel": personnel_name,
        "project": project_name,
        "hours_worked": f"{hours_worked:.2f}",
        "alert_created": alert is not None,
    }


def reap_stale_sessions(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Run one pass of the reaper.

    Returns:
        Summary envelope {success, message, checked, processed, alerts_created, results}
    """
    now = ensure_utc(now) or utcnow()
    reason = STALE_REASON.format(minutes=settings.stale_location_minutes)
    stale_entries = find_stale_entries(db, now)
    entry_ids = [entry.id for entry in stale_entries]
    logger.info("stale_clock_check_started", found=len(entry_ids), stale_minutes=settings.stale_location_minutes)

    results: List[Dict[str, Any]] = []
    for entry_id in entry_ids:
        try:
            entry = db.query(TimeEntry).filter(TimeEntry.id == entry_id).first()
            # A concurrent clock-out may have landed since the scan
            if entry is None or entry.clock_out_at is not None:
                continue
            result = _reap_entry(db, entry, now, reason)
            db.commit()
            results.append(result)
            logger.info("stale_entry_auto_clocked_out", entry_id=str(entry_id), hours_worked=result["hours_worked"])
        except Exception as e:
            db.rollback()
            logger.exception("stale_entry_failed", entry_id=str(entry_id), error=str(e))
            results.append({"id": str(entry_id), "success": False, "error": str(e)})

    processed = sum(1 for r in results if r["success"])
    alerts_created = sum(1 for r in results if r.get("alert_created"))
    logger.info("stale_clock_check_complete", processed=processed, total=len(entry_ids))
    return {
        "success": True,
        "message": f"Auto-clocked out {processed} stale entries" if entry_ids else "No stale entries found",
        "checked": len(entry_ids),
        "processed": processed,
        "alerts_created": alerts_created,
        "results": results,
    }
