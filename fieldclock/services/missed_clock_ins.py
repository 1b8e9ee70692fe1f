"""
Missed clock-in checker.
Alerts admins about scheduled personnel who have not clocked in by the
scheduled start plus the grace period. One alert per personnel, project and day.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Personnel, PersonnelSchedule, Project, TimeEntry
from . import clock_alerts
from .notifications import create_admin_notification
from .time_rules import combine_date_time, ensure_utc, local_date, resolve_timezone, utcnow

logger = structlog.get_logger(__name__)


def _has_clocked_in(db: Session, schedule: PersonnelSchedule) -> bool:
    return db.query(TimeEntry.id).filter(
        TimeEntry.personnel_id == schedule.personnel_id,
        TimeEntry.project_id == schedule.project_id,
        TimeEntry.entry_date == schedule.scheduled_date,
        TimeEntry.entry_source == "clock",
        TimeEntry.clock_in_at.isnot(None),
    ).first() is not None


def check_missed_clock_ins(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Run one pass of the missed clock-in check.

    Schedules are local to their project's timezone, so "today" and the
    start time are resolved per project.

    Returns:
        {success, checked, alerts_created}
    """
    now = ensure_utc(now) or utcnow()
    grace = timedelta(minutes=settings.missed_clock_in_grace_minutes)

    # Candidate days span the timezones projects may be in
    candidate_days = {(now - timedelta(days=1)).date(), now.date(), (now + timedelta(days=1)).date()}
    schedules = (
        db.query(PersonnelSchedule, Project)
        .join(Project, Project.id == PersonnelSchedule.project_id)
        .filter(PersonnelSchedule.scheduled_date.in_(candidate_days))
        .order_by(PersonnelSchedule.scheduled_start_time.asc())
        .all()
    )

    checked = 0
    alerts_created = 0
    for schedule, project in schedules:
        tz = resolve_timezone(project.timezone)
        if schedule.scheduled_date != local_date(now, tz):
            continue
        scheduled_utc = combine_date_time(schedule.scheduled_date, schedule.scheduled_start_time, tz)
        if scheduled_utc + grace > now:
            continue

        checked += 1
        if not project.time_clock_enabled:
            continue

        dedupe_key = clock_alerts.missed_clock_in_key(schedule.personnel_id, schedule.project_id, schedule.scheduled_date)
        if clock_alerts.alert_exists(db, dedupe_key):
            continue
        if _has_clocked_in(db, schedule):
            continue

        personnel = db.query(Personnel).filter(Personnel.id == schedule.personnel_id).first()
        personnel_name = personnel.full_name if personnel else "Unknown personnel"
        start_str = schedule.scheduled_start_time.strftime("%H:%M:%S")

        try:
            alert = clock_alerts.create_clock_alert(
                db,
                clock_alerts.MISSED_CLOCK_IN,
                schedule.personnel_id,
                schedule.project_id,
                schedule.scheduled_date,
                metadata={"scheduled_start_time": start_str, "checked_at": now.isoformat()},
                dedupe_key=dedupe_key,
            )
            if alert is None:
                continue
            create_admin_notification(
                db,
                notification_type="missed_clock_in",
                title="Missed Clock-In Alert",
                message=(
                    f"{personnel_name} has not clocked in to {project.name}. "
                    f"Scheduled start was {start_str} (now {settings.missed_clock_in_grace_minutes}+ minutes late)."
                ),
                link_url=f"/personnel/{schedule.personnel_id}",
                related_id=schedule.personnel_id,
                metadata={
                    "schedule_id": str(schedule.id),
                    "project_id": str(schedule.project_id),
                    "scheduled_start_time": start_str,
                },
                group_key=f"missed_clock_in:{schedule.project_id}:{schedule.scheduled_date.isoformat()}",
            )
            db.commit()
            alerts_created += 1
            logger.info("missed_clock_in_alert_created", personnel_id=str(schedule.personnel_id), project_id=str(schedule.project_id))
        except IntegrityError:
            # Another run recorded the same alert first
            db.rollback()
            logger.info("missed_clock_in_alert_duplicate", dedupe_key=dedupe_key)

    logger.info("missed_clock_in_check_complete", checked=checked, alerts_created=alerts_created)
    return {"success": True, "checked": checked, "alerts_created": alerts_created}
