"""
Clock alert records.

Duplicates are rejected by the unique dedupe_key column. The pre-check here
only avoids a round-trip in the common case; callers that run concurrently
must still expect IntegrityError on flush/commit and treat it as "already
recorded".
"""
from datetime import date
from typing import Optional, Dict
from sqlalchemy.orm import Session

from ..models.models import ClockAlert
from .time_rules import utcnow

MISSED_CLOCK_IN = "missed_clock_in"
AUTO_CLOCK_OUT = "auto_clock_out"
LATE_CLOCK_ATTEMPT = "late_clock_attempt"


def missed_clock_in_key(personnel_id, project_id, alert_date: date) -> str:
    return f"{MISSED_CLOCK_IN}:{personnel_id}:{project_id}:{alert_date.isoformat()}"


def late_clock_attempt_key(personnel_id, project_id, alert_date: date) -> str:
    return f"{LATE_CLOCK_ATTEMPT}:{personnel_id}:{project_id}:{alert_date.isoformat()}"


def auto_clock_out_key(time_entry_id) -> str:
    return f"{AUTO_CLOCK_OUT}:{time_entry_id}"


def alert_exists(db: Session, dedupe_key: str) -> bool:
    return db.query(ClockAlert.id).filter(ClockAlert.dedupe_key == dedupe_key).first() is not None


def create_clock_alert(
    db: Session,
    alert_type: str,
    personnel_id,
    project_id,
    alert_date: date,
    metadata: Optional[Dict] = None,
    time_entry_id=None,
    dedupe_key: Optional[str] = None,
) -> Optional[ClockAlert]:
    """
    Add a clock alert to the current transaction.

    Returns:
        The new alert, or None when an alert with the same dedupe_key exists
    """
    if dedupe_key and alert_exists(db, dedupe_key):
        return None

    alert = ClockAlert(
        alert_type=alert_type,
        personnel_id=personnel_id,
        project_id=project_id,
        time_entry_id=time_entry_id,
        alert_date=alert_date,
        dedupe_key=dedupe_key,
        alert_metadata=metadata,
        created_at=utcnow(),
    )
    db.add(alert)
    db.flush()
    return alert
