"""
Scheduler triggers.
An external scheduler (cron, platform job runner) calls these on an interval.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import require_time_admin
from ..db import get_db
from ..models.models import User
from ..services.missed_clock_ins import check_missed_clock_ins
from ..services.reaper import reap_stale_sessions

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/check-stale-clocks")
def run_stale_clock_check(
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    return reap_stale_sessions(db)


@router.post("/check-missed-clock-ins")
def run_missed_clock_in_check(
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    return check_missed_clock_ins(db)
