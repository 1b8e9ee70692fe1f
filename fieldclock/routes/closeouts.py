import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import require_time_admin
from ..db import get_db
from ..models.models import User
from ..schemas.time_clock import WeekCloseoutCreate
from ..services.errors import TimeClockError
from ..services.permissions import get_role_name
from ..services.week_closeout import close_week, list_closeouts, reopen_week, serialize_closeout

router = APIRouter(prefix="/week-closeouts", tags=["week-closeouts"])


@router.post("")
def create_closeout(
    payload: WeekCloseoutCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    """
    Close a project week. Entries are locked and missing rates snapshotted.
    Entries whose personnel has no rate are listed in missing_rate_entry_ids.
    """
    try:
        result = close_week(
            db,
            payload.project_id,
            payload.week_start_date,
            customer_id=payload.customer_id,
            notes=payload.notes,
            actor_id=user.id,
            actor_role=get_role_name(user, db),
        )
    except TimeClockError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return {
        "closeout": serialize_closeout(result["closeout"]),
        "entries_locked": result["entries_locked"],
        "rates_snapshotted": result["rates_snapshotted"],
        "missing_rate_entry_ids": result["missing_rate_entry_ids"],
    }


@router.post("/{closeout_id}/reopen")
def reopen_closeout(
    closeout_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    try:
        result = reopen_week(db, closeout_id, actor_id=user.id, actor_role=get_role_name(user, db))
    except TimeClockError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    return {"closeout": serialize_closeout(result["closeout"]), "entries_unlocked": result["entries_unlocked"]}


@router.get("")
def get_closeouts(
    project_id: Optional[uuid.UUID] = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_time_admin),
):
    return [serialize_closeout(c) for c in list_closeouts(db, project_id)]
