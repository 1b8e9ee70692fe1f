from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import AdminNotification, User
from ..schemas.time_clock import PreferencesUpdate
from ..services.notifications import PREFERENCE_FIELDS, get_or_create_preferences
from ..services.time_rules import ensure_utc, utcnow

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _serialize(notification: AdminNotification) -> dict:
    created_at = ensure_utc(notification.created_at)
    updated_at = ensure_utc(notification.updated_at)
    return {
        "id": str(notification.id),
        "type": notification.notification_type,
        "title": notification.title,
        "message": notification.message,
        "link": notification.link_url,
        "related_id": notification.related_id,
        "metadata": notification.payload or {},
        "priority": notification.priority,
        "group_key": notification.group_key,
        "count": notification.count,
        "read": notification.is_read,
        "created_at": created_at.isoformat() if created_at else None,
        "updated_at": updated_at.isoformat() if updated_at else None,
    }


@router.get("")
def list_notifications(
    limit: Optional[int] = 50,
    unread_only: Optional[bool] = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user)
):
    """
    List notifications for the current user, newest first.
    """
    query = db.query(AdminNotification).filter(AdminNotification.user_id == user.id)
    if unread_only:
        query = query.filter(AdminNotification.is_read.is_(False))
    notifications = query.order_by(AdminNotification.created_at.desc()).limit(limit or 50).all()
    return [_serialize(n) for n in notifications]


@router.post("/{notification_id}/read")
def mark_notification_as_read(
    notification_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user)
):
    """
    Mark a notification as read. Later events with the same group_key start a new row.
    """
    try:
        notif_uuid = uuid.UUID(str(notification_id))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid notification_id format")

    notification = db.query(AdminNotification).filter(
        AdminNotification.id == notif_uuid,
        AdminNotification.user_id == user.id
    ).first()

    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")

    notification.is_read = True
    notification.updated_at = utcnow()
    db.commit()

    return {"success": True, "id": str(notification.id)}


@router.get("/preferences")
def get_preferences(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user)
):
    pref = get_or_create_preferences(db, user)
    db.commit()
    return {field: getattr(pref, field) is not False for field in PREFERENCE_FIELDS}


@router.put("/preferences")
def update_preferences(
    payload: PreferencesUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user)
):
    pref = get_or_create_preferences(db, user)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(pref, field, value)
    pref.updated_at = utcnow()
    db.commit()
    db.refresh(pref)
    return {field: getattr(pref, field) is not False for field in PREFERENCE_FIELDS}
