"""
Admin notification service.
Fans out alerts to admins/managers, respecting per-user category preferences,
and coalesces repeated events that share a group_key.
"""
from typing import Optional, Dict, Iterable, List
from sqlalchemy.orm import Session
import structlog

from ..models.models import AdminNotification, NotificationPreference, User
from .permissions import get_admin_audience
from .time_rules import utcnow

logger = structlog.get_logger(__name__)

NOTIFICATION_PRIORITIES: Dict[str, str] = {
    "geofence_violation": "urgent",
    "auto_clock_out": "high",
    "missed_clock_in": "high",
    "late_clock_attempt": "normal",
    "week_closed": "low",
    "week_reopened": "low",
}

# notification_type -> NotificationPreference column
NOTIFICATION_CATEGORIES: Dict[str, str] = {
    "geofence_violation": "geofence_violation",
    "auto_clock_out": "auto_clock_out",
    "missed_clock_in": "missed_clock_in",
    "late_clock_attempt": "late_clock_attempt",
    "week_closed": "week_closeout",
    "week_reopened": "week_closeout",
}

PREFERENCE_FIELDS = tuple(sorted(set(NOTIFICATION_CATEGORIES.values())))


def priority_for(notification_type: str, override: Optional[str] = None) -> str:
    return override or NOTIFICATION_PRIORITIES.get(notification_type, "normal")


def should_send_notification(
    db: Session,
    user_id,
    notification_type: str,
) -> bool:
    """
    Check the recipient's preference flag for the notification's category.
    Missing preferences row, unknown category, or NULL flag all mean receive.
    """
    category = NOTIFICATION_CATEGORIES.get(notification_type)
    if not category:
        return True

    user_pref = db.query(NotificationPreference).filter(
        NotificationPreference.user_id == user_id
    ).first()
    if not user_pref:
        return True

    flag = getattr(user_pref, category, None)
    return flag is not False


def _resolve_audience(db: Session, user_ids: Optional[Iterable]) -> List:
    if user_ids:
        return list(user_ids)
    return [user.id for user in get_admin_audience(db)]


def create_admin_notification(
    db: Session,
    notification_type: str,
    title: str,
    message: str,
    link_url: Optional[str] = None,
    related_id=None,
    metadata: Optional[Dict] = None,
    priority: Optional[str] = None,
    group_key: Optional[str] = None,
    user_ids: Optional[Iterable] = None,
) -> List[AdminNotification]:
    """
    Create one notification per eligible recipient.
    Rows are added to the current transaction; the caller commits.

    Args:
        db: Database session
        notification_type: e.g. missed_clock_in, auto_clock_out, geofence_violation
        title: Short title
        message: Body text
        link_url: In-app link for the notification
        related_id: ID of the related record
        metadata: Extra JSON payload
        priority: Overrides the type's default priority
        group_key: Coalesce into an existing unread notification with the same key
        user_ids: Explicit recipients (defaults to all admins and managers)

    Returns:
        Notifications created or updated
    """
    resolved_priority = priority_for(notification_type, priority)
    touched: List[AdminNotification] = []

    for user_id in _resolve_audience(db, user_ids):
        if not should_send_notification(db, user_id, notification_type):
            logger.info("notification_suppressed_by_preference", user_id=str(user_id), notification_type=notification_type)
            continue

        if group_key:
            existing = db.query(AdminNotification).filter(
                AdminNotification.user_id == user_id,
                AdminNotification.group_key == group_key,
                AdminNotification.is_read.is_(False),
            ).first()
            if existing:
                existing.count = (existing.count or 1) + 1
                existing.title = title
                existing.message = message
                existing.payload = metadata
                existing.updated_at = utcnow()
                touched.append(existing)
                continue

        notification = AdminNotification(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            message=message,
            link_url=link_url,
            related_id=str(related_id) if related_id else None,
            payload=metadata,
            priority=resolved_priority,
            group_key=group_key,
            count=1,
            is_read=False,
            created_at=utcnow(),
        )
        db.add(notification)
        touched.append(notification)

    db.flush()
    logger.info("admin_notification_emitted", notification_type=notification_type, recipients=len(touched))
    return touched


def get_or_create_preferences(db: Session, user: User) -> NotificationPreference:
    pref = db.query(NotificationPreference).filter(NotificationPreference.user_id == user.id).first()
    if not pref:
        pref = NotificationPreference(user_id=user.id)
        db.add(pref)
        db.flush()
    return pref
