"""
Role checks for time clock administration.
"""
from typing import Iterable, List
from sqlalchemy.orm import Session

from ..models.models import User, Role

ADMIN_ROLES = ("admin", "manager")


def has_any_role(user: User, db: Session, role_names: Iterable[str]) -> bool:
    """Check if user holds at least one of the named roles."""
    roles = db.query(Role).filter(Role.name.in_(list(role_names))).all()
    if not roles:
        return False
    return any(role in user.roles for role in roles)


def is_admin(user: User, db: Session) -> bool:
    """Check if user has admin role."""
    return has_any_role(user, db, ["admin"])


def can_manage_time(user: User, db: Session) -> bool:
    """Admins and managers can close weeks, edit entries and clear clock blocks."""
    return has_any_role(user, db, ADMIN_ROLES)


def get_role_name(user: User, db: Session) -> str:
    """Primary role label used in audit records."""
    if is_admin(user, db):
        return "admin"
    if has_any_role(user, db, ["manager"]):
        return "manager"
    return "worker"


def get_admin_audience(db: Session) -> List[User]:
    """All active users holding an admin or manager role."""
    return (
        db.query(User)
        .join(User.roles)
        .filter(Role.name.in_(ADMIN_ROLES), User.is_active.is_(True))
        .distinct()
        .all()
    )
