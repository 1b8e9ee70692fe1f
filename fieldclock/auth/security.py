import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..models.models import Personnel, User
from ..services.permissions import can_manage_time


# The hosting platform authenticates requests and forwards the user id.
def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        user_uuid = uuid.UUID(str(x_user_id))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    user = db.query(User).filter(User.id == user_uuid).first()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not active")
    return user


def require_time_admin(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> User:
    if not can_manage_time(user, db):
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def ensure_personnel_access(user: User, personnel: Personnel, db: Session) -> None:
    """Workers act on their own personnel record; admins and managers on anyone's."""
    if personnel.user_id is not None and personnel.user_id == user.id:
        return
    if can_manage_time(user, db):
        return
    raise HTTPException(status_code=403, detail="Access denied")
