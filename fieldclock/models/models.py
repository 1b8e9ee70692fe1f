import uuid
from datetime import datetime, date, time
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    Float,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


# Association table for many-to-many User<->Role
user_roles = Table(
    "user_roles",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("role_id", UUID(as_uuid=True), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "role_id", name="uq_user_role"),
)


class Role(Base):
    __tablename__ = "roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)  # admin|manager|worker
    description: Mapped[Optional[str]] = mapped_column(String(255))

    users = relationship("User", secondary=user_roles, back_populates="roles")


class User(Base):
    """Application user. Authentication happens upstream on the hosting platform."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    roles = relationship("Role", secondary=user_roles, back_populates="users")


class Personnel(Base):
    """Field worker who clocks in on projects"""
    __tablename__ = "personnel"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    hourly_rate: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))  # Current rate; snapshotted into entries at closeout
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    address: Mapped[Optional[str]] = mapped_column(String(500))
    site_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))  # Latitude for geofence
    site_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))  # Longitude for geofence
    geofence_radius_miles: Mapped[Optional[float]] = mapped_column(Float, default=0.25)
    require_clock_location: Mapped[bool] = mapped_column(Boolean, default=False)
    time_clock_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    timezone: Mapped[Optional[str]] = mapped_column(String(100))  # Project timezone, falls back to TZ_DEFAULT
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class PersonnelSchedule(Base):
    """Scheduled shift start for a personnel member on a project (local project time)"""
    __tablename__ = "personnel_schedules"

    id: Mapped[uuid.UUID] = uuid_pk()
    personnel_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("personnel.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_start_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    scheduled_end_time: Mapped[Optional[time]] = mapped_column(Time(timezone=False))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index('idx_schedules_date_start', 'scheduled_date', 'scheduled_start_time'),
    )


# Time Tracking Models

class WeekCloseout(Base):
    """Administrative lock over one project's week (Monday through Sunday)"""
    __tablename__ = "week_closeouts"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    week_start_date: Mapped[date] = mapped_column(Date, nullable=False)  # Monday
    week_end_date: Mapped[date] = mapped_column(Date, nullable=False)  # Sunday
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="closed")  # closed|reopened
    notes: Mapped[Optional[str]] = mapped_column(Text)
    closed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    closed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    reopened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reopened_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))

    __table_args__ = (
        # Only one active closeout per project week; reopened rows stay as history
        Index(
            'uq_week_closeouts_closed',
            'project_id', 'week_start_date',
            unique=True,
            sqlite_where=text("status = 'closed'"),
            postgresql_where=text("status = 'closed'"),
        ),
    )


class TimeEntry(Base):
    """One personnel work interval on a project"""
    __tablename__ = "time_entries"

    id: Mapped[uuid.UUID] = uuid_pk()
    personnel_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("personnel.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    week_closeout_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("week_closeouts.id", ondelete="SET NULL"), index=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)  # Local project date
    entry_source: Mapped[str] = mapped_column(String(20), nullable=False, default="clock")  # clock|manual

    clock_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    clock_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    clock_in_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_in_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_in_accuracy: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))  # meters
    clock_out_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_out_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_out_accuracy: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))

    # Liveness signal, refreshed by location pings
    last_location_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_location_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    last_location_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))

    total_hours: Mapped[Optional[float]] = mapped_column(Float)

    is_on_lunch: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    lunch_start_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lunch_end_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lunch_duration_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_clocked_out: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_clock_out_reason: Mapped[Optional[str]] = mapped_column(Text)
    clock_blocked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    hourly_rate: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))  # Snapshot, filled at closeout if never set
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    personnel = relationship("Personnel")
    project = relationship("Project")

    __table_args__ = (
        Index('idx_time_entries_project_date', 'project_id', 'entry_date'),
        Index('idx_time_entries_open', 'clock_out_at', 'last_location_check_at'),
        # At most one open clock entry per personnel, project and day
        Index(
            'uq_time_entries_one_open_clock',
            'personnel_id', 'project_id', 'entry_date', 'entry_source',
            unique=True,
            sqlite_where=text("clock_out_at IS NULL AND entry_source = 'clock'"),
            postgresql_where=text("clock_out_at IS NULL AND entry_source = 'clock'"),
        ),
    )

    @property
    def is_open(self) -> bool:
        return self.clock_in_at is not None and self.clock_out_at is None


class ClockAlert(Base):
    """Audit record of a detected time-tracking anomaly. Never updated."""
    __tablename__ = "clock_alerts"

    id: Mapped[uuid.UUID] = uuid_pk()
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)  # missed_clock_in|auto_clock_out|late_clock_attempt
    personnel_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("personnel.id", ondelete="SET NULL"), index=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="SET NULL"), index=True)
    time_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("time_entries.id", ondelete="SET NULL"))
    alert_date: Mapped[date] = mapped_column(Date, nullable=False)
    dedupe_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    # "metadata" is reserved on declarative classes
    alert_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index('idx_clock_alerts_lookup', 'personnel_id', 'project_id', 'alert_type', 'alert_date'),
    )


class AdminNotification(Base):
    """In-app notification for an admin or manager"""
    __tablename__ = "admin_notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    notification_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link_url: Mapped[Optional[str]] = mapped_column(String(500))
    related_id: Mapped[Optional[str]] = mapped_column(String(64))
    payload: Mapped[Optional[dict]] = mapped_column("metadata", JSON)
    priority: Mapped[str] = mapped_column(String(20), default="normal")  # low|normal|high|urgent
    group_key: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_admin_notifications_user_read', 'user_id', 'is_read'),
    )


class NotificationPreference(Base):
    """Per-user opt-outs by notification category. NULL means receive."""
    __tablename__ = "notification_preferences"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)
    missed_clock_in: Mapped[Optional[bool]] = mapped_column(Boolean, default=True)
    auto_clock_out: Mapped[Optional[bool]] = mapped_column(Boolean, default=True)
    geofence_violation: Mapped[Optional[bool]] = mapped_column(Boolean, default=True)
    late_clock_attempt: Mapped[Optional[bool]] = mapped_column(Boolean, default=True)
    week_closeout: Mapped[Optional[bool]] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class AuditLog(Base):
    """Append-only audit log for clock and closeout actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # time_entry|week_closeout|project
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CLOCK_IN|CLOCK_OUT|AUTO_CLOCK_OUT|WEEK_CLOSE|...
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # admin|manager|worker|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # app|admin|system|api
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )
