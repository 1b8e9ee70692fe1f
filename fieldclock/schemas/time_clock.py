import uuid
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field


class ClockInRequest(BaseModel):
    personnel_id: uuid.UUID
    project_id: uuid.UUID
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    accuracy: Optional[float] = None
    source: str = "app"
    skip_schedule_check: bool = False


class ClockOutRequest(BaseModel):
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    accuracy: Optional[float] = None


class LocationPing(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = None


class EntryUpdate(BaseModel):
    clock_in_at: Optional[datetime] = None
    clock_out_at: Optional[datetime] = None
    lunch_duration_minutes: Optional[int] = Field(default=None, ge=0)
    hourly_rate: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None


class GeofenceSettingsUpdate(BaseModel):
    site_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    site_lng: Optional[float] = Field(default=None, ge=-180, le=180)
    geofence_radius_miles: Optional[float] = None
    require_clock_location: Optional[bool] = None
    time_clock_enabled: Optional[bool] = None


class WeekCloseoutCreate(BaseModel):
    project_id: uuid.UUID
    week_start_date: date
    customer_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None


class PreferencesUpdate(BaseModel):
    missed_clock_in: Optional[bool] = None
    auto_clock_out: Optional[bool] = None
    geofence_violation: Optional[bool] = None
    late_clock_attempt: Optional[bool] = None
    week_closeout: Optional[bool] = None
