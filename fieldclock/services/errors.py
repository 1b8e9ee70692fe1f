"""
Domain errors raised by the time clock services.
Routes translate them to HTTPException using status_code and to_detail().
"""
from datetime import datetime
from typing import Any, Dict, Optional


class TimeClockError(Exception):
    code = "time_clock_error"
    status_code = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_detail(self) -> Dict[str, Any]:
        detail = {"code": self.code, "message": self.message}
        detail.update(self.extra)
        return detail


class LocationRequiredError(TimeClockError):
    code = "location_required"
    status_code = 400


class SiteNotGeocodedError(TimeClockError):
    code = "site_not_geocoded"
    status_code = 409

    def __init__(self, project_id):
        super().__init__(
            "Project site has no coordinates. Geocode this address before clocking in.",
            project_id=str(project_id),
        )


class GeofenceViolationError(TimeClockError):
    code = "outside_geofence"
    status_code = 403

    def __init__(self, distance_miles: float, radius_miles: float):
        super().__init__(
            f"You are {distance_miles:.2f} miles from the job site (limit: {radius_miles} miles)",
            distance_miles=round(distance_miles, 4),
            radius_miles=radius_miles,
        )


class ClockBlockedError(TimeClockError):
    code = "clock_blocked"
    status_code = 409

    def __init__(self, blocked_until: datetime):
        super().__init__(
            f"Clock-in blocked until {blocked_until.isoformat()}",
            blocked_until=blocked_until.isoformat(),
        )


class LateClockInError(TimeClockError):
    code = "late_clock_in"
    status_code = 409

    def __init__(self, minutes_late: int, scheduled_start_time: str):
        super().__init__(
            f"Clock-in is {minutes_late} minutes past the scheduled start ({scheduled_start_time}). A supervisor must clock you in.",
            minutes_late=minutes_late,
            scheduled_start_time=scheduled_start_time,
        )


class OpenEntryExistsError(TimeClockError):
    code = "open_entry_exists"
    status_code = 409

    def __init__(self, entry_id=None):
        super().__init__(
            "You already have an open clock entry for this project",
            entry_id=str(entry_id) if entry_id else None,
        )


class NotFoundError(TimeClockError):
    code = "not_found"
    status_code = 404


class TimeClockDisabledError(TimeClockError):
    code = "time_clock_disabled"
    status_code = 409


class EntryLockedError(TimeClockError):
    code = "entry_locked"
    status_code = 423

    def __init__(self, entry_id, week_closeout_id: Optional[Any] = None):
        super().__init__(
            "Time entry belongs to a closed week and cannot be changed",
            entry_id=str(entry_id),
            week_closeout_id=str(week_closeout_id) if week_closeout_id else None,
        )


class WeekAlreadyClosedError(TimeClockError):
    code = "week_already_closed"
    status_code = 409


class CloseoutNotClosedError(TimeClockError):
    code = "closeout_not_closed"
    status_code = 409


class InvalidEntryUpdateError(TimeClockError):
    code = "invalid_entry_update"
    status_code = 400


class EntryConflictError(TimeClockError):
    code = "entry_conflict"
    status_code = 409


class OpenEntriesInWeekError(TimeClockError):
    code = "open_entries_in_week"
    status_code = 409

    def __init__(self, entry_ids):
        super().__init__(
            f"{len(entry_ids)} clock entries in this week are still open. Clock them out before closing the week.",
            open_entry_ids=[str(entry_id) for entry_id in entry_ids],
        )
