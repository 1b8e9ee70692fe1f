"""
Client-side errors.
Server refusals carry a stable code in the response detail; each code maps
back to one exception class here.
"""
from typing import Any, Dict, Optional, Type


class ClockClientError(Exception):
    code = "client_error"
    retriable = False

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.status_code = status_code


class ApiUnavailableError(ClockClientError):
    """The service could not be reached or answered with a server error."""
    code = "api_unavailable"
    retriable = True


class LocationUnavailableError(ClockClientError):
    """Location permission denied or no fix. Nothing was created; try again."""
    code = "location_unavailable"
    retriable = True


class LocationRequiredError(ClockClientError):
    code = "location_required"
    retriable = True


class SiteNotGeocodedError(ClockClientError):
    code = "site_not_geocoded"


class GeofenceViolationError(ClockClientError):
    code = "outside_geofence"
    retriable = True


class ClockBlockedError(ClockClientError):
    code = "clock_blocked"

    @property
    def blocked_until(self) -> Optional[str]:
        return self.detail.get("blocked_until")


class LateClockInError(ClockClientError):
    code = "late_clock_in"


class OpenEntryExistsError(ClockClientError):
    code = "open_entry_exists"


class TimeClockDisabledError(ClockClientError):
    code = "time_clock_disabled"


class EntryLockedError(ClockClientError):
    code = "entry_locked"


class NotFoundError(ClockClientError):
    code = "not_found"


class NotClockedInError(ClockClientError):
    code = "not_clocked_in"


ERROR_CLASSES: Dict[str, Type[ClockClientError]] = {
    cls.code: cls
    for cls in (
        LocationRequiredError,
        SiteNotGeocodedError,
        GeofenceViolationError,
        ClockBlockedError,
        LateClockInError,
        OpenEntryExistsError,
        TimeClockDisabledError,
        EntryLockedError,
        NotFoundError,
    )
}


def error_from_response(status_code: int, body: Any) -> ClockClientError:
    """Build the exception matching a refused request."""
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        cls = ERROR_CLASSES.get(detail.get("code"), ClockClientError)
        return cls(detail.get("message") or "Request refused", detail=detail, status_code=status_code)
    if status_code >= 500:
        return ApiUnavailableError(f"Server error ({status_code})", status_code=status_code)
    message = detail if isinstance(detail, str) else f"Request failed ({status_code})"
    return ClockClientError(message, status_code=status_code)
