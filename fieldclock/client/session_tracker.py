"""
Client-side session tracker.

Owns one clock session at a time: clock-in with the device location, a
periodic location ping that keeps the server's liveness signal fresh, idle
detection for the running earnings display, lunch toggles and clock-out.
The server stays the authority; when it reports the entry closed (stale
reaper, geofence exit) the tracker drops back to clocked_out.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from ..config import settings
from ..services.time_rules import ensure_utc, utcnow
from .api import ClockApiClient
from .errors import (
    ClockClientError,
    LocationRequiredError,
    LocationUnavailableError,
    NotClockedInError,
    OpenEntryExistsError,
)
from .location import LocationProvider, Position
from .scheduler import AsyncioScheduler, Scheduler, TimerHandle

logger = structlog.get_logger(__name__)

CLOCKED_OUT = "clocked_out"
CLOCKED_IN = "clocked_in"
IDLE = "idle"


@dataclass
class SessionState:
    status: str = CLOCKED_OUT
    entry_id: Optional[str] = None
    project_id: Optional[str] = None
    started_at: Optional[float] = None  # scheduler clock
    ended_at: Optional[float] = None
    idle_since: Optional[float] = None
    idle_seconds: float = 0.0
    is_on_lunch: bool = False
    ping_failures: int = 0
    last_ping_at: Optional[float] = None
    total_hours: Optional[float] = None
    auto_clocked_out: bool = False
    auto_clock_out_reason: Optional[str] = None
    blocked_until: Optional[str] = None

    @property
    def is_clocked_in(self) -> bool:
        return self.status in (CLOCKED_IN, IDLE)


class SessionTracker:
    def __init__(
        self,
        api: ClockApiClient,
        personnel_id: str,
        location: LocationProvider,
        scheduler: Optional[Scheduler] = None,
        ping_interval_seconds: Optional[float] = None,
        idle_timeout_seconds: Optional[float] = None,
    ):
        self.api = api
        self.personnel_id = str(personnel_id)
        self.location = location
        self.scheduler = scheduler or AsyncioScheduler()
        self.ping_interval = ping_interval_seconds or settings.location_ping_interval_seconds
        self.idle_timeout = idle_timeout_seconds or settings.idle_timeout_seconds
        self.state = SessionState()
        self._ping_handle: Optional[TimerHandle] = None
        self._idle_handle: Optional[TimerHandle] = None

    # Lifecycle

    async def clock_in(self, project_id: str, requires_location: Optional[bool] = None, source: str = "app") -> Dict[str, Any]:
        """
        Clock in to a project.

        requires_location mirrors the project's require_clock_location. When it
        is None the device location is sent if available; the server decides
        whether the project needs it.

        Raises:
            LocationUnavailableError: location required but unavailable; nothing was created
            GeofenceViolationError, SiteNotGeocodedError, ClockBlockedError, LateClockInError: server refusals
        """
        if self.state.is_clocked_in:
            raise OpenEntryExistsError("Already clocked in", detail={"entry_id": self.state.entry_id})

        position: Optional[Position] = None
        location_error: Optional[LocationUnavailableError] = None
        if requires_location is not False:
            try:
                position = await self.location.current_position()
            except LocationUnavailableError as e:
                if requires_location:
                    raise
                location_error = e

        try:
            entry = await self.api.clock_in(
                self.personnel_id,
                project_id,
                lat=position.lat if position else None,
                lng=position.lng if position else None,
                accuracy=position.accuracy if position else None,
                source=source,
            )
        except LocationRequiredError:
            if location_error is not None:
                raise location_error
            raise
        self._enter_session(entry)
        logger.info("session_clocked_in", entry_id=self.state.entry_id, project_id=str(project_id))
        return entry

    async def resume(self, project_id: str) -> bool:
        """Pick up an entry left open by a previous run. Returns False if there is none."""
        entry = await self.api.get_open_entry(self.personnel_id, project_id)
        if entry is None:
            return False
        self._enter_session(entry, resumed=True)
        logger.info("session_resumed", entry_id=self.state.entry_id)
        return True

    async def clock_out(self) -> Dict[str, Any]:
        """
        Clock out. If the server already closed the entry the call still
        succeeds and the response carries already_closed=True.
        """
        if not self.state.is_clocked_in:
            raise NotClockedInError("Not clocked in")

        try:
            position: Optional[Position] = await self.location.current_position()
        except LocationUnavailableError:
            position = None

        result = await self.api.clock_out(
            self.state.entry_id,
            lat=position.lat if position else None,
            lng=position.lng if position else None,
            accuracy=position.accuracy if position else None,
        )
        entry = result.get("entry") or {}
        self.state.total_hours = entry.get("total_hours")
        if result.get("already_closed") and entry.get("auto_clocked_out"):
            self.state.auto_clocked_out = True
            self.state.auto_clock_out_reason = entry.get("auto_clock_out_reason")
            self.state.blocked_until = entry.get("clock_blocked_until")
        self._end_session()
        logger.info("session_clocked_out", entry_id=entry.get("id"), already_closed=result.get("already_closed"))
        return result

    async def start_lunch(self) -> None:
        if not self.state.is_clocked_in:
            raise NotClockedInError("Not clocked in")
        await self.api.start_lunch(self.state.entry_id)
        self.state.is_on_lunch = True

    async def end_lunch(self) -> None:
        if not self.state.is_clocked_in:
            raise NotClockedInError("Not clocked in")
        await self.api.end_lunch(self.state.entry_id)
        self.state.is_on_lunch = False

    async def aclose(self) -> None:
        self._cancel_timers()
        await self.scheduler.aclose()

    # Location ping loop

    async def send_ping(self) -> Optional[Dict[str, Any]]:
        """
        Report the current position. Failures are counted and logged, never raised.
        """
        if not self.state.is_clocked_in or self.state.is_on_lunch:
            return None
        entry_id = self.state.entry_id
        try:
            position = await self.location.current_position()
            result = await self.api.send_location(entry_id, position.lat, position.lng, position.accuracy)
        except ClockClientError as e:
            self.state.ping_failures += 1
            logger.warning("location_ping_failed", entry_id=entry_id, error=e.message, failures=self.state.ping_failures)
            return None

        # A clock-out may have completed while the ping was in flight
        if not self.state.is_clocked_in or self.state.entry_id != entry_id:
            return result
        if result.get("status") in ("already_closed", "auto_clocked_out"):
            self._handle_server_close(result)
        else:
            self.state.last_ping_at = self.scheduler.now()
        return result

    def _schedule_ping(self) -> None:
        self._ping_handle = self.scheduler.call_later(self.ping_interval, self._ping_tick)

    async def _ping_tick(self) -> None:
        if not self.state.is_clocked_in:
            return
        handle = self._ping_handle
        entry_id = self.state.entry_id
        await self.send_ping()
        # Only the loop of the session that scheduled this tick continues
        if self.state.is_clocked_in and self.state.entry_id == entry_id and self._ping_handle is handle:
            self._schedule_ping()

    def _handle_server_close(self, result: Dict[str, Any]) -> None:
        self.state.auto_clocked_out = bool(result.get("auto_clocked_out"))
        self.state.auto_clock_out_reason = result.get("reason")
        self.state.blocked_until = result.get("blocked_until")
        self.state.total_hours = result.get("hours_worked")
        logger.warning("session_closed_by_server", entry_id=self.state.entry_id, reason=self.state.auto_clock_out_reason)
        self._end_session()

    # Idle detection

    def record_activity(self) -> None:
        """Any user interaction. Ends an idle span and restarts the idle timer."""
        if not self.state.is_clocked_in:
            return
        now = self.scheduler.now()
        if self.state.status == IDLE:
            self.state.idle_seconds += now - self.state.idle_since
            self.state.idle_since = None
            self.state.status = CLOCKED_IN
        self._reset_idle_timer()

    def _reset_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
        self._idle_handle = self.scheduler.call_later(self.idle_timeout, self._go_idle)

    def _go_idle(self) -> None:
        if self.state.status != CLOCKED_IN:
            return
        self.state.status = IDLE
        self.state.idle_since = self.scheduler.now()
        logger.info("session_idle", entry_id=self.state.entry_id)

    def active_seconds(self) -> float:
        """Elapsed session time minus idle time, including an ongoing idle span."""
        if self.state.started_at is None:
            return 0.0
        end = self.state.ended_at if self.state.ended_at is not None else self.scheduler.now()
        idle = self.state.idle_seconds
        if self.state.idle_since is not None:
            idle += end - self.state.idle_since
        return max(0.0, end - self.state.started_at - idle)

    def earnings(self, hourly_rate: float) -> float:
        return round(self.active_seconds() / 3600 * hourly_rate, 2)

    # Internals

    def _enter_session(self, entry: Dict[str, Any], resumed: bool = False) -> None:
        self._cancel_timers()
        now = self.scheduler.now()
        elapsed = 0.0
        clock_in_at = entry.get("clock_in_at")
        # A resumed session has been running since the server-side clock-in
        if resumed and clock_in_at:
            started = ensure_utc(datetime.fromisoformat(clock_in_at))
            elapsed = max(0.0, (utcnow() - started).total_seconds())
        self.state = SessionState(
            status=CLOCKED_IN,
            entry_id=entry["id"],
            project_id=entry.get("project_id"),
            started_at=now - elapsed,
            is_on_lunch=bool(entry.get("is_on_lunch")),
        )
        self._schedule_ping()
        self._reset_idle_timer()

    def _end_session(self) -> None:
        self._cancel_timers()
        now = self.scheduler.now()
        if self.state.idle_since is not None:
            self.state.idle_seconds += now - self.state.idle_since
            self.state.idle_since = None
        self.state.ended_at = now
        self.state.status = CLOCKED_OUT

    def _cancel_timers(self) -> None:
        for handle in (self._ping_handle, self._idle_handle):
            if handle is not None:
                handle.cancel()
        self._ping_handle = None
        self._idle_handle = None
