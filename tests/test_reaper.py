import pytest

from fieldclock.models.models import AdminNotification, ClockAlert, TimeEntry
from fieldclock.services import clock_alerts, time_entries
from fieldclock.services.reaper import reap_stale_sessions
from fieldclock.services.time_rules import ensure_utc

from conftest import SITE, at, make_personnel, make_project


def _clock_in(db, personnel, project, now):
    return time_entries.clock_in(db, personnel.id, project.id, lat=SITE[0], lng=SITE[1], now=now)


def test_stale_entry_is_auto_clocked_out(db, personnel, project, admin):
    entry = _clock_in(db, personnel, project, at(8))

    summary = reap_stale_sessions(db, now=at(8, 31))

    assert summary["success"]
    assert summary["checked"] == 1
    assert summary["processed"] == 1
    assert summary["alerts_created"] == 1
    result = summary["results"][0]
    assert result["id"] == str(entry.id)
    assert result["personnel"] == "Ana Silva"
    assert result["hours_worked"] == "0.52"

    db.refresh(entry)
    assert entry.auto_clocked_out
    assert entry.auto_clock_out_reason == "No location update for 30+ minutes"
    assert ensure_utc(entry.clock_out_at) == at(8, 31)
    assert ensure_utc(entry.clock_blocked_until) == at(16, 31)
    assert entry.total_hours == pytest.approx(31 / 60, abs=1e-4)

    alert = db.query(ClockAlert).one()
    assert alert.dedupe_key == f"auto_clock_out:{entry.id}"
    notification = db.query(AdminNotification).filter(AdminNotification.user_id == admin.id).one()
    assert notification.notification_type == "auto_clock_out"
    assert notification.priority == "high"


def test_second_run_finds_nothing(db, personnel, project):
    _clock_in(db, personnel, project, at(8))
    reap_stale_sessions(db, now=at(8, 31))

    summary = reap_stale_sessions(db, now=at(9))

    assert summary["checked"] == 0
    assert summary["message"] == "No stale entries found"
    assert db.query(ClockAlert).count() == 1


def test_fresh_ping_keeps_entry_open(db, personnel, project):
    entry = _clock_in(db, personnel, project, at(8))
    time_entries.record_location_ping(db, entry.id, SITE[0], SITE[1], now=at(8, 20))

    summary = reap_stale_sessions(db, now=at(8, 45))

    assert summary["checked"] == 0
    db.refresh(entry)
    assert entry.is_open


def test_entry_on_lunch_is_not_reaped(db, personnel, project):
    entry = _clock_in(db, personnel, project, at(8))
    time_entries.start_lunch(db, entry.id, now=at(8, 10))

    summary = reap_stale_sessions(db, now=at(10))

    assert summary["checked"] == 0
    db.refresh(entry)
    assert entry.is_open


def test_locked_entry_is_not_reaped(db, personnel, project):
    entry = _clock_in(db, personnel, project, at(8))
    entry.is_locked = True
    db.commit()

    assert reap_stale_sessions(db, now=at(10))["checked"] == 0


def test_project_without_location_requirement_is_not_reaped(db, personnel):
    project = make_project(db, require_clock_location=False)
    time_entries.clock_in(db, personnel.id, project.id, now=at(8))

    assert reap_stale_sessions(db, now=at(12))["checked"] == 0


def test_clock_out_after_reaping_reports_already_closed(db, personnel, project):
    entry = _clock_in(db, personnel, project, at(8))
    reap_stale_sessions(db, now=at(8, 31))

    entry, already_closed = time_entries.clock_out(db, entry.id, now=at(9))

    assert already_closed
    assert entry.auto_clocked_out
    assert entry.total_hours == pytest.approx(31 / 60, abs=1e-4)


def test_each_stale_entry_is_processed(db, project):
    first = make_personnel(db, "Ana", "Silva")
    second = make_personnel(db, "Bruno", "Costa")
    _clock_in(db, first, project, at(8))
    _clock_in(db, second, project, at(8, 5))

    summary = reap_stale_sessions(db, now=at(9))

    assert summary["processed"] == 2
    assert summary["message"] == "Auto-clocked out 2 stale entries"
    assert [r["personnel"] for r in summary["results"]] == ["Ana Silva", "Bruno Costa"]


def test_failing_entry_is_reported_and_the_rest_continue(db, project, monkeypatch):
    first = make_personnel(db, "Ana", "Silva")
    second = make_personnel(db, "Bruno", "Costa")
    broken = _clock_in(db, first, project, at(8))
    healthy = _clock_in(db, second, project, at(8, 5))
    broken_id = broken.id
    create_clock_alert = clock_alerts.create_clock_alert

    def failing_create(db, *args, time_entry_id=None, **kwargs):
        if time_entry_id == broken_id:
            raise RuntimeError("alert store unavailable")
        return create_clock_alert(db, *args, time_entry_id=time_entry_id, **kwargs)

    monkeypatch.setattr(clock_alerts, "create_clock_alert", failing_create)

    summary = reap_stale_sessions(db, now=at(9))

    assert summary["success"]
    assert summary["checked"] == 2
    assert summary["processed"] == 1
    assert {"id": str(broken_id), "success": False, "error": "alert store unavailable"} in summary["results"]
    db.expire_all()
    assert db.query(TimeEntry).filter(TimeEntry.id == broken_id).one().clock_out_at is None
    assert db.query(TimeEntry).filter(TimeEntry.id == healthy.id).one().auto_clocked_out
    assert db.query(ClockAlert).count() == 1
