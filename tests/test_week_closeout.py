from datetime import timedelta
from decimal import Decimal

import pytest

from fieldclock.models.models import AdminNotification, AuditLog, TimeEntry, WeekCloseout
from fieldclock.services import time_entries
from fieldclock.services.errors import (
    CloseoutNotClosedError,
    EntryLockedError,
    OpenEntriesInWeekError,
    WeekAlreadyClosedError,
)
from fieldclock.services.reaper import reap_stale_sessions
from fieldclock.services.time_entries import update_entry
from fieldclock.services.week_closeout import close_week, reopen_week

from conftest import MONDAY, SITE, at, auth, make_entry, make_personnel


@pytest.fixture
def week(db, project):
    """Ten entries across three personnel; the third has no rate on file."""
    ana = make_personnel(db, "Ana", "Silva", hourly_rate=25)
    bruno = make_personnel(db, "Bruno", "Costa", hourly_rate=20)
    caio = make_personnel(db, "Caio", "Lima", hourly_rate=None)

    entries = [make_entry(db, ana, project, MONDAY + timedelta(days=i)) for i in range(3)]
    entries.append(make_entry(db, ana, project, MONDAY + timedelta(days=3), hourly_rate=30))
    entries += [make_entry(db, bruno, project, MONDAY + timedelta(days=i)) for i in range(3)]
    no_rate = [make_entry(db, caio, project, MONDAY + timedelta(days=i)) for i in (4, 5, 6)]
    entries += no_rate
    next_week = make_entry(db, ana, project, MONDAY + timedelta(days=7))
    return {"entries": entries, "no_rate": no_rate, "next_week": next_week, "ana": ana}


def test_close_week_locks_entries_and_snapshots_rates(db, project, admin, week):
    # Any day of the week normalizes to its Monday
    result = close_week(db, project.id, MONDAY + timedelta(days=2), notes="Payroll run", actor_id=admin.id)

    closeout = result["closeout"]
    assert closeout.week_start_date == MONDAY
    assert closeout.week_end_date == MONDAY + timedelta(days=6)
    assert closeout.status == "closed"
    assert result["entries_locked"] == 10
    assert result["rates_snapshotted"] == 6
    assert sorted(result["missing_rate_entry_ids"]) == sorted(str(e.id) for e in week["no_rate"])

    db.expire_all()
    locked = db.query(TimeEntry).filter(TimeEntry.week_closeout_id == closeout.id).all()
    assert len(locked) == 10
    assert all(e.is_locked for e in locked)
    rates = {e.id: e.hourly_rate for e in locked}
    assert rates[week["entries"][0].id] == Decimal("25.00")
    assert rates[week["entries"][3].id] == Decimal("30.00")
    assert rates[week["entries"][4].id] == Decimal("20.00")
    assert all(rates[e.id] is None for e in week["no_rate"])

    outside = db.query(TimeEntry).filter(TimeEntry.id == week["next_week"].id).one()
    assert not outside.is_locked
    assert outside.hourly_rate is None

    assert db.query(AuditLog).filter(AuditLog.action == "WEEK_CLOSE").count() == 1
    notification = db.query(AdminNotification).filter(AdminNotification.notification_type == "week_closed").one()
    assert notification.priority == "low"


def test_week_cannot_be_closed_twice(db, project, week):
    close_week(db, project.id, MONDAY)
    with pytest.raises(WeekAlreadyClosedError):
        close_week(db, project.id, MONDAY + timedelta(days=6))
    assert db.query(WeekCloseout).count() == 1


def test_locked_entries_reject_edits(db, project, week):
    close_week(db, project.id, MONDAY)
    with pytest.raises(EntryLockedError):
        update_entry(db, week["entries"][0].id, {"notes": "late fix"})


def test_reopen_unlocks_and_unlinks(db, project, admin, week):
    closeout = close_week(db, project.id, MONDAY)["closeout"]

    result = reopen_week(db, closeout.id, actor_id=admin.id)

    assert result["entries_unlocked"] == 10
    reopened = result["closeout"]
    assert reopened.status == "reopened"
    assert reopened.reopened_by == admin.id
    db.expire_all()
    entries = db.query(TimeEntry).filter(TimeEntry.project_id == project.id).all()
    assert not any(e.is_locked for e in entries)
    assert all(e.week_closeout_id is None for e in entries)
    # Snapshotted rates stay
    assert db.query(TimeEntry).filter(TimeEntry.id == week["entries"][0].id).one().hourly_rate == Decimal("25.00")

    update_entry(db, week["entries"][0].id, {"notes": "late fix"})


def test_reopen_twice_is_refused(db, project, week):
    closeout = close_week(db, project.id, MONDAY)["closeout"]
    reopen_week(db, closeout.id)
    with pytest.raises(CloseoutNotClosedError):
        reopen_week(db, closeout.id)


def test_reopened_week_can_be_closed_again(db, project, week):
    first = close_week(db, project.id, MONDAY)["closeout"]
    reopen_week(db, first.id)

    second = close_week(db, project.id, MONDAY)["closeout"]

    assert second.id != first.id
    assert db.query(WeekCloseout).count() == 2
    assert db.query(TimeEntry).filter(TimeEntry.week_closeout_id == second.id).count() == 10


def test_closeout_endpoints(client, db, project, admin, worker, week):
    response = client.post(
        "/week-closeouts",
        json={"project_id": str(project.id), "week_start_date": MONDAY.isoformat()},
        headers=auth(admin),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["entries_locked"] == 10
    assert len(body["missing_rate_entry_ids"]) == 3
    closeout_id = body["closeout"]["id"]

    again = client.post(
        "/week-closeouts",
        json={"project_id": str(project.id), "week_start_date": MONDAY.isoformat()},
        headers=auth(admin),
    )
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "week_already_closed"

    locked = client.patch(f"/time-clock/entries/{week['entries'][0].id}", json={"notes": "x"}, headers=auth(admin))
    assert locked.status_code == 423
    assert locked.json()["detail"]["week_closeout_id"] == closeout_id

    forbidden = client.post(f"/week-closeouts/{closeout_id}/reopen", headers=auth(worker))
    assert forbidden.status_code == 403

    reopened = client.post(f"/week-closeouts/{closeout_id}/reopen", headers=auth(admin))
    assert reopened.status_code == 200
    assert reopened.json()["closeout"]["status"] == "reopened"

    listed = client.get("/week-closeouts", params={"project_id": str(project.id)}, headers=auth(admin))
    assert [c["id"] for c in listed.json()] == [closeout_id]


def test_week_with_open_clock_entry_is_not_closed(db, project, personnel):
    entry = time_entries.clock_in(db, personnel.id, project.id, lat=SITE[0], lng=SITE[1], now=at(8))

    with pytest.raises(OpenEntriesInWeekError) as exc:
        close_week(db, project.id, MONDAY, now=at(9))
    assert exc.value.status_code == 409
    assert exc.value.extra["open_entry_ids"] == [str(entry.id)]
    assert db.query(WeekCloseout).count() == 0

    # The session stays reachable by the reaper, and the week closes afterwards
    assert reap_stale_sessions(db, now=at(12))["processed"] == 1
    result = close_week(db, project.id, MONDAY, now=at(13))

    assert result["entries_locked"] == 1
    db.refresh(entry)
    assert entry.is_locked
    assert entry.clock_out_at is not None
