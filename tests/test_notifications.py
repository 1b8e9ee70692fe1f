from fieldclock.models.models import AdminNotification, NotificationPreference
from fieldclock.services.notifications import create_admin_notification, priority_for, should_send_notification

from conftest import auth, make_user


def _emit(db, **kwargs):
    values = dict(notification_type="missed_clock_in", title="Missed Clock-In Alert", message="Ana has not clocked in")
    values.update(kwargs)
    rows = create_admin_notification(db, **values)
    db.commit()
    return rows


def test_audience_is_admins_and_managers(db, admin, worker):
    manager = make_user(db, "manager", "manager")
    inactive = make_user(db, "former", "admin")
    inactive.is_active = False
    db.commit()

    rows = _emit(db)

    assert sorted(r.user_id for r in rows) == sorted([admin.id, manager.id])


def test_explicit_recipients(db, admin, worker):
    rows = _emit(db, user_ids=[worker.id])
    assert [r.user_id for r in rows] == [worker.id]


def test_preference_opt_out_suppresses_recipient(db, admin):
    manager = make_user(db, "manager", "manager")
    db.add(NotificationPreference(user_id=manager.id, missed_clock_in=False))
    db.commit()

    rows = _emit(db)

    assert [r.user_id for r in rows] == [admin.id]
    assert not should_send_notification(db, manager.id, "missed_clock_in")
    assert should_send_notification(db, manager.id, "auto_clock_out")


def test_null_preference_means_receive(db, admin):
    db.add(NotificationPreference(user_id=admin.id, missed_clock_in=None))
    db.commit()
    assert should_send_notification(db, admin.id, "missed_clock_in")


def test_priorities():
    assert priority_for("geofence_violation") == "urgent"
    assert priority_for("auto_clock_out") == "high"
    assert priority_for("missed_clock_in") == "high"
    assert priority_for("late_clock_attempt") == "normal"
    assert priority_for("week_closed") == "low"
    assert priority_for("something_else") == "normal"
    assert priority_for("week_closed", "urgent") == "urgent"


def test_group_key_coalesces_unread(db, admin):
    _emit(db, group_key="missed_clock_in:p1:2026-03-02")
    rows = _emit(db, group_key="missed_clock_in:p1:2026-03-02", message="Bruno has not clocked in")

    notification = db.query(AdminNotification).one()
    assert rows == [notification]
    assert notification.count == 2
    assert notification.message == "Bruno has not clocked in"

    notification.is_read = True
    db.commit()
    _emit(db, group_key="missed_clock_in:p1:2026-03-02")
    assert db.query(AdminNotification).count() == 2


def test_notification_endpoints(client, db, admin):
    _emit(db, link_url="/personnel/1", metadata={"schedule_id": "s1"})

    assert client.get("/notifications").status_code == 401

    listed = client.get("/notifications", headers=auth(admin))
    assert listed.status_code == 200
    [item] = listed.json()
    assert item["type"] == "missed_clock_in"
    assert item["priority"] == "high"
    assert item["metadata"] == {"schedule_id": "s1"}
    assert not item["read"]

    marked = client.post(f"/notifications/{item['id']}/read", headers=auth(admin))
    assert marked.status_code == 200
    assert client.get("/notifications", params={"unread_only": True}, headers=auth(admin)).json() == []


def test_preference_endpoints(client, db, admin):
    prefs = client.get("/notifications/preferences", headers=auth(admin)).json()
    assert all(prefs.values())

    updated = client.put("/notifications/preferences", json={"auto_clock_out": False}, headers=auth(admin)).json()
    assert updated["auto_clock_out"] is False
    assert updated["missed_clock_in"] is True

    assert not should_send_notification(db, admin.id, "auto_clock_out")
