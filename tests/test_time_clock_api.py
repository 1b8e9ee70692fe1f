from fieldclock.models.models import TimeEntry

from conftest import FAR, SITE, auth, make_personnel, make_user


def _clock_in(client, user, personnel, project, coords=SITE, **extra):
    payload = {"personnel_id": str(personnel.id), "project_id": str(project.id), "lat": coords[0], "lng": coords[1]}
    payload.update(extra)
    return client.post("/time-clock/clock-in", json=payload, headers=auth(user))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Request-ID"]


def test_requests_without_identity_are_rejected(client, personnel, project):
    response = client.post(
        "/time-clock/clock-in",
        json={"personnel_id": str(personnel.id), "project_id": str(project.id)},
    )
    assert response.status_code == 401


def test_clock_in_and_out(client, worker, personnel, project):
    response = _clock_in(client, worker, personnel, project)
    assert response.status_code == 200
    entry = response.json()
    assert entry["clock_out_at"] is None
    assert entry["last_location_check_at"] == entry["clock_in_at"]

    opened = client.get(
        "/time-clock/open",
        params={"personnel_id": str(personnel.id), "project_id": str(project.id)},
        headers=auth(worker),
    )
    assert opened.json()["entry"]["id"] == entry["id"]

    out = client.post(f"/time-clock/entries/{entry['id']}/clock-out", json={}, headers=auth(worker))
    assert out.status_code == 200
    assert out.json()["already_closed"] is False
    total_hours = out.json()["entry"]["total_hours"]

    again = client.post(f"/time-clock/entries/{entry['id']}/clock-out", json={}, headers=auth(worker))
    assert again.status_code == 200
    assert again.json()["already_closed"] is True
    assert again.json()["entry"]["total_hours"] == total_hours


def test_clock_in_outside_geofence_is_forbidden(client, db, worker, personnel, project):
    response = _clock_in(client, worker, personnel, project, coords=FAR)

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["code"] == "outside_geofence"
    assert detail["radius_miles"] == 0.25
    assert "0.69 miles" in detail["message"]
    assert db.query(TimeEntry).count() == 0


def test_second_open_entry_conflicts(client, worker, personnel, project):
    assert _clock_in(client, worker, personnel, project).status_code == 200
    response = _clock_in(client, worker, personnel, project)
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "open_entry_exists"


def test_worker_cannot_act_for_someone_else(client, db, worker, project):
    other = make_personnel(db, "Bruno", "Costa", user=make_user(db, "bruno", "worker"))
    response = _clock_in(client, worker, other, project)
    assert response.status_code == 403


def test_only_admins_skip_the_schedule_check(client, admin, worker, personnel, project):
    assert _clock_in(client, worker, personnel, project, skip_schedule_check=True).status_code == 403
    assert _clock_in(client, admin, personnel, project, skip_schedule_check=True).status_code == 200


def test_location_ping_and_lunch(client, worker, personnel, project):
    entry_id = _clock_in(client, worker, personnel, project).json()["id"]

    ping = client.post(f"/time-clock/entries/{entry_id}/location", json={"lat": SITE[0], "lng": SITE[1]}, headers=auth(worker))
    assert ping.json()["status"] == "updated"

    lunch = client.post(f"/time-clock/entries/{entry_id}/lunch/start", headers=auth(worker))
    assert lunch.json()["is_on_lunch"] is True
    on_lunch = client.post(f"/time-clock/entries/{entry_id}/location", json={"lat": FAR[0], "lng": FAR[1]}, headers=auth(worker))
    assert on_lunch.json()["status"] == "on_lunch"
    back = client.post(f"/time-clock/entries/{entry_id}/lunch/end", headers=auth(worker))
    assert back.json()["is_on_lunch"] is False

    left = client.post(f"/time-clock/entries/{entry_id}/location", json={"lat": FAR[0], "lng": FAR[1]}, headers=auth(worker))
    body = left.json()
    assert body["status"] == "auto_clocked_out"
    assert body["blocked_until"]

    blocked = _clock_in(client, worker, personnel, project)
    assert blocked.status_code == 409
    assert blocked.json()["detail"]["code"] == "clock_blocked"
    assert blocked.json()["detail"]["blocked_until"] == body["blocked_until"]


def test_admin_clears_block(client, admin, worker, personnel, project):
    entry_id = _clock_in(client, worker, personnel, project).json()["id"]
    client.post(f"/time-clock/entries/{entry_id}/location", json={"lat": FAR[0], "lng": FAR[1]}, headers=auth(worker))

    assert client.post(f"/time-clock/entries/{entry_id}/clear-block", headers=auth(worker)).status_code == 403
    cleared = client.post(f"/time-clock/entries/{entry_id}/clear-block", headers=auth(admin))
    assert cleared.json()["clock_blocked_until"] is None
    assert _clock_in(client, worker, personnel, project).status_code == 200


def test_admin_edits_entry(client, admin, worker, personnel, project):
    entry_id = _clock_in(client, worker, personnel, project).json()["id"]
    client.post(f"/time-clock/entries/{entry_id}/clock-out", json={}, headers=auth(worker))

    response = client.patch(
        f"/time-clock/entries/{entry_id}",
        json={"notes": "Forgot to clock out", "hourly_rate": 27.5},
        headers=auth(admin),
    )
    assert response.status_code == 200
    assert response.json()["notes"] == "Forgot to clock out"
    assert response.json()["hourly_rate"] == 27.5
    assert client.patch(f"/time-clock/entries/{entry_id}", json={"notes": "x"}, headers=auth(worker)).status_code == 403


def test_geofence_settings(client, admin, project):
    url = f"/time-clock/projects/{project.id}/geofence"
    assert client.put(url, json={"geofence_radius_miles": 2.0}, headers=auth(admin)).status_code == 400

    response = client.put(url, json={"geofence_radius_miles": 0.5, "require_clock_location": False}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["geofence_radius_miles"] == 0.5
    assert response.json()["require_clock_location"] is False


def test_history(client, worker, personnel, project):
    entry_id = _clock_in(client, worker, personnel, project).json()["id"]
    client.post(f"/time-clock/entries/{entry_id}/clock-out", json={}, headers=auth(worker))

    history = client.get("/time-clock/history", params={"personnel_id": str(personnel.id)}, headers=auth(worker))
    assert [e["id"] for e in history.json()] == [entry_id]


def test_job_triggers_require_admin(client, admin, worker):
    assert client.post("/jobs/check-stale-clocks", headers=auth(worker)).status_code == 403

    stale = client.post("/jobs/check-stale-clocks", headers=auth(admin)).json()
    assert stale["success"] and stale["checked"] == 0

    missed = client.post("/jobs/check-missed-clock-ins", headers=auth(admin)).json()
    assert missed == {"success": True, "checked": 0, "alerts_created": 0}


def test_audit_trail(client, admin, worker, personnel, project):
    entry_id = _clock_in(client, worker, personnel, project).json()["id"]
    client.post(f"/time-clock/entries/{entry_id}/clock-out", json={}, headers=auth(worker))

    assert client.get("/time-clock/audit", headers=auth(worker)).status_code == 403
    logs = client.get("/time-clock/audit", params={"entity_id": entry_id}, headers=auth(admin)).json()
    assert {log["action"] for log in logs} == {"CLOCK_IN", "CLOCK_OUT"}
    assert all(log["integrity_hash"] for log in logs)


def test_admin_edit_rejects_clearing_required_fields(client, admin, worker, personnel, project):
    entry_id = _clock_in(client, worker, personnel, project).json()["id"]
    client.post(f"/time-clock/entries/{entry_id}/clock-out", json={}, headers=auth(worker))
    url = f"/time-clock/entries/{entry_id}"

    cleared_lunch = client.patch(url, json={"lunch_duration_minutes": None}, headers=auth(admin))
    assert cleared_lunch.status_code == 400
    assert cleared_lunch.json()["detail"]["code"] == "invalid_entry_update"

    reopened = client.patch(url, json={"clock_out_at": None}, headers=auth(admin))
    assert reopened.status_code == 400
    assert client.get("/time-clock/open", params={"personnel_id": str(personnel.id), "project_id": str(project.id)}, headers=auth(worker)).json()["entry"] is None
