from types import SimpleNamespace

import pytest

from fieldclock.services.geofence import (
    INSIDE,
    NOT_GEOCODED,
    NOT_REQUIRED,
    OUTSIDE,
    evaluate_project_geofence,
    haversine_miles,
    is_within_geofence,
    validate_radius,
)

from conftest import FAR, SITE


def _project(**kwargs):
    values = dict(site_lat=SITE[0], site_lng=SITE[1], geofence_radius_miles=0.25, require_clock_location=True)
    values.update(kwargs)
    return SimpleNamespace(**values)


def test_one_degree_of_latitude_is_about_69_miles():
    assert haversine_miles(0, 0, 1, 0) == pytest.approx(69.097, abs=0.01)


def test_same_point_is_inside_any_radius():
    assert is_within_geofence(SITE[0], SITE[1], SITE[0], SITE[1], 0.1)


def test_point_outside_radius():
    distance = haversine_miles(FAR[0], FAR[1], SITE[0], SITE[1])
    assert distance == pytest.approx(0.691, abs=0.01)
    assert not is_within_geofence(FAR[0], FAR[1], SITE[0], SITE[1], 0.25)
    assert is_within_geofence(FAR[0], FAR[1], SITE[0], SITE[1], 1.0)


@pytest.mark.parametrize("radius", [0.05, 1.5, -1])
def test_radius_outside_bounds_is_rejected(radius):
    with pytest.raises(ValueError):
        validate_radius(radius)


@pytest.mark.parametrize("radius", [0.1, 0.25, 1.0])
def test_radius_within_bounds_is_accepted(radius):
    assert validate_radius(radius) == radius


def test_project_without_location_requirement_is_always_allowed():
    check = evaluate_project_geofence(_project(require_clock_location=False), None, None)
    assert check.status == NOT_REQUIRED
    assert check.allowed


def test_project_without_coordinates_fails_closed():
    check = evaluate_project_geofence(_project(site_lat=None, site_lng=None), SITE[0], SITE[1])
    assert check.status == NOT_GEOCODED
    assert not check.allowed


def test_project_inside_and_outside():
    inside = evaluate_project_geofence(_project(), SITE[0], SITE[1])
    assert inside.status == INSIDE
    assert inside.distance_miles == pytest.approx(0.0)

    outside = evaluate_project_geofence(_project(), FAR[0], FAR[1])
    assert outside.status == OUTSIDE
    assert outside.radius_miles == 0.25
    assert not outside.allowed


def test_missing_radius_uses_default():
    check = evaluate_project_geofence(_project(geofence_radius_miles=None), SITE[0], SITE[1])
    assert check.radius_miles == 0.25


def test_distance_equal_to_radius_is_inside():
    point = (SITE[0] + 0.003, SITE[1] + 0.002)
    distance = haversine_miles(point[0], point[1], SITE[0], SITE[1])

    assert is_within_geofence(point[0], point[1], SITE[0], SITE[1], distance)
    assert not is_within_geofence(point[0], point[1], SITE[0], SITE[1], distance * 0.999)


@pytest.mark.parametrize("bearing", [(1, 0), (0, 1), (-1, -1)])
def test_walking_away_leaves_the_geofence_once(bearing):
    step = 0.0005
    inside = [
        is_within_geofence(SITE[0] + bearing[0] * step * i, SITE[1] + bearing[1] * step * i, SITE[0], SITE[1], 0.25)
        for i in range(60)
    ]

    flip = inside.index(False)
    assert flip > 0
    assert all(inside[:flip])
    assert not any(inside[flip:])
