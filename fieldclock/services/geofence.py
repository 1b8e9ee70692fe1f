"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.
"""
import math
from dataclasses import dataclass
from typing import Optional
from ..config import settings

# Earth radius in miles
EARTH_RADIUS_MILES = 3959.0

NOT_REQUIRED = "not_required"
NOT_GEOCODED = "not_geocoded"
INSIDE = "inside"
OUTSIDE = "outside"


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in miles
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_MILES * c


def is_within_geofence(
    device_lat: float,
    device_lng: float,
    site_lat: float,
    site_lng: float,
    radius_miles: float,
) -> bool:
    """True iff the device is no farther than radius_miles from the site."""
    return haversine_miles(device_lat, device_lng, site_lat, site_lng) <= radius_miles


def validate_radius(radius_miles: float) -> float:
    """
    Check a geofence radius against the configured policy bounds.

    Raises:
        ValueError: radius outside [geofence_radius_min_miles, geofence_radius_max_miles]
    """
    low = settings.geofence_radius_min_miles
    high = settings.geofence_radius_max_miles
    if not (low <= radius_miles <= high):
        raise ValueError(f"Geofence radius must be between {low} and {high} miles")
    return radius_miles


@dataclass
class GeofenceCheck:
    status: str  # not_required|not_geocoded|inside|outside
    distance_miles: Optional[float] = None
    radius_miles: Optional[float] = None

    @property
    def allowed(self) -> bool:
        return self.status in (NOT_REQUIRED, INSIDE)


def effective_radius(project) -> float:
    return float(project.geofence_radius_miles or settings.geofence_radius_default_miles)


def evaluate_project_geofence(project, lat: Optional[float], lng: Optional[float]) -> GeofenceCheck:
    """
    Decide whether a device position satisfies a project's clock location rule.

    Projects that do not require location are always allowed. Projects that
    require it but have no site coordinates fail closed as not geocoded.

    Args:
        project: Project with site_lat, site_lng, geofence_radius_miles, require_clock_location
        lat: Device latitude (may be None when unknown)
        lng: Device longitude (may be None when unknown)

    Returns:
        GeofenceCheck
    """
    if not project.require_clock_location:
        return GeofenceCheck(status=NOT_REQUIRED)

    radius = effective_radius(project)
    if project.site_lat is None or project.site_lng is None:
        return GeofenceCheck(status=NOT_GEOCODED, radius_miles=radius)

    distance = haversine_miles(lat, lng, float(project.site_lat), float(project.site_lng))
    status = INSIDE if distance <= radius else OUTSIDE
    return GeofenceCheck(status=status, distance_miles=distance, radius_miles=radius)
