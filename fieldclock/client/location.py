from dataclasses import dataclass
from typing import Optional, Protocol

from .errors import LocationUnavailableError


@dataclass(frozen=True)
class Position:
    lat: float
    lng: float
    accuracy: Optional[float] = None  # meters


class LocationProvider(Protocol):
    async def current_position(self) -> Position:
        """Return the device position or raise LocationUnavailableError."""
        ...


class StaticLocationProvider:
    """Fixed position, used by kiosks with a known location and by tests."""

    def __init__(self, position: Optional[Position] = None):
        self.position = position
        self.denied = False

    def move_to(self, lat: float, lng: float, accuracy: Optional[float] = None) -> None:
        self.position = Position(lat, lng, accuracy)

    async def current_position(self) -> Position:
        if self.denied:
            raise LocationUnavailableError("Location permission denied")
        if self.position is None:
            raise LocationUnavailableError("No location fix available")
        return self.position
