"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.
"""
import math
from dataclasses import dataclass
from typing import Optional, Tuple

from ..config import settings
from ..errors import InvalidCoordinate

# Mean Earth radius in meters
EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class LocationCheck:
    valid: bool
    distance_m: float
    message: str


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    # Convert to radians
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # Float error can push a a hair past 1 for antipodal points
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def check_coordinates(latitude: float, longitude: float) -> None:
    """Raise InvalidCoordinate when latitude/longitude are outside valid ranges."""
    if latitude is None or not -90 <= latitude <= 90:
        raise InvalidCoordinate(
            "Invalid latitude. Must be between -90 and 90 degrees.",
            errors={"latitude": ["Must be between -90 and 90 degrees."]},
        )
    if longitude is None or not -180 <= longitude <= 180:
        raise InvalidCoordinate(
            "Invalid longitude. Must be between -180 and 180 degrees.",
            errors={"longitude": ["Must be between -180 and 180 degrees."]},
        )


def office_location() -> dict:
    return {
        "latitude": settings.office_latitude,
        "longitude": settings.office_longitude,
        "max_distance": settings.office_max_distance_m,
    }


def validate_location(
    latitude: float,
    longitude: float,
    office: Optional[Tuple[float, float]] = None,
    max_distance_m: Optional[float] = None,
) -> LocationCheck:
    """
    Check whether a reported coordinate is within range of the office.

    Coordinate ranges are checked before any distance is computed, so an
    invalid coordinate is reported as InvalidCoordinate, never as too far.
    """
    check_coordinates(latitude, longitude)

    if office is None:
        office = (settings.office_latitude, settings.office_longitude)
    if max_distance_m is None:
        max_distance_m = settings.office_max_distance_m

    distance = round(haversine_distance(office[0], office[1], latitude, longitude), 2)
    valid = distance <= max_distance_m

    if valid:
        message = f"Location is within range. Distance: {distance}m from office."
    else:
        message = f"Location is too far from office. Distance: {distance}m (max allowed: {max_distance_m:g}m)."
    return LocationCheck(valid=valid, distance_m=distance, message=message)
