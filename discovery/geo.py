"""Location checks for discovery claims."""

from __future__ import annotations

from dataclasses import dataclass
from math import atan2, cos, isfinite, radians, sin, sqrt
from typing import TYPE_CHECKING

from .outcomes import malformed

if TYPE_CHECKING:  # pragma: no cover
    from .catalog import Landmark

EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeoCheck:
    is_nearby: bool
    distance_m: float


def validate_coordinates(lat: float, lng: float) -> None:
    if not (isfinite(lat) and isfinite(lng)):
        raise malformed("Coordinates must be finite numbers")
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        raise malformed("Coordinates out of range")


def distance_m(lat_a: float, lng_a: float, lat_b: float, lng_b: float) -> float:
    """Return distance in metres using haversine formula."""
    d_lat = radians(lat_b - lat_a)
    d_lng = radians(lng_b - lng_a)
    lat1 = radians(lat_a)
    lat2 = radians(lat_b)
    a = sin(d_lat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(d_lng / 2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1 - a))
    return EARTH_RADIUS_M * c


class GeoVerifier:
    """Decides whether a claimed fix is close enough to a landmark.

    A claim is nearby when its distance is within the landmark radius plus
    ``slack_factor`` times the reported GPS accuracy.
    """

    def __init__(self, slack_factor: float = 1.0):
        self.slack_factor = slack_factor

    def verify(self, lat: float, lng: float, accuracy_m: float, landmark: "Landmark") -> GeoCheck:
        validate_coordinates(lat, lng)
        if not isfinite(accuracy_m) or accuracy_m < 0:
            raise malformed("GPS accuracy must be a non-negative number")

        distance = distance_m(lat, lng, landmark.latitude, landmark.longitude)
        allowance = landmark.radius_m + self.slack_factor * accuracy_m
        return GeoCheck(is_nearby=distance <= allowance, distance_m=distance)


def travel_speed_kmh(
    lat_a: float,
    lng_a: float,
    lat_b: float,
    lng_b: float,
    elapsed_seconds: float,
) -> float:
    """Average speed between two fixes; infinite when time did not advance."""
    metres = distance_m(lat_a, lng_a, lat_b, lng_b)
    if metres == 0:
        return 0.0
    if elapsed_seconds <= 0:
        return float("inf")
    return (metres / 1000.0) / (elapsed_seconds / 3600.0)
