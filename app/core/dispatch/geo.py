# app/core/dispatch/geo.py
"""
Geographic matching for dispatch.

Pure functions, no I/O:
- ``distance_km``: great-circle (haversine) distance
- ``within_range``: range membership, symmetric in its two points
- ``job_in_agent_range``: both pickup and delivery inside the agent's radius
- ``obfuscate_point``: randomly perturbed display point for privacy
"""
from __future__ import annotations

import math
import random
from dataclasses import dataclass

from app.core.dispatch.errors import InvalidCoordinateError

__all__ = [
    "EARTH_RADIUS_KM", "METERS_PER_DEGREE",
    "Coordinates",
    "validate_coordinates", "distance_km", "within_range",
    "job_in_agent_range", "obfuscate_point",
]


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
EARTH_RADIUS_KM = 6371.0
METERS_PER_DEGREE = EARTH_RADIUS_KM * 1000 * math.pi / 180  # ~111.2 km

# Obfuscated points land between 30% and 100% of the radius away
_MIN_OFFSET_FRACTION = 0.3


@dataclass(frozen=True)
class Coordinates:
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lng: float

    def to_dict(self) -> dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}

    @classmethod
    def from_dict(cls, data: dict) -> "Coordinates":
        return validate_coordinates(data.get("lat"), data.get("lng"))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_coordinates(lat: object, lng: object) -> Coordinates:
    """Build a ``Coordinates`` or raise ``InvalidCoordinateError``."""
    if isinstance(lat, bool) or isinstance(lng, bool):
        raise InvalidCoordinateError(lat, lng)
    try:
        flat = float(lat)  # type: ignore[arg-type]
        flng = float(lng)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidCoordinateError(lat, lng) from None

    if math.isnan(flat) or math.isnan(flng):
        raise InvalidCoordinateError(lat, lng)
    if not (-90.0 <= flat <= 90.0) or not (-180.0 <= flng <= 180.0):
        raise InvalidCoordinateError(lat, lng)
    return Coordinates(flat, flng)


def _checked(point: Coordinates) -> Coordinates:
    return validate_coordinates(point.lat, point.lng)


# ---------------------------------------------------------------------------
# Haversine distance
# ---------------------------------------------------------------------------

def distance_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points in kilometres."""
    a = _checked(a)
    b = _checked(b)
    dlat = math.radians(b.lat - a.lat)
    dlng = math.radians(b.lng - a.lng)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(a.lat))
        * math.cos(math.radians(b.lat))
        * math.sin(dlng / 2) ** 2
    )
    h = min(1.0, h)
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def within_range(origin: Coordinates, target: Coordinates, range_km: float) -> bool:
    """True when ``target`` is at most ``range_km`` from ``origin``."""
    if math.isnan(range_km) or range_km < 0:
        raise ValueError(f"range_km must be a non-negative number, got {range_km!r}")
    return distance_km(origin, target) <= range_km


def job_in_agent_range(
    agent_position: Coordinates,
    pickup: Coordinates,
    delivery: Coordinates,
    range_km: float,
) -> bool:
    """A job qualifies only if BOTH of its points are inside the agent's radius."""
    return (
        within_range(agent_position, pickup, range_km)
        and within_range(agent_position, delivery, range_km)
    )


# ---------------------------------------------------------------------------
# Privacy
# ---------------------------------------------------------------------------

def obfuscate_point(
    point: Coordinates,
    radius_m: float,
    rng: random.Random | None = None,
) -> Coordinates:
    """Return a point offset from ``point`` by a random bearing and distance.

    The offset is between 30% and 100% of ``radius_m`` so the displayed
    point never sits on the true address.  Latitude is clamped to the
    valid domain and longitude wrapped into [-180, 180].
    """
    point = _checked(point)
    if radius_m <= 0:
        return point

    rng = rng or random.SystemRandom()
    radius_deg = radius_m / METERS_PER_DEGREE
    angle = rng.random() * 2 * math.pi
    offset = radius_deg * (_MIN_OFFSET_FRACTION + (1 - _MIN_OFFSET_FRACTION) * rng.random())

    lat_offset = offset * math.sin(angle)
    cos_lat = max(math.cos(math.radians(point.lat)), 1e-6)
    lng_offset = offset * math.cos(angle) / cos_lat

    lat = max(-90.0, min(90.0, point.lat + lat_offset))
    lng = point.lng + lng_offset
    if lng > 180.0 or lng < -180.0:
        lng = (lng + 180.0) % 360.0 - 180.0
    return Coordinates(lat, lng)
