# tests/test_geo.py
"""Tests for app/core/dispatch/geo.py: distance, range matching, obfuscation."""
import math
import random

import pytest

from app.core.dispatch.errors import InvalidCoordinateError, ValidationError
from app.core.dispatch.geo import (
    METERS_PER_DEGREE,
    Coordinates,
    distance_km,
    job_in_agent_range,
    obfuscate_point,
    validate_coordinates,
    within_range,
)
from conftest import AGENT_HOME, DELIVERY, LYON, PICKUP


class TestValidateCoordinates:
    def test_accepts_valid_pair(self):
        point = validate_coordinates(48.8566, 2.3522)
        assert point == Coordinates(48.8566, 2.3522)

    def test_accepts_numeric_strings(self):
        assert validate_coordinates("45.5", "-73.5") == Coordinates(45.5, -73.5)

    def test_accepts_domain_bounds(self):
        assert validate_coordinates(90, 180) == Coordinates(90.0, 180.0)
        assert validate_coordinates(-90, -180) == Coordinates(-90.0, -180.0)

    @pytest.mark.parametrize("lat,lng", [
        (91, 0),
        (-90.0001, 0),
        (0, 180.5),
        (0, -181),
        (float("nan"), 0),
        (0, float("nan")),
        (None, 2.0),
        ("north", 2.0),
        (True, 2.0),
    ])
    def test_rejects_invalid(self, lat, lng):
        with pytest.raises(InvalidCoordinateError):
            validate_coordinates(lat, lng)

    def test_invalid_coordinate_is_a_validation_error(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_coordinates(100, 0)
        assert exc_info.value.status_code == 400

    def test_from_dict_validates(self):
        with pytest.raises(InvalidCoordinateError):
            Coordinates.from_dict({"lat": 12.0})


class TestDistance:
    def test_same_point_is_zero(self):
        assert distance_km(PICKUP, PICKUP) == 0.0

    def test_symmetric(self):
        assert distance_km(PICKUP, LYON) == pytest.approx(distance_km(LYON, PICKUP))

    def test_paris_to_lyon(self):
        assert distance_km(PICKUP, LYON) == pytest.approx(392, abs=5)

    def test_short_urban_leg(self):
        assert distance_km(AGENT_HOME, PICKUP) == pytest.approx(0.97, abs=0.1)
        assert distance_km(AGENT_HOME, DELIVERY) == pytest.approx(3.6, abs=0.2)

    def test_antipodes_stay_finite(self):
        d = distance_km(Coordinates(0, 0), Coordinates(0, 180))
        assert math.isfinite(d)
        assert d == pytest.approx(math.pi * 6371.0, rel=1e-6)

    def test_rejects_out_of_domain_points(self):
        with pytest.raises(InvalidCoordinateError):
            distance_km(Coordinates(95, 0), PICKUP)


class TestRange:
    def test_boundary_is_inclusive(self):
        d = distance_km(AGENT_HOME, PICKUP)
        assert within_range(AGENT_HOME, PICKUP, d) is True

    def test_symmetric_membership(self):
        assert within_range(AGENT_HOME, DELIVERY, 5) == within_range(DELIVERY, AGENT_HOME, 5)

    def test_zero_range_matches_only_same_point(self):
        assert within_range(PICKUP, PICKUP, 0) is True
        assert within_range(PICKUP, DELIVERY, 0) is False

    def test_negative_range_rejected(self):
        with pytest.raises(ValueError):
            within_range(PICKUP, DELIVERY, -1)

    def test_job_requires_both_points_in_range(self):
        assert job_in_agent_range(AGENT_HOME, PICKUP, DELIVERY, 10) is True
        # Pickup inside, delivery outside
        assert job_in_agent_range(AGENT_HOME, PICKUP, DELIVERY, 2) is False
        assert job_in_agent_range(AGENT_HOME, PICKUP, LYON, 10) is False


class TestObfuscation:
    def test_offset_is_within_radius(self):
        rng = random.Random(42)
        for _ in range(200):
            shown = obfuscate_point(PICKUP, 300, rng)
            moved_m = distance_km(PICKUP, shown) * 1000
            assert moved_m <= 300 * 1.01

    def test_never_returns_the_true_point(self):
        rng = random.Random(1)
        for _ in range(50):
            shown = obfuscate_point(PICKUP, 300, rng)
            assert shown != PICKUP
            assert distance_km(PICKUP, shown) * 1000 >= 300 * 0.3 * 0.95

    def test_deterministic_with_seeded_rng(self):
        a = obfuscate_point(PICKUP, 300, random.Random(7))
        b = obfuscate_point(PICKUP, 300, random.Random(7))
        assert a == b

    def test_zero_radius_returns_point(self):
        assert obfuscate_point(PICKUP, 0) == PICKUP

    def test_near_pole_stays_in_domain(self):
        rng = random.Random(3)
        for _ in range(100):
            shown = obfuscate_point(Coordinates(89.9999, 179.9999), 5000, rng)
            assert -90.0 <= shown.lat <= 90.0
            assert -180.0 <= shown.lng <= 180.0

    def test_meters_per_degree_constant(self):
        assert METERS_PER_DEGREE == pytest.approx(111_195, rel=1e-3)
