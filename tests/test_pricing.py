# tests/test_pricing.py
"""Tests for the advisory price quote."""
from decimal import Decimal

import pytest

from app.core.dispatch.geo import distance_km
from app.core.dispatch.pricing import (
    BASE_PRICE,
    MINIMUM_PRICE,
    estimate_price,
    to_minor_units,
)
from conftest import AGENT_HOME, DELIVERY, LYON, PICKUP


class TestEstimatePrice:
    def test_trip_only(self):
        quote = estimate_price(PICKUP, DELIVERY)
        assert quote.approach_km == 0.0
        assert quote.trip_km == pytest.approx(distance_km(PICKUP, DELIVERY))
        assert quote.final_price == quote.base_price + quote.distance_price

    def test_approach_leg_is_billed(self):
        without = estimate_price(PICKUP, DELIVERY)
        with_agent = estimate_price(PICKUP, DELIVERY, AGENT_HOME)
        assert with_agent.approach_km > 0
        assert with_agent.final_price > without.final_price

    def test_minimum_price_applies(self):
        quote = estimate_price(PICKUP, PICKUP)
        assert quote.distance_price == Decimal("0.00")
        assert quote.final_price == MINIMUM_PRICE
        assert quote.final_price > BASE_PRICE

    def test_long_trip(self):
        quote = estimate_price(PICKUP, LYON, price_per_km=Decimal("1.00"), base_price=Decimal("0"))
        assert quote.final_price == pytest.approx(Decimal("392"), abs=Decimal("5"))

    def test_custom_rates(self):
        quote = estimate_price(
            PICKUP, DELIVERY,
            base_price=Decimal("10.00"), price_per_km=Decimal("0"), minimum_price=Decimal("1.00"),
        )
        assert quote.final_price == Decimal("10.00")

    def test_to_dict(self):
        data = estimate_price(PICKUP, DELIVERY, AGENT_HOME).to_dict()
        assert set(data) == {
            "base_price", "distance_price", "final_price",
            "approach_km", "trip_km", "billable_km", "price_per_km",
        }
        assert data["billable_km"] == pytest.approx(data["approach_km"] + data["trip_km"], abs=0.02)


class TestMinorUnits:
    @pytest.mark.parametrize("amount,expected", [
        (Decimal("25.50"), 2550),
        (Decimal("8"), 800),
        (Decimal("0.005"), 1),
        (Decimal("19.994"), 1999),
    ])
    def test_to_minor_units(self, amount, expected):
        assert to_minor_units(amount) == expected
