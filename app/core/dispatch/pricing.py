# app/core/dispatch/pricing.py
"""
Distance-based price quote.

Billable distance is the straight-line agent -> pickup leg (when the
agent's position is known) plus pickup -> delivery.  Quotes are advisory:
the stored job price is whatever the client submits at creation.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from app.core.dispatch.geo import Coordinates, distance_km

CENT = Decimal("0.01")

BASE_PRICE = Decimal("5.00")
PRICE_PER_KM = Decimal("2.00")
MINIMUM_PRICE = Decimal("8.00")


@dataclass(frozen=True)
class PriceQuote:
    base_price: Decimal
    distance_price: Decimal
    final_price: Decimal
    approach_km: float   # agent -> pickup
    trip_km: float       # pickup -> delivery
    price_per_km: Decimal

    @property
    def billable_km(self) -> float:
        return self.approach_km + self.trip_km

    def to_dict(self) -> dict:
        return {
            "base_price": str(self.base_price),
            "distance_price": str(self.distance_price),
            "final_price": str(self.final_price),
            "approach_km": round(self.approach_km, 2),
            "trip_km": round(self.trip_km, 2),
            "billable_km": round(self.billable_km, 2),
            "price_per_km": str(self.price_per_km),
        }


def estimate_price(
    pickup: Coordinates,
    delivery: Coordinates,
    agent_location: Coordinates | None = None,
    *,
    base_price: Decimal = BASE_PRICE,
    price_per_km: Decimal = PRICE_PER_KM,
    minimum_price: Decimal = MINIMUM_PRICE,
) -> PriceQuote:
    approach = distance_km(agent_location, pickup) if agent_location else 0.0
    trip = distance_km(pickup, delivery)

    distance_price = (price_per_km * Decimal(str(approach + trip))).quantize(CENT, ROUND_HALF_UP)
    final = max(base_price + distance_price, minimum_price).quantize(CENT, ROUND_HALF_UP)

    return PriceQuote(
        base_price=base_price,
        distance_price=distance_price,
        final_price=final,
        approach_km=approach,
        trip_km=trip,
        price_per_km=price_per_km,
    )


def to_minor_units(amount: Decimal) -> int:
    """Euros -> cents, rounded half-up."""
    return int((amount * 100).quantize(Decimal("1"), ROUND_HALF_UP))
