"""
Dynamic Pricing Engine
======================

Formula
-------
  subtotal      = Base_Fare + Distance x Rate_Per_KM
  surge         = min(1.0 + demand_factor x 0.5, Surge_Max)
  surge_amount  = subtotal x (surge - 1.0)
  discount_pct  = min(Pool_Discount + (pool_size - 1) x 5, 30)   (pooled only)
  pool_discount = (subtotal + surge_amount) x discount_pct / 100
  final_price   = max(0, subtotal + surge_amount - pool_discount)

Only ``final_price`` is rounded to currency precision; intermediates keep
full precision so the breakdown adds up exactly.

Demand factor
-------------
A normalised [0, 2] signal supplied by ``services.demand.DemandMonitor``;
``compute_demand_factor`` is the formula it samples with.

Complexity: O(1) per price calculation.
"""

from __future__ import annotations

from .distance import distance_km
from .entities import Coordinate, PriceBreakdown

SURGE_IMPACT = 0.5
DISCOUNT_STEP_PERCENT = 5.0
MAX_DISCOUNT_PERCENT = 30.0
MAX_DEMAND_FACTOR = 2.0

PEAK_HOURS = (range(7, 10), range(17, 21))


def compute_demand_factor(pending_count: int, hour: int) -> float:
    """Blend recent request volume with a time-of-day factor."""
    if pending_count > 50:
        volume_factor = 2.0
    elif pending_count > 30:
        volume_factor = 1.5
    elif pending_count > 10:
        volume_factor = 1.0
    else:
        volume_factor = 0.5

    time_of_day_factor = 1.5 if any(hour in h for h in PEAK_HOURS) else 1.0
    return min((volume_factor + time_of_day_factor) / 2, MAX_DEMAND_FACTOR)


class PricingEngine:
    """High-level API used by the pool coordinator and the quote endpoint."""

    def __init__(
        self,
        base_fare: float = 50.0,
        per_km_rate: float = 15.0,
        surge_max: float = 2.5,
        base_discount_percent: float = 15.0,
    ):
        self.base_fare = base_fare
        self.per_km_rate = per_km_rate
        self.surge_max = surge_max
        self.base_discount_percent = base_discount_percent

    def surge_multiplier(self, demand_factor: float) -> float:
        return min(1.0 + demand_factor * SURGE_IMPACT, self.surge_max)

    def pool_discount_percent(self, pool_size: int) -> float:
        bonus = (pool_size - 1) * DISCOUNT_STEP_PERCENT
        return min(self.base_discount_percent + bonus, MAX_DISCOUNT_PERCENT)

    def calculate_price(
        self,
        distance_km: float,
        demand_factor: float,
        is_pooled: bool = False,
        pool_size: int = 1,
    ) -> PriceBreakdown:
        distance_fare = distance_km * self.per_km_rate
        subtotal = self.base_fare + distance_fare

        surge = self.surge_multiplier(demand_factor)
        surge_amount = subtotal * (surge - 1.0)

        discount_pct = self.pool_discount_percent(pool_size) if is_pooled else 0.0
        pool_discount = (subtotal + surge_amount) * discount_pct / 100

        final_price = max(0.0, subtotal + surge_amount - pool_discount)

        return PriceBreakdown(
            base_fare=self.base_fare,
            distance_fare=distance_fare,
            subtotal=subtotal,
            surge_multiplier=surge,
            surge_amount=surge_amount,
            pool_discount_percent=discount_pct,
            pool_discount=pool_discount,
            final_price=round(final_price, 2),
            demand_factor=demand_factor,
            distance_km=distance_km,
        )

    def price_trip(
        self,
        pickup: Coordinate,
        dropoff: Coordinate,
        demand_factor: float,
        is_pooled: bool = False,
        pool_size: int = 1,
    ) -> PriceBreakdown:
        """Price the direct pickup -> drop-off distance."""
        return self.calculate_price(
            distance_km(pickup, dropoff), demand_factor, is_pooled, pool_size
        )
