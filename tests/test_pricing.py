"""Unit tests for the dynamic pricing engine."""

import pytest

from ridepool.domain.entities import Coordinate
from ridepool.domain.pricing import PricingEngine, compute_demand_factor


class TestPricingEngine:
    def setup_method(self):
        self.engine = PricingEngine(base_fare=50.0, per_km_rate=15.0)

    def test_solo_fare_without_demand(self):
        price = self.engine.calculate_price(10.0, demand_factor=0.0)
        assert price.surge_multiplier == 1.0
        assert price.subtotal == 200.0  # 50 + 10*15
        assert price.surge_amount == 0.0
        assert price.pool_discount == 0.0
        assert price.final_price == 200.0

    def test_two_rider_pool_gets_twenty_percent(self):
        price = self.engine.calculate_price(10.0, 0.0, is_pooled=True, pool_size=2)
        assert price.pool_discount_percent == 20.0
        assert price.pool_discount == pytest.approx(40.0)
        assert price.final_price == 160.0

    @pytest.mark.parametrize("size,percent", [(3, 25.0), (4, 30.0), (6, 30.0)])
    def test_discount_grows_per_rider_and_caps(self, size, percent):
        assert self.engine.pool_discount_percent(size) == percent

    def test_discount_ignored_when_not_pooled(self):
        price = self.engine.calculate_price(10.0, 0.0, is_pooled=False, pool_size=3)
        assert price.pool_discount_percent == 0.0
        assert price.final_price == 200.0

    def test_surge_scales_with_demand(self):
        price = self.engine.calculate_price(10.0, demand_factor=1.0)
        assert price.surge_multiplier == 1.5
        assert price.surge_amount == pytest.approx(100.0)
        assert price.final_price == 300.0

    def test_surge_is_capped(self):
        engine = PricingEngine(surge_max=1.2)
        assert engine.surge_multiplier(2.0) == 1.2

    def test_discount_applies_after_surge(self):
        price = self.engine.calculate_price(10.0, 1.0, is_pooled=True, pool_size=2)
        assert price.pool_discount == pytest.approx(60.0)  # 20 % of 300
        assert price.final_price == 240.0

    def test_only_final_price_is_rounded(self):
        price = self.engine.calculate_price(3.3333, 0.3)
        assert price.final_price == round(price.final_price, 2)
        assert price.distance_fare == pytest.approx(3.3333 * 15.0)

    def test_zero_distance_costs_base_fare(self):
        assert self.engine.calculate_price(0.0, 0.0).final_price == 50.0

    def test_price_trip_uses_direct_distance(self):
        pickup, dropoff = Coordinate(19.0, 72.8), Coordinate(19.2, 72.8)
        price = self.engine.price_trip(pickup, dropoff, 0.0)
        assert price.distance_km == pytest.approx(22.24, abs=0.01)

    def test_same_inputs_same_breakdown(self):
        a = self.engine.calculate_price(12.5, 0.75, True, 3)
        b = self.engine.calculate_price(12.5, 0.75, True, 3)
        assert a == b


class TestDemandFactor:
    @pytest.mark.parametrize(
        "pending,hour,expected",
        [
            (0, 12, 0.75),
            (10, 12, 0.75),
            (11, 12, 1.0),
            (30, 8, 1.25),
            (31, 18, 1.5),
            (50, 3, 1.25),
            (51, 20, 1.75),
            (51, 21, 1.5),
        ],
    )
    def test_volume_and_time_of_day(self, pending, hour, expected):
        assert compute_demand_factor(pending, hour) == expected

    def test_never_exceeds_two(self):
        assert compute_demand_factor(10_000, 8) <= 2.0
