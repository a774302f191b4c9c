"""
Distance calculation using the Haversine formula.

Assumption
----------
We use great-circle (Haversine) distance instead of a real routing engine
(OSRM / Google Maps) to keep the engine self-contained and deterministic.
In production ``distance_km`` would be backed by a routing-service client
that returns actual road distances.

Complexity: O(1) per call, O(n) for a route.
"""

from __future__ import annotations

import math
from typing import Iterable, Union

from .entities import Coordinate, Stop

EARTH_RADIUS_KM = 6_371.0


def haversine_km(
    lat1: float, lng1: float, lat2: float, lng2: float
) -> float:
    """Return the great-circle distance in **km** between two points."""
    lat1_r, lat2_r = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def distance_km(a: Coordinate, b: Coordinate) -> float:
    return haversine_km(a.latitude, a.longitude, b.latitude, b.longitude)


def _point(item: Union[Stop, Coordinate]) -> Coordinate:
    return item.location if isinstance(item, Stop) else item


def route_length_km(stops: Iterable[Union[Stop, Coordinate]]) -> float:
    """Sum of consecutive hop distances along an ordered stop sequence."""
    points = [_point(s) for s in stops]
    return sum(distance_km(points[i], points[i + 1]) for i in range(len(points) - 1))
