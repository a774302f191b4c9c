"""
Route Sequencing  (constrained nearest neighbour)
=================================================

Orders the pickup / drop-off stops of a pool into one visiting sequence
and measures each rider's detour along it.

Algorithm
---------
1. Start at the first pickup in input order.
2. Repeatedly move to the nearest unvisited stop, where a rider's drop-off
   only becomes eligible once that rider's pickup has been visited.
3. If nothing is eligible (only possible with malformed input, e.g. a
   drop-off whose pickup is missing), take the first unvisited stop and
   flag the plan as ``degraded``.

Detour per rider
----------------
  actual = sum of hops from the rider's pickup to their drop-off
  detour = actual - haversine(pickup, drop-off)

On a degraded plan a drop-off may precede its pickup, which makes the raw
detour negative; callers reject degraded plans.

Complexity
----------
O(k²) for k stops.  A pool holds at most 4 riders (k <= 8), so an exact
search (k!) buys nothing worth its cost.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .distance import distance_km, route_length_km
from .entities import RideRequest, Stop
from .enums import StopKind


@dataclass(frozen=True)
class RoutePlan:
    stops: tuple[Stop, ...]
    total_km: float
    detours_km: dict[int, float] = field(default_factory=dict)
    pickup_index: dict[int, int] = field(default_factory=dict)
    dropoff_index: dict[int, int] = field(default_factory=dict)
    degraded: bool = False

    @property
    def average_detour_km(self) -> float:
        if not self.detours_km:
            return 0.0
        return sum(max(0.0, d) for d in self.detours_km.values()) / len(
            self.detours_km
        )

    def clamped_detour(self, request_id: int) -> float:
        return max(0.0, self.detours_km.get(request_id, 0.0))


def stops_for(requests: Iterable[RideRequest]) -> list[Stop]:
    """Two stops per request, pickup first, in request order."""
    stops: list[Stop] = []
    for req in requests:
        stops.append(Stop(req.id, req.user_id, req.pickup, StopKind.PICKUP))
        stops.append(Stop(req.id, req.user_id, req.dropoff, StopKind.DROPOFF))
    return stops


def sequence_stops(stops: Sequence[Stop]) -> tuple[list[Stop], bool]:
    """Return ``(ordered_stops, degraded)``."""
    if len(stops) <= 1:
        return list(stops), False

    start = next(
        (i for i, s in enumerate(stops) if s.kind is StopKind.PICKUP), 0
    )
    ordered = [stops[start]]
    visited = {start}
    picked_up: set[int] = set()
    if stops[start].kind is StopKind.PICKUP:
        picked_up.add(stops[start].request_id)
    degraded = False

    while len(ordered) < len(stops):
        current = ordered[-1].location
        nearest_idx = -1
        min_distance = float("inf")

        for i, stop in enumerate(stops):
            if i in visited:
                continue
            if stop.kind is StopKind.DROPOFF and stop.request_id not in picked_up:
                continue
            d = distance_km(current, stop.location)
            if d < min_distance:
                min_distance = d
                nearest_idx = i

        if nearest_idx == -1:
            degraded = True
            nearest_idx = next(i for i in range(len(stops)) if i not in visited)

        chosen = stops[nearest_idx]
        ordered.append(chosen)
        visited.add(nearest_idx)
        if chosen.kind is StopKind.PICKUP:
            picked_up.add(chosen.request_id)

    return ordered, degraded


def plan_route(requests: Sequence[RideRequest]) -> RoutePlan:
    """Sequence every request's stops and compute per-rider detours."""
    ordered, degraded = sequence_stops(stops_for(requests))

    pickup_index: dict[int, int] = {}
    dropoff_index: dict[int, int] = {}
    for idx, stop in enumerate(ordered):
        if stop.kind is StopKind.PICKUP:
            pickup_index[stop.request_id] = idx
        else:
            dropoff_index[stop.request_id] = idx

    detours: dict[int, float] = {}
    for req in requests:
        start, end = pickup_index[req.id], dropoff_index[req.id]
        actual = route_length_km(ordered[start:end + 1]) if start < end else 0.0
        detours[req.id] = actual - distance_km(req.pickup, req.dropoff)

    return RoutePlan(
        stops=tuple(ordered),
        total_km=route_length_km(ordered),
        detours_km=detours,
        pickup_index=pickup_index,
        dropoff_index=dropoff_index,
        degraded=degraded,
    )
