"""
Request-to-Pool Matching  (greedy, constraint filtered)
=======================================================

For one pending request and a snapshot of open pools, each candidate goes
through four stages; the cheap ones run first:

1. **Capacity**  -- O(1): passengers and luggage must fit the pool maxima.
2. **Location**  -- O(k): some existing member's pickup lies within the
   tolerance of the request's pickup *and* that member's drop-off lies
   within twice the tolerance of the request's drop-off.  Riders converge
   at the airport but may fan out at the destination.
3. **Route**     -- O(k²): sequence all stops (``routing.plan_route``) and
   require every rider's detour <= min(own limit, global limit).
4. **Score**     -- O(1):

     30 x utilisation + 40 x max(0, 10 - avg_detour) + 30 x max(0, 50 - route_km)

The highest score wins; ties go to the earliest-created pool because
candidates arrive in creation order.  "No match" tells the caller to open a
new pool.

Batch grouping (``generate_optimal_pools``)
-------------------------------------------
Cold-start / backfill path: seed a group with the oldest unassigned request
and absorb later compatible requests until the pool cap is reached.

Complexity
----------
* ``find_best_match``:        O(P x k²) for P candidate pools
* ``generate_optimal_pools``: O(N² x k) for N requests

**Note:** neither path guarantees a global optimum; the heuristics keep the
runtime bounded for pools of at most four riders.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import h3

from .distance import distance_km
from .entities import PoolCandidate, RidePool, RideRequest
from .routing import RoutePlan, plan_route

logger = logging.getLogger(__name__)

UTILISATION_WEIGHT = 30.0
DETOUR_WEIGHT = 40.0
DISTANCE_WEIGHT = 30.0
DETOUR_CEILING_KM = 10.0
DISTANCE_CEILING_KM = 50.0
DROPOFF_TOLERANCE_FACTOR = 2.0


def ride_h3_cell(lat: float, lng: float, resolution: int = 7) -> str:
    """Map a geo-point to an H3 hexagonal cell index.  O(1)."""
    return h3.latlng_to_cell(lat, lng, resolution)


@dataclass(frozen=True)
class MatchEvaluation:
    candidate: PoolCandidate
    plan: RoutePlan
    score: float


@dataclass(frozen=True)
class PoolProposal:
    requests: tuple[RideRequest, ...]
    plan: RoutePlan

    @property
    def passenger_count(self) -> int:
        return sum(r.passenger_count for r in self.requests)

    @property
    def luggage_count(self) -> int:
        return sum(r.luggage_count for r in self.requests)


class MatchingEngine:
    def __init__(
        self,
        global_max_detour_km: float = 5.0,
        max_passengers: int = 4,
        max_luggage: int = 8,
    ):
        self.global_max_detour_km = global_max_detour_km
        self.max_passengers = max_passengers
        self.max_luggage = max_luggage

    # ── Filters ───────────────────────────────────────────────────────

    def detour_limit(self, request: RideRequest) -> float:
        return min(request.max_detour_km, self.global_max_detour_km)

    @staticmethod
    def has_capacity(pool: RidePool, request: RideRequest) -> bool:
        return pool.can_accommodate(request.passenger_count, request.luggage_count)

    def is_location_compatible(
        self, request: RideRequest, others: Sequence[RideRequest]
    ) -> bool:
        if not others:
            return True
        tolerance = self.detour_limit(request)
        for other in others:
            if (
                distance_km(request.pickup, other.pickup) <= tolerance
                and distance_km(request.dropoff, other.dropoff)
                <= tolerance * DROPOFF_TOLERANCE_FACTOR
            ):
                return True
        return False

    def route_is_feasible(
        self, plan: RoutePlan, requests: Sequence[RideRequest]
    ) -> bool:
        if plan.degraded:
            logger.debug("Degraded route plan rejected")
            return False
        for req in requests:
            detour = plan.detours_km[req.id]
            limit = self.detour_limit(req)
            if detour > limit:
                logger.debug(
                    "Detour constraint violated: request=%s detour=%.2f limit=%.2f",
                    req.id, detour, limit,
                )
                return False
        return True

    @staticmethod
    def score(pool: RidePool, plan: RoutePlan) -> float:
        utilisation = pool.current_passenger_count / pool.max_passengers
        avg_detour = plan.average_detour_km
        return (
            UTILISATION_WEIGHT * utilisation
            + DETOUR_WEIGHT * max(0.0, DETOUR_CEILING_KM - avg_detour)
            + DISTANCE_WEIGHT * max(0.0, DISTANCE_CEILING_KM - plan.total_km)
        )

    # ── Single-request matching ───────────────────────────────────────

    def evaluate(
        self, request: RideRequest, candidate: PoolCandidate
    ) -> Optional[MatchEvaluation]:
        """Run all four stages against one pool; ``None`` if it is rejected."""
        pool = candidate.pool
        if not self.has_capacity(pool, request):
            logger.debug("Pool %s rejected: capacity", pool.id)
            return None
        if not self.is_location_compatible(request, candidate.requests):
            logger.debug("Pool %s rejected: location", pool.id)
            return None

        riders = [*candidate.requests, request]
        plan = plan_route(riders)
        if not self.route_is_feasible(plan, riders):
            return None

        return MatchEvaluation(candidate, plan, self.score(pool, plan))

    def find_best_evaluation(
        self, request: RideRequest, candidates: Sequence[PoolCandidate]
    ) -> Optional[MatchEvaluation]:
        best: Optional[MatchEvaluation] = None
        for candidate in candidates:
            evaluation = self.evaluate(request, candidate)
            # strict ">" keeps the earliest pool on ties
            if evaluation and (best is None or evaluation.score > best.score):
                best = evaluation
        return best

    def find_best_match(
        self, request: RideRequest, candidates: Sequence[PoolCandidate]
    ) -> Optional[PoolCandidate]:
        best = self.find_best_evaluation(request, candidates)
        return best.candidate if best else None

    # ── Batch grouping ────────────────────────────────────────────────

    def generate_optimal_pools(
        self, requests: Sequence[RideRequest]
    ) -> list[PoolProposal]:
        ordered = sorted(
            requests,
            key=lambda r: (r.requested_at is None, r.requested_at, r.id or 0),
        )
        assigned: set[int] = set()
        proposals: list[PoolProposal] = []

        for seed in ordered:
            if seed.id in assigned:
                continue
            group = [seed]
            assigned.add(seed.id)
            passengers, luggage = seed.passenger_count, seed.luggage_count

            for other in ordered:
                if len(group) >= self.max_passengers:
                    break
                if other.id in assigned:
                    continue
                if (
                    passengers + other.passenger_count > self.max_passengers
                    or luggage + other.luggage_count > self.max_luggage
                ):
                    continue
                if not self.is_location_compatible(other, group):
                    continue
                group.append(other)
                assigned.add(other.id)
                passengers += other.passenger_count
                luggage += other.luggage_count

            proposals.append(PoolProposal(tuple(group), plan_route(group)))
            logger.info("Proposed pool with %d members", len(group))

        return proposals
