"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``RideRequest`` and ``RidePool``: enforces valid
  lifecycle transitions (see ``enums.RIDE_TRANSITIONS`` / ``POOL_TRANSITIONS``).
- ``RidePool.can_accommodate`` encapsulates capacity & luggage invariants.
- Entities are detached from the ORM: the coordinator loads them inside a
  short transaction and the matching engine works on plain objects.
- ``__pydantic_config__`` forbids unknown keys, so a cache entry that is not
  one of these entities fails validation instead of filling in defaults.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from pydantic import ConfigDict

from ridepool.errors import InvalidState

from .enums import (
    OPEN_POOL_STATUSES,
    POOL_TRANSITIONS,
    RIDE_TRANSITIONS,
    TERMINAL_RIDE_STATUSES,
    PoolStatus,
    RideStatus,
    StopKind,
)


class InvalidStateTransition(InvalidState):
    """Raised when a status change violates the state machine."""


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Coordinate:
    __pydantic_config__ = ConfigDict(extra="forbid")

    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class Stop:
    request_id: int
    rider_id: int
    location: Coordinate
    kind: StopKind


@dataclass(frozen=True)
class PriceBreakdown:
    base_fare: float
    distance_fare: float
    subtotal: float
    surge_multiplier: float
    surge_amount: float
    pool_discount_percent: float
    pool_discount: float
    final_price: float
    demand_factor: float
    distance_km: float


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class NewRideRequest:
    """Submission payload, before the request has an identity."""

    user_id: int
    pickup: Coordinate
    dropoff: Coordinate
    passenger_count: int = 1
    luggage_count: int = 0
    max_detour_km: Optional[float] = None
    idempotency_key: Optional[str] = None


@dataclass
class RideRequest:
    __pydantic_config__ = ConfigDict(extra="forbid")

    id: Optional[int] = None
    user_id: int = 0
    pickup: Coordinate = field(default_factory=lambda: Coordinate(0, 0))
    dropoff: Coordinate = field(default_factory=lambda: Coordinate(0, 0))
    passenger_count: int = 1
    luggage_count: int = 0
    max_detour_km: float = 5.0
    status: RideStatus = RideStatus.PENDING
    requested_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RIDE_STATUSES

    def transition_to(self, new_status: RideStatus) -> None:
        """Move to *new_status* if the transition is legal, else raise."""
        allowed = RIDE_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition ride from {self.status.value} to {new_status.value}"
            )
        self.status = new_status


@dataclass
class RidePool:
    __pydantic_config__ = ConfigDict(extra="forbid")

    id: Optional[int] = None
    pool_code: str = ""
    status: PoolStatus = PoolStatus.FORMING
    current_passenger_count: int = 0
    current_luggage_count: int = 0
    max_passengers: int = 4
    max_luggage: int = 8
    route_distance_km: Optional[float] = None
    estimated_duration_minutes: Optional[int] = None
    h3_cell: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_POOL_STATUSES

    def can_accommodate(self, passengers: int, luggage: int) -> bool:
        return (
            self.current_passenger_count + passengers <= self.max_passengers
            and self.current_luggage_count + luggage <= self.max_luggage
        )

    def transition_to(self, new_status: PoolStatus) -> None:
        allowed = POOL_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition pool from {self.status.value} to {new_status.value}"
            )
        self.status = new_status


@dataclass
class PoolMember:
    __pydantic_config__ = ConfigDict(extra="forbid")

    pool_id: int
    ride_request_id: int
    pickup_sequence: int = 0
    dropoff_sequence: int = 0
    detour_distance_km: float = 0.0
    price: float = 0.0
    id: Optional[int] = None
    joined_at: Optional[datetime] = None


@dataclass
class PoolCandidate:
    """A pool paired with its current membership (matching input / snapshot)."""

    __pydantic_config__ = ConfigDict(extra="forbid")

    pool: RidePool
    members: list[PoolMember] = field(default_factory=list)
    requests: list[RideRequest] = field(default_factory=list)

    @property
    def request_ids(self) -> frozenset[int]:
        return frozenset(r.id for r in self.requests)
