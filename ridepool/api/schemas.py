"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from ridepool.domain.entities import (
    Coordinate,
    NewRideRequest,
    PoolCandidate,
    PriceBreakdown,
    RidePool,
    RideRequest,
)
from ridepool.domain.enums import PoolStatus
from ridepool.services.coordinator import SubmitOutcome


# ── Requests ──────────────────────────────────────────────────────────


class RideCreateRequest(BaseModel):
    user_id: int
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    passenger_count: int = Field(1, ge=1, le=4)
    luggage_count: int = Field(0, ge=0, le=4)
    max_detour_km: Optional[float] = Field(None, ge=0, le=20)
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )

    def to_domain(self) -> NewRideRequest:
        return NewRideRequest(
            user_id=self.user_id,
            pickup=Coordinate(self.pickup_lat, self.pickup_lng),
            dropoff=Coordinate(self.dropoff_lat, self.dropoff_lng),
            passenger_count=self.passenger_count,
            luggage_count=self.luggage_count,
            max_detour_km=self.max_detour_km,
            idempotency_key=self.idempotency_key,
        )


class QuoteRequest(BaseModel):
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    passenger_count: int = Field(1, ge=1, le=4)
    luggage_count: int = Field(0, ge=0, le=4)
    pool_size: int = Field(2, ge=2, le=4)


class PoolStatusUpdate(BaseModel):
    status: PoolStatus


# ── Responses ─────────────────────────────────────────────────────────


class PriceResponse(BaseModel):
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

    model_config = {"from_attributes": True}

    @classmethod
    def from_domain(cls, price: Optional[PriceBreakdown]) -> Optional["PriceResponse"]:
        return cls.model_validate(price) if price is not None else None


class RideResponse(BaseModel):
    id: int
    user_id: int
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: float
    dropoff_lng: float
    status: str
    passenger_count: int
    luggage_count: int
    max_detour_km: float
    requested_at: Optional[datetime] = None
    price: Optional[PriceResponse] = None

    @classmethod
    def from_domain(
        cls, ride: RideRequest, price: Optional[PriceBreakdown] = None
    ) -> "RideResponse":
        return cls(
            id=ride.id,
            user_id=ride.user_id,
            pickup_lat=ride.pickup.latitude,
            pickup_lng=ride.pickup.longitude,
            dropoff_lat=ride.dropoff.latitude,
            dropoff_lng=ride.dropoff.longitude,
            status=ride.status.value,
            passenger_count=ride.passenger_count,
            luggage_count=ride.luggage_count,
            max_detour_km=ride.max_detour_km,
            requested_at=ride.requested_at,
            price=PriceResponse.from_domain(price),
        )


class PoolResponse(BaseModel):
    id: int
    pool_code: str
    status: str
    current_passenger_count: int
    current_luggage_count: int
    max_passengers: int
    max_luggage: int
    route_distance_km: Optional[float] = None
    estimated_duration_minutes: Optional[int] = None
    h3_cell: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, pool: RidePool) -> "PoolResponse":
        return cls(
            id=pool.id,
            pool_code=pool.pool_code,
            status=pool.status.value,
            current_passenger_count=pool.current_passenger_count,
            current_luggage_count=pool.current_luggage_count,
            max_passengers=pool.max_passengers,
            max_luggage=pool.max_luggage,
            route_distance_km=pool.route_distance_km,
            estimated_duration_minutes=pool.estimated_duration_minutes,
            h3_cell=pool.h3_cell,
            created_at=pool.created_at,
        )


class PoolMemberResponse(BaseModel):
    ride: RideResponse
    pickup_sequence: int
    dropoff_sequence: int
    detour_distance_km: float
    price: float


class PoolDetailResponse(PoolResponse):
    members: list[PoolMemberResponse] = []

    @classmethod
    def from_snapshot(cls, snapshot: PoolCandidate) -> "PoolDetailResponse":
        rides = {r.id: r for r in snapshot.requests}
        members = [
            PoolMemberResponse(
                ride=RideResponse.from_domain(rides[m.ride_request_id]),
                pickup_sequence=m.pickup_sequence,
                dropoff_sequence=m.dropoff_sequence,
                detour_distance_km=m.detour_distance_km,
                price=m.price,
            )
            for m in sorted(snapshot.members, key=lambda m: m.pickup_sequence)
        ]
        base = PoolResponse.from_domain(snapshot.pool)
        return cls(**base.model_dump(), members=members)


class MatchResponse(BaseModel):
    outcome: str
    ride: RideResponse
    pool: Optional[PoolResponse] = None

    @classmethod
    def from_outcome(cls, outcome: SubmitOutcome) -> "MatchResponse":
        return cls(
            outcome=outcome.outcome.value,
            ride=RideResponse.from_domain(outcome.request, outcome.price),
            pool=PoolResponse.from_domain(outcome.pool) if outcome.pool else None,
        )


class RideAcceptedResponse(BaseModel):
    ride: RideResponse
    matching: str = Field(
        "queued", description="'queued', or the outcome when ?wait=true."
    )
    pool: Optional[PoolResponse] = None


class CancelResponse(BaseModel):
    outcome: str
    ride: RideResponse
    pool: Optional[PoolResponse] = None


class QuoteResponse(BaseModel):
    solo: PriceResponse
    pooled: PriceResponse
    savings: float
    savings_percent: float


class HealthResponse(BaseModel):
    status: str = "ok"
    database: str = "ok"
    redis: str = "disabled"
    dispatcher_pending: int = 0


class ErrorResponse(BaseModel):
    detail: str
    retryable: bool = False
