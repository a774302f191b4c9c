"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``users``            -- registered passengers
* ``ride_requests``    -- individual ride requests
* ``ride_pools``       -- shared-ride pools (one vehicle trip)
* ``pool_members``     -- request <-> pool join with route sequence & price
* ``pricing_history``  -- append-only price breakdown per pricing event

Concurrency
-----------
``ride_requests`` and ``ride_pools`` carry a ``version`` column wired to the
mapper's ``version_id_col``: an UPDATE that races another writer matches zero
rows and raises ``StaleDataError`` instead of silently overwriting.

Indexes
-------
* **B-Tree** on ``status``, ``user_id``, ``requested_at``, ``created_at``,
  ``h3_cell`` and the member foreign keys, used by the snapshot loader and
  the API.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)

from .database import Base
from ridepool.domain.entities import (
    Coordinate,
    PoolMember,
    PriceBreakdown,
    RidePool,
    RideRequest,
)
from ridepool.domain.enums import PoolStatus, RideStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class RideRequestModel(Base):
    __tablename__ = "ride_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)

    passenger_count = Column(Integer, default=1, nullable=False)
    luggage_count = Column(Integer, default=0, nullable=False)
    max_detour_km = Column(Float, default=5.0, nullable=False)
    status = Column(
        Enum(RideStatus, name="ridestatus", values_callable=_values),
        default=RideStatus.PENDING,
        nullable=False,
    )
    idempotency_key = Column(String(64), unique=True, nullable=True)
    version = Column(Integer, nullable=False)

    requested_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_ride_requests_status", "status"),
        Index("idx_ride_requests_user", "user_id"),
        Index("idx_ride_requests_status_requested", "status", "requested_at"),
    )

    def to_entity(self) -> RideRequest:
        return RideRequest(
            id=self.id,
            user_id=self.user_id,
            pickup=Coordinate(self.pickup_lat, self.pickup_lng),
            dropoff=Coordinate(self.dropoff_lat, self.dropoff_lng),
            passenger_count=self.passenger_count,
            luggage_count=self.luggage_count,
            max_detour_km=self.max_detour_km,
            status=RideStatus(self.status),
            requested_at=self.requested_at,
            idempotency_key=self.idempotency_key,
        )


class RidePoolModel(Base):
    __tablename__ = "ride_pools"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pool_code = Column(String(20), unique=True, nullable=False)
    status = Column(
        Enum(PoolStatus, name="poolstatus", values_callable=_values),
        default=PoolStatus.FORMING,
        nullable=False,
    )
    current_passenger_count = Column(Integer, default=0, nullable=False)
    current_luggage_count = Column(Integer, default=0, nullable=False)
    max_passengers = Column(Integer, default=4, nullable=False)
    max_luggage = Column(Integer, default=8, nullable=False)
    route_distance_km = Column(Float, nullable=True)
    estimated_duration_minutes = Column(Integer, nullable=True)
    h3_cell = Column(String(20), nullable=True)
    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_ride_pools_status", "status"),
        Index("idx_ride_pools_created", "created_at"),
        Index("idx_ride_pools_cell", "h3_cell"),
    )

    def to_entity(self) -> RidePool:
        return RidePool(
            id=self.id,
            pool_code=self.pool_code,
            status=PoolStatus(self.status),
            current_passenger_count=self.current_passenger_count,
            current_luggage_count=self.current_luggage_count,
            max_passengers=self.max_passengers,
            max_luggage=self.max_luggage,
            route_distance_km=self.route_distance_km,
            estimated_duration_minutes=self.estimated_duration_minutes,
            h3_cell=self.h3_cell,
            created_at=self.created_at,
        )


class PoolMemberModel(Base):
    __tablename__ = "pool_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pool_id = Column(Integer, ForeignKey("ride_pools.id"), nullable=False)
    # unique: a request belongs to at most one pool at a time
    ride_request_id = Column(
        Integer, ForeignKey("ride_requests.id"), unique=True, nullable=False
    )
    pickup_sequence = Column(Integer, nullable=False)
    dropoff_sequence = Column(Integer, nullable=False)
    detour_distance_km = Column(Float, default=0.0, nullable=False)
    price = Column(Float, nullable=False)
    joined_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("pool_id", "ride_request_id", name="uq_pool_member"),
        Index("idx_pool_members_pool", "pool_id"),
    )

    def to_entity(self) -> PoolMember:
        return PoolMember(
            id=self.id,
            pool_id=self.pool_id,
            ride_request_id=self.ride_request_id,
            pickup_sequence=self.pickup_sequence,
            dropoff_sequence=self.dropoff_sequence,
            detour_distance_km=self.detour_distance_km,
            price=self.price,
            joined_at=self.joined_at,
        )


class PricingHistoryModel(Base):
    __tablename__ = "pricing_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_request_id = Column(
        Integer, ForeignKey("ride_requests.id"), nullable=False
    )
    base_fare = Column(Float, nullable=False)
    distance_fare = Column(Float, nullable=False)
    subtotal = Column(Float, nullable=False)
    surge_multiplier = Column(Float, default=1.0, nullable=False)
    surge_amount = Column(Float, default=0.0, nullable=False)
    pool_discount_percent = Column(Float, default=0.0, nullable=False)
    pool_discount = Column(Float, default=0.0, nullable=False)
    final_price = Column(Float, nullable=False)
    demand_factor = Column(Float, default=1.0, nullable=False)
    distance_km = Column(Float, nullable=False)
    is_pooled = Column(Boolean, default=False, nullable=False)
    pool_size = Column(Integer, default=1, nullable=False)
    calculated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("idx_pricing_history_request", "ride_request_id", "calculated_at"),
    )

    def to_entity(self) -> PriceBreakdown:
        return PriceBreakdown(
            base_fare=self.base_fare,
            distance_fare=self.distance_fare,
            subtotal=self.subtotal,
            surge_multiplier=self.surge_multiplier,
            surge_amount=self.surge_amount,
            pool_discount_percent=self.pool_discount_percent,
            pool_discount=self.pool_discount,
            final_price=self.final_price,
            demand_factor=self.demand_factor,
            distance_km=self.distance_km,
        )
