"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  ``*_for_update`` methods issue
``SELECT ... FOR UPDATE`` (a no-op on SQLite) and refresh any instance
already in the identity map, so the caller always sees the committed row.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    UserModel,
    PoolMemberModel,
    PricingHistoryModel,
    RidePoolModel,
    RideRequestModel,
)
from ridepool.domain.entities import NewRideRequest, PriceBreakdown
from ridepool.domain.enums import (
    ACTIVE_POOL_STATUSES,
    OPEN_POOL_STATUSES,
    RideStatus,
)


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, name: str, email: str) -> UserModel:
        user = UserModel(name=name, email=email)
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_by_id(self, user_id: int) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)

    async def get_by_email(self, email: str) -> Optional[UserModel]:
        result = await self.session.execute(
            select(UserModel).where(UserModel.email == email)
        )
        return result.scalar_one_or_none()


class RideRequestRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self, data: NewRideRequest, max_detour_km: float
    ) -> RideRequestModel:
        ride = RideRequestModel(
            user_id=data.user_id,
            pickup_lat=data.pickup.latitude,
            pickup_lng=data.pickup.longitude,
            dropoff_lat=data.dropoff.latitude,
            dropoff_lng=data.dropoff.longitude,
            passenger_count=data.passenger_count,
            luggage_count=data.luggage_count,
            max_detour_km=max_detour_km,
            idempotency_key=data.idempotency_key,
            status=RideStatus.PENDING,
        )
        self.session.add(ride)
        await self.session.flush()
        return ride

    async def get_by_id(self, ride_id: int) -> Optional[RideRequestModel]:
        return await self.session.get(RideRequestModel, ride_id)

    async def get_for_update(self, ride_id: int) -> Optional[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.id == ride_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_many(self, ride_ids: Iterable[int]) -> list[RideRequestModel]:
        ids = list(ride_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.id.in_(ids))
            .order_by(RideRequestModel.requested_at, RideRequestModel.id)
        )
        return list(result.scalars().all())

    async def get_by_idempotency_key(self, key: str) -> Optional[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel).where(RideRequestModel.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def get_pending(self) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.status == RideStatus.PENDING)
            .order_by(RideRequestModel.requested_at, RideRequestModel.id)
        )
        return list(result.scalars().all())

    async def get_pending_unassigned(
        self, submitted_before: datetime, limit: int = 200
    ) -> list[RideRequestModel]:
        """Pending requests with no pool membership, oldest first."""
        in_pool = exists().where(
            PoolMemberModel.ride_request_id == RideRequestModel.id
        )
        result = await self.session.execute(
            select(RideRequestModel)
            .where(
                RideRequestModel.status == RideStatus.PENDING,
                RideRequestModel.requested_at <= submitted_before,
                ~in_pool,
            )
            .order_by(RideRequestModel.requested_at, RideRequestModel.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_user(self, user_id: int, limit: int = 50) -> list[RideRequestModel]:
        result = await self.session.execute(
            select(RideRequestModel)
            .where(RideRequestModel.user_id == user_id)
            .order_by(RideRequestModel.requested_at.desc(), RideRequestModel.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_pending_since(self, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(RideRequestModel)
            .where(
                RideRequestModel.status == RideStatus.PENDING,
                RideRequestModel.requested_at > since,
            )
        )
        return result.scalar() or 0


class RidePoolRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, pool: RidePoolModel) -> RidePoolModel:
        self.session.add(pool)
        await self.session.flush()
        return pool

    async def get_by_id(self, pool_id: int) -> Optional[RidePoolModel]:
        return await self.session.get(RidePoolModel, pool_id)

    async def get_for_update(self, pool_id: int) -> Optional[RidePoolModel]:
        result = await self.session.execute(
            select(RidePoolModel)
            .where(RidePoolModel.id == pool_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_open_pools(self, limit: int = 50) -> list[RidePoolModel]:
        """Forming / confirmed pools with a free seat, oldest first."""
        result = await self.session.execute(
            select(RidePoolModel)
            .where(
                RidePoolModel.status.in_(list(OPEN_POOL_STATUSES)),
                RidePoolModel.current_passenger_count < RidePoolModel.max_passengers,
            )
            .order_by(RidePoolModel.created_at, RidePoolModel.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_active_pools(
        self, limit: int = 100, h3_cell: str | None = None
    ) -> list[RidePoolModel]:
        query = (
            select(RidePoolModel)
            .where(RidePoolModel.status.in_(list(ACTIVE_POOL_STATUSES)))
            .order_by(RidePoolModel.created_at.desc(), RidePoolModel.id.desc())
            .limit(limit)
        )
        if h3_cell:
            query = query.where(RidePoolModel.h3_cell == h3_cell)
        result = await self.session.execute(query)
        return list(result.scalars().all())


class PoolMemberRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, member: PoolMemberModel) -> PoolMemberModel:
        self.session.add(member)
        await self.session.flush()
        return member

    async def remove(self, member: PoolMemberModel) -> None:
        await self.session.delete(member)
        await self.session.flush()

    async def get_for_request(self, ride_id: int) -> Optional[PoolMemberModel]:
        result = await self.session.execute(
            select(PoolMemberModel).where(PoolMemberModel.ride_request_id == ride_id)
        )
        return result.scalar_one_or_none()

    async def get_with_requests(
        self, pool_id: int
    ) -> list[tuple[PoolMemberModel, RideRequestModel]]:
        grouped = await self.get_with_requests_for_pools([pool_id])
        return grouped.get(pool_id, [])

    async def get_with_requests_for_pools(
        self, pool_ids: Sequence[int]
    ) -> dict[int, list[tuple[PoolMemberModel, RideRequestModel]]]:
        """Members joined to their requests, grouped by pool.  One query."""
        if not pool_ids:
            return {}
        result = await self.session.execute(
            select(PoolMemberModel, RideRequestModel)
            .join(
                RideRequestModel,
                RideRequestModel.id == PoolMemberModel.ride_request_id,
            )
            .where(PoolMemberModel.pool_id.in_(list(pool_ids)))
            .order_by(
                PoolMemberModel.pool_id,
                PoolMemberModel.joined_at,
                PoolMemberModel.id,
            )
        )
        grouped: dict[int, list[tuple[PoolMemberModel, RideRequestModel]]] = (
            defaultdict(list)
        )
        for member, ride in result.all():
            grouped[member.pool_id].append((member, ride))
        return dict(grouped)


class PricingHistoryRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        ride_id: int,
        breakdown: PriceBreakdown,
        *,
        is_pooled: bool,
        pool_size: int,
    ) -> PricingHistoryModel:
        row = PricingHistoryModel(
            ride_request_id=ride_id,
            base_fare=breakdown.base_fare,
            distance_fare=breakdown.distance_fare,
            subtotal=breakdown.subtotal,
            surge_multiplier=breakdown.surge_multiplier,
            surge_amount=breakdown.surge_amount,
            pool_discount_percent=breakdown.pool_discount_percent,
            pool_discount=breakdown.pool_discount,
            final_price=breakdown.final_price,
            demand_factor=breakdown.demand_factor,
            distance_km=breakdown.distance_km,
            is_pooled=is_pooled,
            pool_size=pool_size,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_latest(self, ride_id: int) -> Optional[PricingHistoryModel]:
        result = await self.session.execute(
            select(PricingHistoryModel)
            .where(PricingHistoryModel.ride_request_id == ride_id)
            .order_by(
                PricingHistoryModel.calculated_at.desc(),
                PricingHistoryModel.id.desc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()
