"""
Pool endpoints
==============

GET    /api/v1/pools                              -- active pools, newest first
GET    /api/v1/pools/{pool_id}                    -- pool with its members
POST   /api/v1/pools/{pool_id}/members/{ride_id}  -- manual placement
DELETE /api/v1/pools/{pool_id}/members/{ride_id}  -- back to pending
PATCH  /api/v1/pools/{pool_id}/status             -- lifecycle transition
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from ridepool.api.dependencies import get_coordinator
from ridepool.api.middleware import RATE_LIMIT, limiter
from ridepool.api.schemas import (
    MatchResponse,
    PoolDetailResponse,
    PoolResponse,
    PoolStatusUpdate,
)
from ridepool.services.coordinator import PoolCoordinator

router = APIRouter(prefix="/pools", tags=["pools"])


@router.get("", response_model=list[PoolResponse], summary="List active pools")
@limiter.limit(RATE_LIMIT)
async def list_pools(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    cell: Optional[str] = Query(None, description="Filter by H3 cell index."),
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    pools = await coordinator.list_active_pools(limit, cell)
    return [PoolResponse.from_domain(p) for p in pools]


@router.get(
    "/{pool_id}", response_model=PoolDetailResponse, summary="Get pool details"
)
@limiter.limit(RATE_LIMIT)
async def get_pool(
    request: Request,
    pool_id: int,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    return PoolDetailResponse.from_snapshot(await coordinator.pool_snapshot(pool_id))


@router.post(
    "/{pool_id}/members/{ride_id}",
    response_model=MatchResponse,
    summary="Add a pending ride to a pool",
    description="Capacity is enforced; detour limits are not.",
)
@limiter.limit(RATE_LIMIT)
async def add_member(
    request: Request,
    pool_id: int,
    ride_id: int,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    return MatchResponse.from_outcome(await coordinator.add_member(pool_id, ride_id))


@router.delete(
    "/{pool_id}/members/{ride_id}",
    response_model=PoolDetailResponse,
    summary="Remove a ride from a pool",
)
@limiter.limit(RATE_LIMIT)
async def remove_member(
    request: Request,
    pool_id: int,
    ride_id: int,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    snapshot = await coordinator.remove_member(pool_id, ride_id)
    return PoolDetailResponse.from_snapshot(snapshot)


@router.patch(
    "/{pool_id}/status",
    response_model=PoolDetailResponse,
    summary="Transition a pool",
)
@limiter.limit(RATE_LIMIT)
async def update_pool_status(
    request: Request,
    pool_id: int,
    body: PoolStatusUpdate,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    snapshot = await coordinator.transition_pool(pool_id, body.status)
    return PoolDetailResponse.from_snapshot(snapshot)
