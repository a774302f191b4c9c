"""
Ride endpoints
==============

POST /api/v1/rides                 -- create a ride request (202 Accepted)
GET  /api/v1/rides/pending         -- pending requests, oldest first
GET  /api/v1/rides/user/{user_id}  -- a user's recent requests
GET  /api/v1/rides/{ride_id}       -- status plus latest price
POST /api/v1/rides/{ride_id}/cancel
POST /api/v1/rides/{ride_id}/match -- explicit (re)try of matching
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, Query, Request

from ridepool.api.dependencies import get_coordinator, get_dispatcher
from ridepool.api.middleware import RATE_LIMIT, limiter
from ridepool.api.schemas import (
    CancelResponse,
    MatchResponse,
    PoolResponse,
    RideAcceptedResponse,
    RideCreateRequest,
    RideResponse,
)
from ridepool.services.coordinator import PoolCoordinator
from ridepool.workers.dispatcher import MatchDispatcher

router = APIRouter(prefix="/rides", tags=["rides"])


@router.post(
    "",
    status_code=202,
    response_model=RideAcceptedResponse,
    summary="Create a ride request",
    responses={202: {"description": "Ride request accepted; matching is async."}},
)
@limiter.limit(RATE_LIMIT)
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    wait: bool = Query(False, description="Wait for the matching outcome."),
    coordinator: PoolCoordinator = Depends(get_coordinator),
    dispatcher: MatchDispatcher = Depends(get_dispatcher),
):
    ride = await coordinator.create_request(body.to_domain())

    if dispatcher.running:
        pending = dispatcher.enqueue(ride.id)
        if not wait:
            return RideAcceptedResponse(ride=RideResponse.from_domain(ride))
        outcome = await asyncio.shield(pending)
    elif wait:
        outcome = await coordinator.match_request(ride.id)
    else:
        # picked up later by the backfill worker or POST /match
        return RideAcceptedResponse(ride=RideResponse.from_domain(ride))

    return RideAcceptedResponse(
        ride=RideResponse.from_domain(outcome.request, outcome.price),
        matching=outcome.outcome.value,
        pool=PoolResponse.from_domain(outcome.pool) if outcome.pool else None,
    )


@router.get(
    "/pending",
    response_model=list[RideResponse],
    summary="List pending ride requests",
)
@limiter.limit(RATE_LIMIT)
async def list_pending(
    request: Request,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    rides = await coordinator.list_pending_requests()
    return [RideResponse.from_domain(r) for r in rides]


@router.get(
    "/user/{user_id}",
    response_model=list[RideResponse],
    summary="List a user's ride requests",
)
@limiter.limit(RATE_LIMIT)
async def list_user_rides(
    request: Request,
    user_id: int,
    limit: int = Query(50, ge=1, le=200),
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    rides = await coordinator.list_user_requests(user_id, limit)
    return [RideResponse.from_domain(r) for r in rides]


@router.get(
    "/{ride_id}",
    response_model=RideResponse,
    summary="Get ride status and price",
)
@limiter.limit(RATE_LIMIT)
async def get_ride(
    request: Request,
    ride_id: int,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    ride = await coordinator.get_request(ride_id)
    price = await coordinator.latest_price(ride_id)
    return RideResponse.from_domain(ride, price)


@router.post(
    "/{ride_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a ride",
    description=(
        "Cancels a non-terminal ride. If the ride was in a pool, the pool's "
        "capacity and route are recomputed; an emptied pool is cancelled. "
        "Cancelling an already cancelled or completed ride is a no-op."
    ),
)
@limiter.limit(RATE_LIMIT)
async def cancel_ride(
    request: Request,
    ride_id: int,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    result = await coordinator.cancel(ride_id)
    return CancelResponse(
        outcome=result.outcome.value,
        ride=RideResponse.from_domain(result.request),
        pool=PoolResponse.from_domain(result.pool) if result.pool else None,
    )


@router.post(
    "/{ride_id}/match",
    response_model=MatchResponse,
    summary="Run one matching attempt for a pending ride",
)
@limiter.limit(RATE_LIMIT)
async def match_ride(
    request: Request,
    ride_id: int,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    return MatchResponse.from_outcome(await coordinator.match_request(ride_id))
