"""
Pricing endpoints
=================

POST /api/v1/pricing/quote -- solo vs pooled preview; nothing is persisted
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ridepool.api.dependencies import get_coordinator
from ridepool.api.middleware import RATE_LIMIT, limiter
from ridepool.api.schemas import PriceResponse, QuoteRequest, QuoteResponse
from ridepool.domain.entities import Coordinate
from ridepool.services.coordinator import PoolCoordinator

router = APIRouter(prefix="/pricing", tags=["pricing"])


@router.post("/quote", response_model=QuoteResponse, summary="Price preview")
@limiter.limit(RATE_LIMIT)
async def quote(
    request: Request,
    body: QuoteRequest,
    coordinator: PoolCoordinator = Depends(get_coordinator),
):
    pickup = Coordinate(body.pickup_lat, body.pickup_lng)
    dropoff = Coordinate(body.dropoff_lat, body.dropoff_lng)
    solo = await coordinator.quote(
        pickup, dropoff, body.passenger_count, body.luggage_count
    )
    pooled = await coordinator.quote_pooled(
        pickup, dropoff, body.pool_size, body.passenger_count, body.luggage_count
    )
    savings = round(solo.final_price - pooled.final_price, 2)
    percent = round(savings / solo.final_price * 100, 2) if solo.final_price else 0.0
    return QuoteResponse(
        solo=PriceResponse.from_domain(solo),
        pooled=PriceResponse.from_domain(pooled),
        savings=savings,
        savings_percent=percent,
    )
