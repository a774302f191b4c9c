"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- database and Redis reachability
"""

import logging

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ridepool.api.dependencies import get_services
from ridepool.api.schemas import HealthResponse
from ridepool.bootstrap import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(services: Services = Depends(get_services)):
    response = HealthResponse(dispatcher_pending=services.dispatcher.pending)

    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable", exc_info=True)
        response.database = "unavailable"
        response.status = "degraded"

    if services.redis is not None:
        try:
            await services.redis.ping()
            response.redis = "ok"
        except RedisError:
            logger.warning("Health check: redis unreachable", exc_info=True)
            response.redis = "unavailable"
            response.status = "degraded"

    return response
