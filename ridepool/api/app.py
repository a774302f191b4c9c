"""
FastAPI application factory.

* Registers routes for rides, pools, pricing and admin.
* Builds the services and starts / stops the background workers via
  lifespan events.  Callers may pass prebuilt ``Services`` instead.
* Maps domain errors to HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from ridepool.api.middleware import limiter
from ridepool.api.routes import admin, pools, pricing, rides
from ridepool.bootstrap import Services, build_services
from ridepool.config import Settings, settings as default_settings
from ridepool.errors import NotFound, RidePoolError

logger = logging.getLogger(__name__)


async def ridepool_error_handler(request: Request, exc: RidePoolError) -> JSONResponse:
    status_code = 404 if isinstance(exc, NotFound) else 409
    if exc.retryable:
        logger.info("Retryable conflict on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "retryable": exc.retryable},
    )


def create_app(
    services: Optional[Services] = None, settings: Optional[Settings] = None
) -> FastAPI:
    settings = settings or (services.settings if services else default_settings)
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build services unless given; start the workers; tear down on exit."""
        owned = app.state.services is None
        if owned:
            app.state.services = build_services(settings)
        if settings.workers_enabled:
            await app.state.services.start_workers()
        yield
        if owned:
            await app.state.services.close()
        else:
            await app.state.services.stop_workers()

    app = FastAPI(
        title="Ride Pooling API",
        description=(
            "Groups airport passengers into shared rides under capacity, "
            "luggage and detour limits, with demand-aware pricing and "
            "concurrency-safe pool updates."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RidePoolError, ridepool_error_handler)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(pools.router, prefix="/api/v1")
    app.include_router(pricing.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
