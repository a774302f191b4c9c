"""FastAPI dependency injection helpers."""

from fastapi import Request

from ridepool.bootstrap import Services
from ridepool.services.coordinator import PoolCoordinator
from ridepool.workers.dispatcher import MatchDispatcher


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_coordinator(request: Request) -> PoolCoordinator:
    return get_services(request).coordinator


def get_dispatcher(request: Request) -> MatchDispatcher:
    return get_services(request).dispatcher
