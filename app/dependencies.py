"""
Service wiring. Built once in the app lifespan and stored on ``app.state``;
routes reach it through ``get_services`` so tests can swap in their own.
"""
from dataclasses import dataclass

import redis.asyncio as aioredis
from fastapi import Depends, Request, WebSocket
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings
from app.services.expiry import ExpiryScheduler
from app.services.geo_index import GeoIndex
from app.services.lifecycle import TripLifecycle
from app.services.matching import MatchingService
from app.services.notifications import NotificationBus
from app.services.trip_store import TripStore


@dataclass
class Services:
    redis: aioredis.Redis
    store: TripStore
    geo: GeoIndex
    bus: NotificationBus
    matching: MatchingService
    scheduler: ExpiryScheduler
    lifecycle: TripLifecycle


def build_services(
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis,
    settings: Settings,
    **lifecycle_kwargs,
) -> Services:
    store = TripStore(session_factory)
    geo = GeoIndex(redis, store, max_candidates=settings.matching_max_candidates)
    bus = NotificationBus(redis)
    matching = MatchingService(
        geo,
        bus,
        default_radius_m=settings.matching_radius_m,
        max_radius_m=settings.matching_max_radius_m,
    )
    scheduler = ExpiryScheduler(default_delay=settings.trip_expiry_seconds)
    lifecycle = TripLifecycle(store, matching, bus, scheduler, settings, **lifecycle_kwargs)
    return Services(
        redis=redis,
        store=store,
        geo=geo,
        bus=bus,
        matching=matching,
        scheduler=scheduler,
        lifecycle=lifecycle,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_ws_services(websocket: WebSocket) -> Services:
    return websocket.app.state.services


def get_lifecycle(services: Services = Depends(get_services)) -> TripLifecycle:
    return services.lifecycle
