"""
Driver proximity index.

Positions live in a Redis GEO set (fast path); availability and account
state are checked against the database, which stays the source of truth.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis

from app.errors import NotFound
from app.models.driver import Driver
from app.redis_client import geo_add_driver, geo_nearby_drivers, geo_remove_driver
from app.schemas.schemas import Point
from app.services.trip_store import TripStore

logger = logging.getLogger(__name__)


@dataclass
class NearbyDriver:
    driver: Driver
    distance_m: float


class GeoIndex:
    def __init__(self, redis: aioredis.Redis, store: TripStore, max_candidates: int = 50):
        self._redis = redis
        self._store = store
        self._max_candidates = max_candidates

    async def update_location(self, driver_id: str, lat: float, lng: float) -> None:
        driver = await self._store.get_driver(driver_id)
        if driver is None:
            raise NotFound("Driver not found")
        # Offline drivers keep their last position in the DB only
        if driver.status != "offline":
            await geo_add_driver(self._redis, driver_id, lat, lng)
        await self._store.set_driver_location(driver_id, lat, lng, datetime.now(timezone.utc))

    async def restore(self, driver: Driver) -> bool:
        """Put a driver back in the index at its last stored position, if it has one."""
        if driver.lat is None or driver.lng is None:
            return False
        await geo_add_driver(self._redis, driver.id, driver.lat, driver.lng)
        return True

    async def remove(self, driver_id: str) -> None:
        await geo_remove_driver(self._redis, driver_id)

    async def find_available_near(
        self,
        point: Point,
        radius_m: float,
        tier: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[NearbyDriver]:
        """
        Available, active drivers within ``radius_m`` of ``point``, nearest first.

        Busy or wrong-tier drivers stay in the GEO set, so the search widens
        until enough eligible drivers are found or the radius is exhausted.
        """
        wanted = limit or self._max_candidates
        count = wanted
        while True:
            hits = await geo_nearby_drivers(self._redis, point.lat, point.lng, radius_m, count=count)
            if not hits:
                return []
            eligible = await self._store.eligible_drivers([driver_id for driver_id, _ in hits], tier)
            nearby = [
                NearbyDriver(driver=eligible[driver_id], distance_m=distance)
                for driver_id, distance in hits
                if driver_id in eligible
            ]
            if len(nearby) >= wanted or len(hits) < count:
                break
            count *= 2

        logger.debug(
            "Proximity query lat=%s lng=%s radius=%sm: %d hits, %d eligible",
            point.lat, point.lng, radius_m, len(hits), len(nearby),
        )
        return nearby[:wanted]
