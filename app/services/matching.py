"""
Driver-rider matching.

Flow:
  1. Receive pickup point (+ optional tier and radius)
  2. GEOSEARCH Redis for nearby drivers, keep those the DB says are available
  3. Push ``new-trip-request`` to each candidate's own topic

There is no ranking beyond the radius filter: every candidate is offered the
trip and the first accept to win the compare-and-set gets it.
"""
import logging
from typing import Any, Optional

from app.schemas.schemas import Point
from app.services.geo_index import GeoIndex, NearbyDriver
from app.services.notifications import NEW_TRIP_REQUEST, NotificationBus, driver_topic

logger = logging.getLogger(__name__)


class MatchingService:
    def __init__(
        self,
        geo: GeoIndex,
        bus: NotificationBus,
        default_radius_m: float = 5000.0,
        max_radius_m: float = 50000.0,
    ):
        self.geo = geo
        self._bus = bus
        self._default_radius_m = default_radius_m
        self._max_radius_m = max_radius_m

    def radius_for(self, requested_m: Optional[float]) -> float:
        if requested_m is None:
            return self._default_radius_m
        return min(requested_m, self._max_radius_m)

    async def find_candidates(
        self,
        pickup: Point,
        radius_m: Optional[float] = None,
        tier: Optional[str] = None,
    ) -> list[NearbyDriver]:
        return await self.geo.find_available_near(pickup, self.radius_for(radius_m), tier=tier)

    async def notify_candidates(self, trip: dict[str, Any], candidates: list[NearbyDriver]) -> int:
        """Targeted fan-out; returns the number of topics that accepted the publish."""
        delivered = 0
        for candidate in candidates:
            payload = {"trip": trip, "distance_m": round(candidate.distance_m, 1)}
            if await self._bus.publish(driver_topic(candidate.driver.id), NEW_TRIP_REQUEST, payload):
                delivered += 1
        logger.info(
            "Offered trip=%s to %d/%d nearby driver(s)", trip.get("id"), delivered, len(candidates)
        )
        return delivered
