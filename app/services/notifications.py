"""
Notification bus: fan-out of trip events over Redis pub/sub.

Delivery is at-most-once and best effort. A failed publish is logged and
never fails the operation that produced the event.
"""
import json
import logging
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ALL_DRIVERS_TOPIC = "all-drivers"

# Event names
NEW_TRIP_REQUEST = "new-trip-request"
TRIP_ACCEPTED = "trip-accepted"
TRIP_ASSIGNED = "trip-assigned"
TRIP_UPDATED = "trip-updated"
TRIP_UNAVAILABLE = "trip-unavailable"


def trip_topic(trip_id: str) -> str:
    return f"trip-{trip_id}"


def driver_topic(driver_id: str) -> str:
    return f"driver-{driver_id}"


class NotificationBus:
    def __init__(self, redis: aioredis.Redis):
        self._redis = redis

    async def publish(self, topic: str, event: str, data: Any) -> bool:
        message = json.dumps({"event": event, "data": data}, default=str)
        try:
            await self._redis.publish(topic, message)
        except (RedisError, OSError) as exc:
            logger.error("Failed to publish %s to %s: %s", event, topic, exc)
            return False
        logger.debug("Published %s to %s", event, topic)
        return True

