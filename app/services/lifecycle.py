"""
Trip lifecycle state machine.

    REQUESTED -> ACCEPTED -> IN_PROGRESS -> COMPLETED
    REQUESTED -> CANCELLED   (rider, or the expiry timer)
    ACCEPTED  -> CANCELLED   (rider or assigned driver)

Each transition is one compare-and-set on the trip status. Acceptance,
completion and cancellation of an accepted trip also move the driver between
``available`` and ``on_trip`` inside the same DB transaction, so trip
assignment and driver availability never drift apart.

Timers and notifications only run after the commit, so a broadcast never
references an unpersisted trip and a timer never outlives a missing one.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from app.config import Settings
from app.errors import Conflict, Forbidden, InvalidInput, NotFound, Unavailable
from app.middleware.auth import Identity, Role
from app.models.driver import Driver
from app.models.trip import Trip
from app.schemas.schemas import DriverResponse, Point, TripCreateRequest, TripResponse
from app.services.expiry import ExpiryScheduler
from app.services.geo_index import NearbyDriver
from app.services.matching import MatchingService
from app.services.notifications import (
    ALL_DRIVERS_TOPIC,
    TRIP_ACCEPTED,
    TRIP_ASSIGNED,
    TRIP_UNAVAILABLE,
    TRIP_UPDATED,
    NotificationBus,
    driver_topic,
    trip_topic,
)
from app.services.pricing import FareFunction, calculate_fare, haversine_m
from app.services.trip_store import TripStore

logger = logging.getLogger(__name__)

NO_FEE = Decimal("0.00")
EXPIRY_REASON = "No driver accepted the request in time"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TripLifecycle:
    def __init__(
        self,
        store: TripStore,
        matching: MatchingService,
        bus: NotificationBus,
        scheduler: ExpiryScheduler,
        settings: Settings,
        fare_fn: FareFunction = calculate_fare,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._matching = matching
        self._bus = bus
        self._scheduler = scheduler
        self._settings = settings
        self._fare_fn = fare_fn
        self._clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_trip(self, rider_id: str, payload: TripCreateRequest) -> Trip:
        rider = await self._store.get_rider(rider_id)
        if rider is None or rider.account_status != "active":
            raise Forbidden("Rider account is not active")

        if await self._store.find_open_trip_for_rider(rider_id) is not None:
            raise Conflict("You already have a trip in progress")

        tier = payload.vehicle_type_requested.value if payload.vehicle_type_requested else None
        pickup, dropoff = payload.pickup_location, payload.dropoff_location

        candidates = await self._matching.find_candidates(pickup, payload.search_radius_m, tier)
        if not candidates:
            logger.info("No drivers near pickup for rider=%s, request rejected", rider_id)
            raise Unavailable("No drivers available near the pickup location")

        distance_m = haversine_m(pickup.lat, pickup.lng, dropoff.lat, dropoff.lng)
        now = self._clock()
        trip = Trip(
            id=str(uuid.uuid4()),
            rider_id=rider_id,
            pickup_lng=pickup.lng,
            pickup_lat=pickup.lat,
            dropoff_lng=dropoff.lng,
            dropoff_lat=dropoff.lat,
            pickup_name=payload.pickup_name,
            destination_name=payload.destination_name,
            user_indications=payload.user_indications,
            payment_method_id=payload.payment_method_id,
            vehicle_type=tier,
            status="REQUESTED",
            distance_m=round(distance_m, 1),
            estimated_fare=self._fare_fn(tier, distance_m),
            cancellation_fee=NO_FEE,
            expires_at=now + timedelta(seconds=self._settings.trip_expiry_seconds),
            created_at=now,
            updated_at=now,
        )
        trip = await self._store.insert_trip(trip)
        logger.info("Trip %s requested by rider=%s (%d candidate drivers)", trip.id, rider_id, len(candidates))

        await self._matching.notify_candidates(self._trip_payload(trip), candidates)
        self._scheduler.arm(trip.id, self.expire_trip, self._settings.trip_expiry_seconds)
        return trip

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def accept_trip(self, trip_id: str, driver_id: str) -> tuple[Trip, Driver]:
        """
        Assign ``driver_id`` to a REQUESTED trip.

        The trip compare-and-set and the driver ``available -> on_trip`` flip
        share one transaction: if the driver is not eligible the trip update
        is rolled back and the request stays open for other drivers.
        """
        now = self._clock()
        async with self._store.transaction() as session:
            trip = await self._store.update_trip_if(
                session,
                trip_id,
                ["REQUESTED"],
                {"status": "ACCEPTED", "driver_id": driver_id, "accepted_at": now, "expires_at": None, "updated_at": now},
            )
            if trip is None:
                raise NotFound("Trip not found or no longer available")

            driver = await self._store.update_driver_if(
                session,
                driver_id,
                {"status": "on_trip"},
                Driver.status == "available",
                Driver.account_status == "active",
            )
            if driver is None:
                logger.warning("Driver %s not eligible to accept trip %s, rolling back", driver_id, trip_id)
                raise Conflict("Driver is not available to accept trips")

        self._scheduler.disarm(trip_id)
        logger.info("Trip %s accepted by driver=%s", trip_id, driver_id)

        data = {"trip": self._trip_payload(trip), "driver": DriverResponse.from_driver(driver).model_dump(mode="json")}
        await self._bus.publish(trip_topic(trip_id), TRIP_ACCEPTED, data)
        await self._bus.publish(driver_topic(driver_id), TRIP_ASSIGNED, data)
        await self._bus.publish(ALL_DRIVERS_TOPIC, TRIP_UNAVAILABLE, {"trip_id": trip_id})
        return trip, driver

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def start_trip(self, trip_id: str, driver_id: str) -> Trip:
        trip = await self._require_trip(trip_id)
        self._require_assigned_driver(trip, driver_id)
        if trip.status != "ACCEPTED":
            raise InvalidInput("Trip has not been accepted", details={"status": trip.status})

        now = self._clock()
        async with self._store.transaction() as session:
            updated = await self._store.update_trip_if(
                session,
                trip_id,
                ["ACCEPTED"],
                {"status": "IN_PROGRESS", "trip_start_time": now, "updated_at": now},
            )
        if updated is None:
            raise Conflict("Trip changed while starting, please retry")

        logger.info("Trip %s started by driver=%s", trip_id, driver_id)
        await self._bus.publish(trip_topic(trip_id), TRIP_UPDATED, self._trip_payload(updated))
        return updated

    async def complete_trip(self, trip_id: str, driver_id: str) -> Trip:
        trip = await self._require_trip(trip_id)
        self._require_assigned_driver(trip, driver_id)
        if trip.status != "IN_PROGRESS":
            raise InvalidInput("Trip is not in progress", details={"status": trip.status})

        now = self._clock()
        duration = None
        if trip.trip_start_time is not None:
            duration = max(int((now - as_utc(trip.trip_start_time)).total_seconds()), 0)

        async with self._store.transaction() as session:
            updated = await self._store.update_trip_if(
                session,
                trip_id,
                ["IN_PROGRESS"],
                {
                    "status": "COMPLETED",
                    "trip_end_time": now,
                    "duration": duration,
                    "actual_fare": self._fare_fn(trip.vehicle_type, trip.distance_m or 0.0),
                    "updated_at": now,
                },
            )
            if updated is not None:
                await self._free_driver(session, driver_id, trip_id)
        if updated is None:
            raise Conflict("Trip changed while completing, please retry")

        logger.info("Trip %s completed by driver=%s duration=%ss", trip_id, driver_id, duration)
        await self._bus.publish(trip_topic(trip_id), TRIP_UPDATED, self._trip_payload(updated))
        return updated

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_trip(self, trip_id: str, identity: Identity, reason: Optional[str] = None) -> Trip:
        trip = await self._require_trip(trip_id)

        if identity.role is Role.rider:
            if trip.rider_id != identity.subject_id:
                raise Forbidden("You can only cancel your own trips")
            cancelled_by = "rider"
        elif identity.role is Role.driver:
            if trip.driver_id != identity.subject_id:
                raise Forbidden("You are not the driver assigned to this trip")
            cancelled_by = "driver"
        else:
            raise Forbidden("Unsupported role")

        if trip.status not in ("REQUESTED", "ACCEPTED"):
            raise InvalidInput("This trip can no longer be cancelled", details={"status": trip.status})

        original_status = trip.status
        now = self._clock()
        fee = self.cancellation_fee(trip, cancelled_by, now)

        async with self._store.transaction() as session:
            updated = await self._store.update_trip_if(
                session,
                trip_id,
                [original_status],
                {
                    "status": "CANCELLED",
                    "cancelled_by": cancelled_by,
                    "cancellation_reason": reason,
                    "cancellation_fee": fee,
                    "expires_at": None,
                    "updated_at": now,
                },
            )
            if updated is not None and original_status == "ACCEPTED" and trip.driver_id:
                await self._free_driver(session, trip.driver_id, trip_id)
        if updated is None:
            raise Conflict("Trip changed while cancelling, please retry")

        self._scheduler.disarm(trip_id)
        logger.info("Trip %s cancelled by %s from %s fee=%s", trip_id, cancelled_by, original_status, fee)
        if cancelled_by == "driver":
            # Not penalised yet, but keep a trail for a future penalty policy
            logger.warning("Driver %s cancelled accepted trip %s", identity.subject_id, trip_id)

        await self._bus.publish(trip_topic(trip_id), TRIP_UPDATED, self._trip_payload(updated))
        if original_status == "REQUESTED":
            await self._bus.publish(ALL_DRIVERS_TOPIC, TRIP_UNAVAILABLE, {"trip_id": trip_id})
        return updated

    def cancellation_fee(self, trip: Trip, cancelled_by: str, now: datetime) -> Decimal:
        """Fixed fee when a rider cancels an accepted trip after the grace period."""
        if cancelled_by != "rider" or trip.status != "ACCEPTED" or trip.accepted_at is None:
            return NO_FEE
        elapsed = (now - as_utc(trip.accepted_at)).total_seconds()
        if elapsed > self._settings.cancellation_grace_seconds:
            return self._settings.cancellation_fee_amount
        return NO_FEE

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def expire_trip(self, trip_id: str) -> bool:
        """Auto-cancel a trip nobody accepted. No-op unless it is still REQUESTED."""
        now = self._clock()
        async with self._store.transaction() as session:
            trip = await self._store.update_trip_if(
                session,
                trip_id,
                ["REQUESTED"],
                {
                    "status": "CANCELLED",
                    "cancelled_by": "platform",
                    "cancellation_reason": EXPIRY_REASON,
                    "cancellation_fee": NO_FEE,
                    "expires_at": None,
                    "updated_at": now,
                },
            )
        if trip is None:
            logger.debug("Expiry for trip %s skipped, no longer REQUESTED", trip_id)
            return False

        logger.info("Trip %s cancelled automatically, nobody accepted it", trip_id)
        await self._bus.publish(trip_topic(trip_id), TRIP_UPDATED, self._trip_payload(trip))
        await self._bus.publish(ALL_DRIVERS_TOPIC, TRIP_UNAVAILABLE, {"trip_id": trip_id})
        return True

    async def expire_overdue(self) -> int:
        """Sweep REQUESTED trips past their persisted deadline."""
        expired = 0
        for trip in await self._store.requested_trips(due_before=self._clock()):
            self._scheduler.disarm(trip.id)
            if await self.expire_trip(trip.id):
                expired += 1
        return expired

    async def recover_pending(self) -> int:
        """Re-arm timers for REQUESTED trips, e.g. after a restart."""
        now = self._clock()
        pending = await self._store.requested_trips()
        for trip in pending:
            remaining = 0.0
            if trip.expires_at is not None:
                remaining = (as_utc(trip.expires_at) - now).total_seconds()
            self._scheduler.arm(trip.id, self.expire_trip, remaining)
        if pending:
            logger.info("Re-armed expiry timers for %d pending trip(s)", len(pending))
        return len(pending)

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    async def set_driver_availability(self, driver_id: str, available: bool) -> Driver:
        driver = await self._store.get_driver(driver_id)
        if driver is None:
            raise NotFound("Driver not found")
        if driver.status == "on_trip":
            raise InvalidInput("You cannot change availability during an active trip")

        if available:
            if driver.account_status != "active":
                raise Forbidden("Driver account is not active")
            if await self._store.find_active_trip_for_driver(driver_id) is not None:
                raise InvalidInput("You cannot change availability during an active trip")
            new_status = "available"
        else:
            new_status = "offline"

        async with self._store.transaction() as session:
            updated = await self._store.update_driver_if(
                session,
                driver_id,
                {"status": new_status},
                Driver.status.in_(["offline", "available"]),
            )
        if updated is None:
            raise Conflict("Driver status changed concurrently, please retry")

        if available:
            # Positions reported while offline only reached the DB row
            await self._matching.geo.restore(updated)
        else:
            await self._matching.geo.remove(driver_id)
        logger.info("Driver %s availability set to %s", driver_id, new_status)
        return updated

    async def update_driver_location(self, driver_id: str, lat: float, lng: float) -> None:
        await self._matching.geo.update_location(driver_id, lat, lng)

    async def nearby_drivers(self, point: Point, radius_m: Optional[float] = None) -> list[NearbyDriver]:
        return await self._matching.find_candidates(point, radius_m)

    async def driver_profile(self, driver_id: str) -> tuple[Driver, Optional[Trip]]:
        driver = await self._store.get_driver(driver_id)
        if driver is None:
            raise NotFound("Driver not found")
        return driver, await self._store.find_active_trip_for_driver(driver_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_trip(self, trip_id: str, identity: Identity) -> Trip:
        trip = await self._require_trip(trip_id)
        if identity.subject_id not in (trip.rider_id, trip.driver_id):
            raise Forbidden("You are not a participant of this trip")
        return trip

    async def active_trip(self, identity: Identity) -> Optional[Trip]:
        if identity.role is Role.rider:
            return await self._store.find_open_trip_for_rider(identity.subject_id)
        if identity.role is Role.driver:
            return await self._store.find_active_trip_for_driver(identity.subject_id)
        raise Forbidden("Unsupported role")

    async def trip_history(self, identity: Identity, page: int = 1, page_size: int = 20) -> tuple[list[Trip], int]:
        if identity.role is Role.rider:
            criteria = Trip.rider_id == identity.subject_id
        elif identity.role is Role.driver:
            criteria = Trip.driver_id == identity.subject_id
        else:
            raise Forbidden("Unsupported role")
        return await self._store.history(criteria, page=page, page_size=page_size)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_trip(self, trip_id: str) -> Trip:
        trip = await self._store.get_trip(trip_id)
        if trip is None:
            raise NotFound("Trip not found")
        return trip

    @staticmethod
    def _require_assigned_driver(trip: Trip, driver_id: str) -> None:
        if trip.driver_id != driver_id:
            raise Forbidden("You are not the driver assigned to this trip")

    async def _free_driver(self, session, driver_id: str, trip_id: str) -> None:
        freed = await self._store.update_driver_if(
            session, driver_id, {"status": "available"}, Driver.status == "on_trip"
        )
        if freed is None:
            logger.warning("Driver %s was not on_trip when trip %s ended", driver_id, trip_id)

    @staticmethod
    def _trip_payload(trip: Trip) -> dict:
        return TripResponse.from_trip(trip).model_dump(mode="json")
