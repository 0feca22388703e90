"""
Races: many drivers accepting one trip, double-submitted requests, and
acceptance racing the expiry timer.
"""
import asyncio

import pytest

from app.errors import Conflict, NotFound
from app.models import Trip
from tests.conftest import add_driver, add_rider, drivers_nearby, load_driver, load_trip, trip_request

DRIVERS = [f"driver-{i}" for i in range(5)]


@pytest.mark.asyncio
class TestConcurrentAccept:
    async def test_exactly_one_driver_wins(self, services, session_factory, mock_redis):
        await add_rider(session_factory, "rider-1")
        for driver_id in DRIVERS:
            await add_driver(session_factory, driver_id)
        drivers_nearby(mock_redis, *DRIVERS)
        trip = await services.lifecycle.create_trip("rider-1", trip_request())

        results = await asyncio.gather(
            *(services.lifecycle.accept_trip(trip.id, d) for d in DRIVERS),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 4
        assert all(isinstance(e, NotFound) for e in losers)

        _, winning_driver = winners[0]
        stored = await load_trip(session_factory, trip.id)
        assert stored.status == "ACCEPTED"
        assert stored.driver_id == winning_driver.id

        for driver_id in DRIVERS:
            driver = await load_driver(session_factory, driver_id)
            expected = "on_trip" if driver_id == winning_driver.id else "available"
            assert driver.status == expected

    async def test_one_driver_two_trips(self, services, session_factory, mock_redis):
        await add_rider(session_factory, "rider-1")
        await add_rider(session_factory, "rider-2")
        await add_driver(session_factory, "driver-1")
        drivers_nearby(mock_redis, "driver-1")
        first = await services.lifecycle.create_trip("rider-1", trip_request())
        second = await services.lifecycle.create_trip("rider-2", trip_request())

        results = await asyncio.gather(
            services.lifecycle.accept_trip(first.id, "driver-1"),
            services.lifecycle.accept_trip(second.id, "driver-1"),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(isinstance(r, Conflict) for r in results if isinstance(r, Exception))
        statuses = sorted([(await load_trip(session_factory, t.id)).status for t in (first, second)])
        assert statuses == ["ACCEPTED", "REQUESTED"]


@pytest.mark.asyncio
class TestSingleOpenTrip:
    async def test_double_submit_creates_one_trip(self, services, session_factory, mock_redis):
        await add_rider(session_factory, "rider-1")
        await add_driver(session_factory, "driver-1")
        drivers_nearby(mock_redis, "driver-1")

        results = await asyncio.gather(
            *(services.lifecycle.create_trip("rider-1", trip_request()) for _ in range(3)),
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        assert len(created) == 1
        assert all(isinstance(r, Conflict) for r in results if isinstance(r, Exception))
        assert await services.store.count_matching(Trip.rider_id == "rider-1") == 1


@pytest.mark.asyncio
class TestAcceptVersusExpiry:
    async def test_expiry_after_accept_is_a_no_op(self, services, session_factory, mock_redis):
        await add_rider(session_factory, "rider-1")
        await add_driver(session_factory, "driver-1")
        drivers_nearby(mock_redis, "driver-1")
        trip = await services.lifecycle.create_trip("rider-1", trip_request())
        await services.lifecycle.accept_trip(trip.id, "driver-1")

        assert await services.lifecycle.expire_trip(trip.id) is False
        assert (await load_trip(session_factory, trip.id)).status == "ACCEPTED"

    async def test_accept_after_expiry_is_not_found(self, services, session_factory, mock_redis):
        await add_rider(session_factory, "rider-1")
        await add_driver(session_factory, "driver-1")
        drivers_nearby(mock_redis, "driver-1")
        trip = await services.lifecycle.create_trip("rider-1", trip_request())

        assert await services.lifecycle.expire_trip(trip.id) is True
        with pytest.raises(NotFound):
            await services.lifecycle.accept_trip(trip.id, "driver-1")
        assert (await load_driver(session_factory, "driver-1")).status == "available"

    async def test_racing_accept_and_expiry(self, services, session_factory, mock_redis):
        await add_rider(session_factory, "rider-1")
        await add_driver(session_factory, "driver-1")
        drivers_nearby(mock_redis, "driver-1")
        trip = await services.lifecycle.create_trip("rider-1", trip_request())

        accepted, expired = await asyncio.gather(
            services.lifecycle.accept_trip(trip.id, "driver-1"),
            services.lifecycle.expire_trip(trip.id),
            return_exceptions=True,
        )

        stored = await load_trip(session_factory, trip.id)
        driver = await load_driver(session_factory, "driver-1")
        if stored.status == "ACCEPTED":
            assert expired is False
            assert driver.status == "on_trip"
        else:
            assert stored.status == "CANCELLED"
            assert isinstance(accepted, NotFound)
            assert driver.status == "available"
