"""
Trip store: persistence of trips, drivers and riders on SQLAlchemy async.

Every state change goes through a compare-and-set ``UPDATE ... WHERE
status IN (:expected)``; the affected row count decides who won. Callers
that need two writes to land together run them inside ``transaction()``.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.errors import Conflict
from app.models.driver import Driver
from app.models.rider import Rider
from app.models.trip import Trip, OPEN_STATUSES, ASSIGNED_STATUSES

logger = logging.getLogger(__name__)


class TripStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """One all-or-nothing unit of work; any exception rolls everything back."""
        async with self._session_factory() as session:
            async with session.begin():
                yield session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_trip(self, trip_id: str) -> Optional[Trip]:
        async with self._session_factory() as session:
            return await session.get(Trip, trip_id)

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        async with self._session_factory() as session:
            return await session.get(Driver, driver_id)

    async def get_rider(self, rider_id: str) -> Optional[Rider]:
        async with self._session_factory() as session:
            return await session.get(Rider, rider_id)

    async def find_one(self, *criteria: Any) -> Optional[Trip]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trip).where(*criteria).order_by(Trip.created_at.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def find_open_trip_for_rider(self, rider_id: str) -> Optional[Trip]:
        return await self.find_one(Trip.rider_id == rider_id, Trip.status.in_(OPEN_STATUSES))

    async def find_active_trip_for_driver(self, driver_id: str) -> Optional[Trip]:
        return await self.find_one(Trip.driver_id == driver_id, Trip.status.in_(ASSIGNED_STATUSES))

    async def count_matching(self, *criteria: Any) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(Trip).where(*criteria))
            return int(result.scalar_one())

    async def history(self, *criteria: Any, page: int, page_size: int) -> tuple[list[Trip], int]:
        """Newest-first page of trips plus the total number matching."""
        total = await self.count_matching(*criteria)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Trip)
                .where(*criteria)
                .order_by(Trip.created_at.desc(), Trip.id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(result.scalars().all()), total

    async def requested_trips(self, due_before: Optional[datetime] = None) -> list[Trip]:
        """REQUESTED trips, optionally only those whose expiry deadline has passed."""
        criteria = [Trip.status == "REQUESTED"]
        if due_before is not None:
            criteria.append(Trip.expires_at <= due_before)
        async with self._session_factory() as session:
            result = await session.execute(select(Trip).where(*criteria).order_by(Trip.expires_at))
            return list(result.scalars().all())

    async def eligible_drivers(self, driver_ids: Sequence[str], tier: Optional[str] = None) -> dict[str, Driver]:
        """Subset of ``driver_ids`` that is available with an active account."""
        if not driver_ids:
            return {}
        criteria = [
            Driver.id.in_(list(driver_ids)),
            Driver.status == "available",
            Driver.account_status == "active",
        ]
        if tier is not None:
            criteria.append(Driver.tier == tier)
        async with self._session_factory() as session:
            result = await session.execute(select(Driver).where(*criteria))
            return {driver.id: driver for driver in result.scalars().all()}

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_trip(self, trip: Trip) -> Trip:
        """Persist a new trip; the open-trip unique index turns a duplicate into Conflict."""
        async with self._session_factory() as session:
            session.add(trip)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning("Duplicate open trip rejected for rider=%s", trip.rider_id)
                raise Conflict("You already have a trip in progress")
            await session.refresh(trip)
            return trip

    async def update_trip_if(
        self,
        session: AsyncSession,
        trip_id: str,
        expected: Sequence[str],
        values: dict[str, Any],
    ) -> Optional[Trip]:
        """Compare-and-set on trip status. Returns the fresh row, or None if nothing matched."""
        try:
            result = await session.execute(
                update(Trip)
                .where(Trip.id == trip_id, Trip.status.in_(list(expected)))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except IntegrityError:
            # uq_trips_driver_active: the driver already holds an active trip
            logger.warning("Trip %s update rejected by an active-trip constraint", trip_id)
            raise Conflict("Driver is not available to accept trips")
        if result.rowcount != 1:
            return None
        return await session.get(Trip, trip_id, populate_existing=True)

    async def update_driver_if(
        self,
        session: AsyncSession,
        driver_id: str,
        values: dict[str, Any],
        *criteria: Any,
    ) -> Optional[Driver]:
        """Conditional driver update; ``criteria`` are extra WHERE clauses."""
        result = await session.execute(
            update(Driver)
            .where(Driver.id == driver_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await session.get(Driver, driver_id, populate_existing=True)

    async def set_driver_location(self, driver_id: str, lat: float, lng: float, at: datetime) -> None:
        async with self.transaction() as session:
            await session.execute(
                update(Driver)
                .where(Driver.id == driver_id)
                .values(lat=lat, lng=lng, location_updated_at=at)
                .execution_options(synchronize_session=False)
            )

    async def set_driver_channel(self, driver_id: str, channel_id: Optional[str], expected: Optional[str] = None) -> bool:
        """Attach or clear the live channel handle; clearing only matches the handle being closed."""
        criteria = []
        if expected is not None:
            criteria.append(Driver.channel_id == expected)
        async with self.transaction() as session:
            driver = await self.update_driver_if(session, driver_id, {"channel_id": channel_id}, *criteria)
            return driver is not None
