"""
Shared fixtures: a throwaway SQLite database, an AsyncMock Redis and the
fully wired service graph.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.config import Settings
from app.database import Base
from app.dependencies import build_services
from app.models import Driver, Rider, Trip
from app.schemas.schemas import Point, TripCreateRequest

PICKUP = Point.of(77.5946, 12.9716)
DROPOFF = Point.of(77.6408, 12.9784)


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def settings():
    return Settings(
        trip_expiry_seconds=60,
        expiry_sweep_interval_seconds=15,
        cancellation_grace_seconds=120,
        cancellation_fee_amount=Decimal("50.00"),
        matching_radius_m=5000,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_redis():
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.geosearch = AsyncMock(return_value=[])
    return redis


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        connect_args={"timeout": 30},
    )

    # Take the write lock up front so concurrent writers queue instead of deadlocking
    @event.listens_for(engine.sync_engine, "connect")
    def _no_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def services(session_factory, mock_redis, settings, clock):
    wired = build_services(session_factory, mock_redis, settings, clock=clock)
    yield wired
    await wired.scheduler.shutdown()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

async def add_rider(session_factory, rider_id: str, account_status: str = "active") -> None:
    async with session_factory() as session:
        session.add(Rider(id=rider_id, name=f"Rider {rider_id}", account_status=account_status))
        await session.commit()


async def add_driver(
    session_factory,
    driver_id: str,
    status: str = "available",
    tier: str = "standard",
    account_status: str = "active",
    located: bool = True,
) -> None:
    async with session_factory() as session:
        session.add(
            Driver(
                id=driver_id,
                name=f"Driver {driver_id}",
                phone=f"+91{abs(hash(driver_id)) % 10_000_000_000:010d}",
                tier=tier,
                status=status,
                account_status=account_status,
                lat=PICKUP.lat if located else None,
                lng=PICKUP.lng if located else None,
            )
        )
        await session.commit()


async def load_trip(session_factory, trip_id: str) -> Trip:
    async with session_factory() as session:
        return await session.get(Trip, trip_id)


async def load_driver(session_factory, driver_id: str) -> Driver:
    async with session_factory() as session:
        return await session.get(Driver, driver_id)


def drivers_nearby(mock_redis, *driver_ids: str) -> None:
    """Make the GEO index report these drivers around the pickup point."""
    mock_redis.geosearch.return_value = [[d, 100.0 * (i + 1)] for i, d in enumerate(driver_ids)]


def drivers_in_index(mock_redis, *driver_ids: str) -> None:
    """Like ``drivers_nearby`` but honours COUNT the way GEOSEARCH does."""
    hits = [[d, 100.0 * (i + 1)] for i, d in enumerate(driver_ids)]

    async def geosearch(key, **kwargs):
        return hits[: kwargs["count"]]

    mock_redis.geosearch = AsyncMock(side_effect=geosearch)


def trip_request(**overrides) -> TripCreateRequest:
    body = {
        "pickup_location": PICKUP.model_dump(),
        "dropoff_location": DROPOFF.model_dump(),
        "pickup_name": "MG Road",
        "destination_name": "Indiranagar",
    }
    body.update(overrides)
    return TripCreateRequest(**body)


def published(mock_redis, topic: str | None = None, event_name: str | None = None) -> list[tuple[str, str, dict]]:
    """Decoded (topic, event, data) tuples for every bus publish so far."""
    events = []
    for call in mock_redis.publish.await_args_list:
        channel, raw = call.args
        message = json.loads(raw)
        if topic is not None and channel != topic:
            continue
        if event_name is not None and message["event"] != event_name:
            continue
        events.append((channel, message["event"], message["data"]))
    return events
