"""
Integration tests for the HTTP surface.
Uses pytest-asyncio + HTTPX async client over the ASGI app, with the service
graph swapped for the test one.
"""
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.dependencies import get_services
from app.main import app
from app.middleware.auth import create_access_token
from tests.conftest import DROPOFF, PICKUP, add_driver, add_rider, drivers_nearby

RIDER_TOKEN = create_access_token({"sub": "rider-1", "role": "rider"})
DRIVER_TOKEN = create_access_token({"sub": "driver-1", "role": "driver"})

TRIP_BODY = {
    "pickup_location": {"type": "Point", "coordinates": PICKUP.coordinates},
    "dropoff_location": {"type": "Point", "coordinates": DROPOFF.coordinates},
    "pickup_name": "MG Road",
    "destination_name": "Indiranagar",
}


@pytest.fixture
def rider_headers():
    return {"Authorization": f"Bearer {RIDER_TOKEN}"}


@pytest.fixture
def driver_headers():
    return {"Authorization": f"Bearer {DRIVER_TOKEN}"}


@pytest_asyncio.fixture
async def client(services, session_factory, mock_redis):
    await add_rider(session_factory, "rider-1")
    await add_driver(session_factory, "driver-1", status="offline")
    drivers_nearby(mock_redis, "driver-1")

    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def go_online(client, driver_headers):
    resp = await client.patch("/v1/drivers/me/availability", json={"is_available": True}, headers=driver_headers)
    assert resp.status_code == 200


@pytest.mark.asyncio
class TestAuth:
    async def test_health_check(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_missing_token(self, client):
        resp = await client.post("/v1/trips", json=TRIP_BODY)
        assert resp.status_code == 401
        assert resp.json()["kind"] == "unauthenticated"

    async def test_bad_token(self, client):
        resp = await client.get("/v1/trips/active", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    async def test_driver_cannot_request_trip(self, client, driver_headers):
        resp = await client.post("/v1/trips", json=TRIP_BODY, headers=driver_headers)
        assert resp.status_code == 403
        assert resp.json()["kind"] == "forbidden"

    async def test_rider_cannot_accept(self, client, rider_headers):
        resp = await client.post("/v1/trips/some-id/accept", headers=rider_headers)
        assert resp.status_code == 403


@pytest.mark.asyncio
class TestCreateTripAPI:
    async def test_invalid_latitude(self, client, rider_headers):
        body = {**TRIP_BODY, "pickup_location": {"type": "Point", "coordinates": [77.59, 999]}}
        resp = await client.post("/v1/trips", json=body, headers=rider_headers)
        assert resp.status_code == 400
        data = resp.json()
        assert data["kind"] == "invalid_input"
        assert data["details"]["errors"]

    async def test_missing_dropoff(self, client, rider_headers):
        body = {"pickup_location": TRIP_BODY["pickup_location"]}
        resp = await client.post("/v1/trips", json=body, headers=rider_headers)
        assert resp.status_code == 400

    async def test_no_drivers_nearby(self, client, rider_headers):
        # driver-1 is still offline
        resp = await client.post("/v1/trips", json=TRIP_BODY, headers=rider_headers)
        assert resp.status_code == 404
        assert resp.json()["kind"] == "unavailable"

        active = await client.get("/v1/trips/active", headers=rider_headers)
        assert active.json()["active_trip"] is None

    async def test_second_request_conflicts(self, client, rider_headers, driver_headers):
        await go_online(client, driver_headers)
        first = await client.post("/v1/trips", json=TRIP_BODY, headers=rider_headers)
        assert first.status_code == 201

        second = await client.post("/v1/trips", json=TRIP_BODY, headers=rider_headers)
        assert second.status_code == 409
        assert second.json()["kind"] == "conflict"

    async def test_idempotent_replay(self, client, rider_headers, driver_headers, mock_redis):
        await go_online(client, driver_headers)
        headers = {**rider_headers, "Idempotency-Key": "req-42"}

        first = await client.post("/v1/trips", json=TRIP_BODY, headers=headers)
        assert first.status_code == 201
        key, ttl, stored = mock_redis.setex.await_args.args
        assert key == "idempotency:rider-1:req-42"

        mock_redis.get.return_value = stored
        replay = await client.post("/v1/trips", json=TRIP_BODY, headers=headers)
        assert replay.status_code == 201
        assert replay.headers["X-Idempotency-Replay"] == "true"
        assert replay.json()["id"] == first.json()["id"]


@pytest.mark.asyncio
class TestTripFlowAPI:
    async def test_request_accept_start_complete(self, client, rider_headers, driver_headers):
        await go_online(client, driver_headers)
        loc = await client.post("/v1/drivers/me/location", json={"lat": 12.97, "lng": 77.59}, headers=driver_headers)
        assert loc.status_code == 204

        created = await client.post("/v1/trips", json=TRIP_BODY, headers=rider_headers)
        assert created.status_code == 201
        trip = created.json()
        assert trip["status"] == "REQUESTED"
        assert trip["pickup_location"] == TRIP_BODY["pickup_location"]
        trip_id = trip["id"]

        accepted = await client.post(f"/v1/trips/{trip_id}/accept", headers=driver_headers)
        assert accepted.status_code == 200
        assert accepted.json()["driver_id"] == "driver-1"

        again = await client.post(f"/v1/trips/{trip_id}/accept", headers=driver_headers)
        assert again.status_code == 404

        profile = await client.get("/v1/drivers/me", headers=driver_headers)
        assert profile.json()["driver"]["status"] == "on_trip"
        assert profile.json()["active_trip"]["id"] == trip_id

        started = await client.post(f"/v1/trips/{trip_id}/start", headers=driver_headers)
        assert started.json()["status"] == "IN_PROGRESS"

        completed = await client.post(f"/v1/trips/{trip_id}/complete", headers=driver_headers)
        assert completed.status_code == 200
        assert completed.json()["status"] == "COMPLETED"
        assert completed.json()["actual_fare"] is not None

        history = await client.get("/v1/trips/history", headers=rider_headers)
        assert history.json()["total"] == 1
        assert history.json()["items"][0]["id"] == trip_id

    async def test_complete_before_start_is_invalid(self, client, rider_headers, driver_headers):
        await go_online(client, driver_headers)
        trip_id = (await client.post("/v1/trips", json=TRIP_BODY, headers=rider_headers)).json()["id"]
        await client.post(f"/v1/trips/{trip_id}/accept", headers=driver_headers)

        resp = await client.post(f"/v1/trips/{trip_id}/complete", headers=driver_headers)
        assert resp.status_code == 400
        assert resp.json()["details"]["status"] == "ACCEPTED"

    async def test_late_cancellation_fee(self, client, rider_headers, driver_headers, clock):
        await go_online(client, driver_headers)
        trip_id = (await client.post("/v1/trips", json=TRIP_BODY, headers=rider_headers)).json()["id"]
        await client.post(f"/v1/trips/{trip_id}/accept", headers=driver_headers)

        clock.advance(180)
        resp = await client.post(
            f"/v1/trips/{trip_id}/cancel", json={"reason": "too slow"}, headers=rider_headers
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "CANCELLED"
        assert body["cancelled_by"] == "rider"
        assert Decimal(str(body["cancellation_fee"])) == Decimal("50.00")

    async def test_cancel_without_body(self, client, rider_headers, driver_headers):
        await go_online(client, driver_headers)
        trip_id = (await client.post("/v1/trips", json=TRIP_BODY, headers=rider_headers)).json()["id"]

        resp = await client.post(f"/v1/trips/{trip_id}/cancel", headers=rider_headers)
        assert resp.status_code == 200
        assert Decimal(str(resp.json()["cancellation_fee"])) == Decimal("0")

    async def test_unknown_trip(self, client, rider_headers):
        resp = await client.get("/v1/trips/nonexistent-uuid", headers=rider_headers)
        assert resp.status_code == 404
        assert resp.json()["kind"] == "not_found"


@pytest.mark.asyncio
class TestDriversAPI:
    async def test_nearby_requires_rider(self, client, driver_headers):
        resp = await client.get("/v1/drivers/nearby", params={"lat": 12.97, "lng": 77.59}, headers=driver_headers)
        assert resp.status_code == 403

    async def test_nearby_lists_available_drivers(self, client, rider_headers, driver_headers):
        await go_online(client, driver_headers)
        resp = await client.get("/v1/drivers/nearby", params={"lat": 12.97, "lng": 77.59}, headers=rider_headers)
        assert resp.status_code == 200
        assert [d["id"] for d in resp.json()] == ["driver-1"]
        assert resp.json()[0]["distance_m"] == 100.0

    async def test_nearby_rejects_bad_latitude(self, client, rider_headers):
        resp = await client.get("/v1/drivers/nearby", params={"lat": 120, "lng": 77.59}, headers=rider_headers)
        assert resp.status_code == 400

    async def test_availability_locked_during_trip(self, client, rider_headers, driver_headers):
        await go_online(client, driver_headers)
        trip_id = (await client.post("/v1/trips", json=TRIP_BODY, headers=rider_headers)).json()["id"]
        await client.post(f"/v1/trips/{trip_id}/accept", headers=driver_headers)

        resp = await client.patch("/v1/drivers/me/availability", json={"is_available": False}, headers=driver_headers)
        assert resp.status_code == 400
        assert resp.json()["kind"] == "invalid_input"
