"""
Trips router: POST /v1/trips, GET /v1/trips/active, GET /v1/trips/history,
              GET /v1/trips/{id}, POST /v1/trips/{id}/accept|start|complete|cancel
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Query, status
from fastapi.encoders import jsonable_encoder

from app.dependencies import Services, get_lifecycle, get_services
from app.middleware.auth import Identity, get_current_driver, get_current_identity, get_current_rider
from app.middleware.idempotency import check_idempotency, store_idempotency_result
from app.schemas.schemas import (
    ActiveTripResponse, CancelTripRequest, TripCreateRequest, TripHistoryResponse, TripResponse,
)
from app.services.lifecycle import TripLifecycle

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/trips", tags=["Trips"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=TripResponse)
async def create_trip(
    payload: TripCreateRequest,
    services: Services = Depends(get_services),
    rider_id: str = Depends(get_current_rider),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Request a ride: checks the rider, finds nearby drivers, stores the trip,
    offers it to those drivers and arms the expiry timer.
    """
    # 1. Idempotency check (double-submit of the same request)
    cached = await check_idempotency(services.redis, rider_id, idempotency_key)
    if cached:
        return cached

    # 2. Create + match
    trip = await services.lifecycle.create_trip(rider_id, payload)
    response = TripResponse.from_trip(trip)

    # 3. Store idempotency result
    if idempotency_key:
        await store_idempotency_result(
            services.redis, rider_id, idempotency_key, 201, jsonable_encoder(response)
        )
    return response


@router.get("/active", response_model=ActiveTripResponse)
async def get_active_trip(
    identity: Identity = Depends(get_current_identity),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    trip = await lifecycle.active_trip(identity)
    return ActiveTripResponse(active_trip=TripResponse.from_trip(trip) if trip else None)


@router.get("/history", response_model=TripHistoryResponse)
async def get_trip_history(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    identity: Identity = Depends(get_current_identity),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    trips, total = await lifecycle.trip_history(identity, page=page, page_size=page_size)
    return TripHistoryResponse(
        items=[TripResponse.from_trip(t) for t in trips],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{trip_id}", response_model=TripResponse)
async def get_trip(
    trip_id: str,
    identity: Identity = Depends(get_current_identity),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    return TripResponse.from_trip(await lifecycle.get_trip(trip_id, identity))


@router.post("/{trip_id}/accept", response_model=TripResponse)
async def accept_trip(
    trip_id: str,
    driver_id: str = Depends(get_current_driver),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    """First driver to accept wins; everyone else gets 404."""
    trip, _ = await lifecycle.accept_trip(trip_id, driver_id)
    return TripResponse.from_trip(trip)


@router.post("/{trip_id}/start", response_model=TripResponse)
async def start_trip(
    trip_id: str,
    driver_id: str = Depends(get_current_driver),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    return TripResponse.from_trip(await lifecycle.start_trip(trip_id, driver_id))


@router.post("/{trip_id}/complete", response_model=TripResponse)
async def complete_trip(
    trip_id: str,
    driver_id: str = Depends(get_current_driver),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    return TripResponse.from_trip(await lifecycle.complete_trip(trip_id, driver_id))


@router.post("/{trip_id}/cancel", response_model=TripResponse)
async def cancel_trip(
    trip_id: str,
    payload: Optional[CancelTripRequest] = Body(default=None),
    identity: Identity = Depends(get_current_identity),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    reason = payload.reason if payload else None
    return TripResponse.from_trip(await lifecycle.cancel_trip(trip_id, identity, reason))
