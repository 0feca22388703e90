"""
Drivers router: GET /v1/drivers/nearby, GET /v1/drivers/me,
                PATCH /v1/drivers/me/availability, POST /v1/drivers/me/location
"""
import logging

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import get_lifecycle
from app.middleware.auth import get_current_driver, get_current_rider
from app.schemas.schemas import (
    AvailabilityUpdateRequest, DriverProfileResponse, DriverResponse,
    LocationUpdateRequest, NearbyDriverResponse, Point, TripResponse,
)
from app.services.lifecycle import TripLifecycle

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])


@router.get("/nearby", response_model=list[NearbyDriverResponse])
async def nearby_drivers(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_m: float | None = Query(default=None, gt=0),
    rider_id: str = Depends(get_current_rider),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    """Available drivers around a point, nearest first (riders only)."""
    nearby = await lifecycle.nearby_drivers(Point.of(lng, lat), radius_m)
    return [
        NearbyDriverResponse(
            id=n.driver.id,
            name=n.driver.name,
            tier=n.driver.tier,
            distance_m=round(n.distance_m, 1),
            location=DriverResponse.from_driver(n.driver).location,
        )
        for n in nearby
    ]


@router.get("/me", response_model=DriverProfileResponse)
async def driver_profile(
    driver_id: str = Depends(get_current_driver),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    driver, active_trip = await lifecycle.driver_profile(driver_id)
    return DriverProfileResponse(
        driver=DriverResponse.from_driver(driver),
        active_trip=TripResponse.from_trip(active_trip) if active_trip else None,
    )


@router.patch("/me/availability", response_model=DriverResponse)
async def update_availability(
    payload: AvailabilityUpdateRequest,
    driver_id: str = Depends(get_current_driver),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    """Toggle driver online/offline (available ↔ offline). Refused during an active trip."""
    driver = await lifecycle.set_driver_availability(driver_id, payload.is_available)
    return DriverResponse.from_driver(driver)


@router.post("/me/location", status_code=status.HTTP_204_NO_CONTENT)
async def update_location(
    payload: LocationUpdateRequest,
    driver_id: str = Depends(get_current_driver),
    lifecycle: TripLifecycle = Depends(get_lifecycle),
):
    """High-frequency position update: Redis GEO first, then the driver row."""
    await lifecycle.update_driver_location(driver_id, payload.lat, payload.lng)
