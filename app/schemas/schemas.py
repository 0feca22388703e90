import math
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TierEnum(str, Enum):
    standard = "standard"
    premium = "premium"
    xl = "xl"


class TripStatusEnum(str, Enum):
    REQUESTED = "REQUESTED"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class DriverStatusEnum(str, Enum):
    offline = "offline"
    available = "available"
    on_trip = "on_trip"


class AccountStatusEnum(str, Enum):
    active = "active"
    suspended = "suspended"
    deleted = "deleted"


class CancelledByEnum(str, Enum):
    rider = "rider"
    driver = "driver"
    platform = "platform"


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

class Point(BaseModel):
    """GeoJSON point, coordinates are [longitude, latitude]."""
    type: Literal["Point"]
    coordinates: list[float]

    @field_validator("coordinates")
    @classmethod
    def check_coordinates(cls, v: list[float]) -> list[float]:
        if len(v) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        lng, lat = v
        if not (math.isfinite(lng) and math.isfinite(lat)):
            raise ValueError("coordinates must be finite numbers")
        if not -180 <= lng <= 180:
            raise ValueError("longitude out of range")
        if not -90 <= lat <= 90:
            raise ValueError("latitude out of range")
        return v

    @property
    def lng(self) -> float:
        return self.coordinates[0]

    @property
    def lat(self) -> float:
        return self.coordinates[1]

    @classmethod
    def of(cls, lng: float, lat: float) -> "Point":
        return cls(type="Point", coordinates=[lng, lat])


# ---------------------------------------------------------------------------
# Trip schemas
# ---------------------------------------------------------------------------

class TripCreateRequest(BaseModel):
    pickup_location: Point
    dropoff_location: Point
    pickup_name: Optional[str] = Field(default=None, max_length=255)
    destination_name: Optional[str] = Field(default=None, max_length=255)
    user_indications: Optional[str] = Field(default=None, max_length=1000)
    payment_method_id: Optional[str] = Field(default=None, max_length=255)
    vehicle_type_requested: Optional[TierEnum] = None
    search_radius_m: Optional[float] = Field(default=None, gt=0)


class CancelTripRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class TripResponse(BaseModel):
    id: str
    rider_id: str
    driver_id: Optional[str] = None
    status: TripStatusEnum
    pickup_location: Point
    dropoff_location: Point
    pickup_name: Optional[str] = None
    destination_name: Optional[str] = None
    user_indications: Optional[str] = None
    vehicle_type: Optional[str] = None
    payment_method_id: Optional[str] = None
    estimated_fare: Optional[Decimal] = None
    actual_fare: Optional[Decimal] = None
    cancellation_fee: Decimal = Decimal("0.00")
    cancelled_by: Optional[CancelledByEnum] = None
    cancellation_reason: Optional[str] = None
    distance_m: Optional[float] = None
    duration: Optional[int] = None
    accepted_at: Optional[datetime] = None
    trip_start_time: Optional[datetime] = None
    trip_end_time: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_trip(cls, trip: Any) -> "TripResponse":
        return cls(
            id=trip.id,
            rider_id=trip.rider_id,
            driver_id=trip.driver_id,
            status=trip.status,
            pickup_location=Point.of(trip.pickup_lng, trip.pickup_lat),
            dropoff_location=Point.of(trip.dropoff_lng, trip.dropoff_lat),
            pickup_name=trip.pickup_name,
            destination_name=trip.destination_name,
            user_indications=trip.user_indications,
            vehicle_type=trip.vehicle_type,
            payment_method_id=trip.payment_method_id,
            estimated_fare=trip.estimated_fare,
            actual_fare=trip.actual_fare,
            cancellation_fee=trip.cancellation_fee if trip.cancellation_fee is not None else Decimal("0.00"),
            cancelled_by=trip.cancelled_by,
            cancellation_reason=trip.cancellation_reason,
            distance_m=trip.distance_m,
            duration=trip.duration,
            accepted_at=trip.accepted_at,
            trip_start_time=trip.trip_start_time,
            trip_end_time=trip.trip_end_time,
            expires_at=trip.expires_at,
            created_at=trip.created_at,
            updated_at=trip.updated_at,
        )


class TripHistoryResponse(BaseModel):
    items: list[TripResponse]
    total: int
    page: int
    page_size: int


class ActiveTripResponse(BaseModel):
    active_trip: Optional[TripResponse] = None


# ---------------------------------------------------------------------------
# Driver schemas
# ---------------------------------------------------------------------------

class DriverResponse(BaseModel):
    id: str
    name: str
    phone: str
    tier: str
    status: DriverStatusEnum
    account_status: AccountStatusEnum
    is_available: bool
    location: Optional[Point] = None

    @classmethod
    def from_driver(cls, driver: Any) -> "DriverResponse":
        location = None
        if driver.lat is not None and driver.lng is not None:
            location = Point.of(driver.lng, driver.lat)
        return cls(
            id=driver.id,
            name=driver.name,
            phone=driver.phone,
            tier=driver.tier,
            status=driver.status,
            account_status=driver.account_status,
            is_available=driver.is_available,
            location=location,
        )


class NearbyDriverResponse(BaseModel):
    id: str
    name: str
    tier: str
    distance_m: float
    location: Optional[Point] = None


class DriverProfileResponse(BaseModel):
    driver: DriverResponse
    active_trip: Optional[TripResponse] = None


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None


class AvailabilityUpdateRequest(BaseModel):
    is_available: bool
