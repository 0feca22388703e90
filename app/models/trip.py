import uuid
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import String, Float, Integer, Numeric, DateTime, ForeignKey, Index, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


OPEN_STATUSES = ("REQUESTED", "ACCEPTED", "IN_PROGRESS")
ASSIGNED_STATUSES = ("ACCEPTED", "IN_PROGRESS")


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rider_id: Mapped[str] = mapped_column(String, ForeignKey("riders.id"), nullable=False, index=True)
    driver_id: Mapped[str | None] = mapped_column(String, ForeignKey("drivers.id"), nullable=True, index=True)

    # GeoJSON order on the wire is [lng, lat]
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dropoff_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    destination_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_indications: Mapped[str | None] = mapped_column(Text, nullable=True)
    vehicle_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # REQUESTED | ACCEPTED | IN_PROGRESS | COMPLETED | CANCELLED
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="REQUESTED", index=True)

    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trip_start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trip_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Durable auto-cancel deadline, only meaningful while REQUESTED
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)

    distance_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)

    estimated_fare: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    actual_fare: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    cancellation_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))

    # rider | driver | platform
    cancelled_by: Mapped[str | None] = mapped_column(String(20), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        # At most one open trip per rider, enforced by the store
        Index(
            "uq_trips_rider_open",
            "rider_id",
            unique=True,
            postgresql_where=text("status IN ('REQUESTED', 'ACCEPTED', 'IN_PROGRESS')"),
            sqlite_where=text("status IN ('REQUESTED', 'ACCEPTED', 'IN_PROGRESS')"),
        ),
        # At most one assigned trip per driver
        Index(
            "uq_trips_driver_active",
            "driver_id",
            unique=True,
            postgresql_where=text("status IN ('ACCEPTED', 'IN_PROGRESS')"),
            sqlite_where=text("status IN ('ACCEPTED', 'IN_PROGRESS')"),
        ),
    )
