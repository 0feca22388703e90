"""Initial schema: riders, drivers, trips"""
from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

OPEN_TRIP = "status IN ('REQUESTED', 'ACCEPTED', 'IN_PROGRESS')"
ASSIGNED_TRIP = "status IN ('ACCEPTED', 'IN_PROGRESS')"


def upgrade() -> None:
    op.create_table(
        "riders",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("account_status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "drivers",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(20), unique=True, nullable=False),
        sa.Column("tier", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("account_status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("status", sa.String(20), nullable=False, server_default="offline"),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("location_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("channel_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_drivers_status", "drivers", ["status"])
    op.create_index("idx_drivers_tier_status", "drivers", ["tier", "status"])

    op.create_table(
        "trips",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("rider_id", sa.String, sa.ForeignKey("riders.id"), nullable=False),
        sa.Column("driver_id", sa.String, sa.ForeignKey("drivers.id"), nullable=True),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("pickup_name", sa.String(255), nullable=True),
        sa.Column("destination_name", sa.String(255), nullable=True),
        sa.Column("user_indications", sa.Text, nullable=True),
        sa.Column("vehicle_type", sa.String(20), nullable=True),
        sa.Column("payment_method_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="REQUESTED"),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trip_start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trip_end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("distance_m", sa.Float, nullable=True),
        sa.Column("duration", sa.Integer, nullable=True),
        sa.Column("estimated_fare", sa.Numeric(10, 2), nullable=True),
        sa.Column("actual_fare", sa.Numeric(10, 2), nullable=True),
        sa.Column("cancellation_fee", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("cancelled_by", sa.String(20), nullable=True),
        sa.Column("cancellation_reason", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_trips_rider_id", "trips", ["rider_id"])
    op.create_index("ix_trips_driver_id", "trips", ["driver_id"])
    op.create_index("ix_trips_status", "trips", ["status"])
    op.create_index("ix_trips_expires_at", "trips", ["expires_at"])
    op.create_index("ix_trips_created_at", "trips", ["created_at"])
    op.create_index(
        "uq_trips_rider_open", "trips", ["rider_id"], unique=True,
        postgresql_where=sa.text(OPEN_TRIP),
    )
    op.create_index(
        "uq_trips_driver_active", "trips", ["driver_id"], unique=True,
        postgresql_where=sa.text(ASSIGNED_TRIP),
    )


def downgrade() -> None:
    op.drop_table("trips")
    op.drop_table("drivers")
    op.drop_table("riders")
