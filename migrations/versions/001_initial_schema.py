"""Initial schema: users, ride requests, pools, memberships, pricing history.

Revision ID: 001
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None

RIDE_STATUSES = (
    "pending", "matched", "confirmed", "in_progress", "completed", "cancelled",
)
POOL_STATUSES = ("forming", "confirmed", "in_progress", "completed", "cancelled")


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── ride_requests ─────────────────────────────────────────────────
    op.create_table(
        "ride_requests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column("passenger_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("luggage_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_detour_km", sa.Float, nullable=False, server_default="5.0"),
        sa.Column(
            "status",
            sa.Enum(*RIDE_STATUSES, name="ridestatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_ride_requests_status", "ride_requests", ["status"])
    op.create_index("idx_ride_requests_user", "ride_requests", ["user_id"])
    op.create_index(
        "idx_ride_requests_status_requested",
        "ride_requests",
        ["status", "requested_at"],
    )

    # ── ride_pools ────────────────────────────────────────────────────
    op.create_table(
        "ride_pools",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("pool_code", sa.String(20), unique=True, nullable=False),
        sa.Column(
            "status",
            sa.Enum(*POOL_STATUSES, name="poolstatus"),
            nullable=False,
            server_default="forming",
        ),
        sa.Column("current_passenger_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("current_luggage_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_passengers", sa.Integer, nullable=False, server_default="4"),
        sa.Column("max_luggage", sa.Integer, nullable=False, server_default="8"),
        sa.Column("route_distance_km", sa.Float, nullable=True),
        sa.Column("estimated_duration_minutes", sa.Integer, nullable=True),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_ride_pools_status", "ride_pools", ["status"])
    op.create_index("idx_ride_pools_created", "ride_pools", ["created_at"])
    op.create_index("idx_ride_pools_cell", "ride_pools", ["h3_cell"])

    # ── pool_members ──────────────────────────────────────────────────
    op.create_table(
        "pool_members",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "pool_id", sa.Integer, sa.ForeignKey("ride_pools.id"), nullable=False
        ),
        sa.Column(
            "ride_request_id",
            sa.Integer,
            sa.ForeignKey("ride_requests.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("pickup_sequence", sa.Integer, nullable=False),
        sa.Column("dropoff_sequence", sa.Integer, nullable=False),
        sa.Column("detour_distance_km", sa.Float, nullable=False, server_default="0"),
        sa.Column("price", sa.Float, nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("pool_id", "ride_request_id", name="uq_pool_member"),
    )
    op.create_index("idx_pool_members_pool", "pool_members", ["pool_id"])

    # ── pricing_history ───────────────────────────────────────────────
    op.create_table(
        "pricing_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "ride_request_id",
            sa.Integer,
            sa.ForeignKey("ride_requests.id"),
            nullable=False,
        ),
        sa.Column("base_fare", sa.Float, nullable=False),
        sa.Column("distance_fare", sa.Float, nullable=False),
        sa.Column("subtotal", sa.Float, nullable=False),
        sa.Column("surge_multiplier", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("surge_amount", sa.Float, nullable=False, server_default="0"),
        sa.Column("pool_discount_percent", sa.Float, nullable=False, server_default="0"),
        sa.Column("pool_discount", sa.Float, nullable=False, server_default="0"),
        sa.Column("final_price", sa.Float, nullable=False),
        sa.Column("demand_factor", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("distance_km", sa.Float, nullable=False),
        sa.Column("is_pooled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("pool_size", sa.Integer, nullable=False, server_default="1"),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "idx_pricing_history_request",
        "pricing_history",
        ["ride_request_id", "calculated_at"],
    )


def downgrade() -> None:
    op.drop_table("pricing_history")
    op.drop_table("pool_members")
    op.drop_table("ride_pools")
    op.drop_table("ride_requests")
    op.drop_table("users")
    op.execute("DROP TYPE IF EXISTS poolstatus")
    op.execute("DROP TYPE IF EXISTS ridestatus")
