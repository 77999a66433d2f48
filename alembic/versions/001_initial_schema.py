"""
Initial database schema: route catalogue, wallet ledger, subscriptions,
invoices, trip generation, blackout dates, cash settlements.

Revision ID: 001
"""
from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    """Create initial tables."""
    op.create_table(
        "routes",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("route_id", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price_per_seat", MONEY, nullable=False),
        sa.Column("discount_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_routes_route_id", "routes", ["route_id"], unique=True)
    op.create_index("ix_routes_is_active", "routes", ["is_active"])

    op.create_table(
        "time_slots",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("time_slot_id", sa.String(50), nullable=False),
        sa.Column("route_id", sa.String(50), sa.ForeignKey("routes.route_id"), nullable=False),
        sa.Column("departure_time", sa.String(10), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_time_slots_time_slot_id", "time_slots", ["time_slot_id"], unique=True)
    op.create_index("ix_time_slots_route_id", "time_slots", ["route_id"])

    op.create_table(
        "pickup_points",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("point_id", sa.String(50), nullable=False),
        sa.Column("route_id", sa.String(50), sa.ForeignKey("routes.route_id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("sequence_order", sa.Integer(), nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pickup_points_point_id", "pickup_points", ["point_id"], unique=True)
    op.create_index("ix_pickup_points_route_id", "pickup_points", ["route_id"])

    op.create_table(
        "wallets",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("balance", MONEY, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_wallets_user_id", "wallets", ["user_id"], unique=True)

    op.create_table(
        "wallet_transactions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("wallet_id", sa.String(36), sa.ForeignKey("wallets.id"), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("type", sa.String(10), nullable=False),
        sa.Column("category", sa.String(30), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("reference_id", sa.String(100), nullable=True),
        sa.Column("performed_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_wallet_transactions_wallet_id", "wallet_transactions", ["wallet_id"])
    op.create_index("ix_wallet_transactions_category", "wallet_transactions", ["category"])
    op.create_index("ix_wallet_transactions_reference_id", "wallet_transactions", ["reference_id"])
    op.create_index("ix_wallet_transactions_created_at", "wallet_transactions", ["created_at"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("route_id", sa.String(50), sa.ForeignKey("routes.route_id"), nullable=False),
        sa.Column("time_slot_id", sa.String(50), sa.ForeignKey("time_slots.time_slot_id"), nullable=False),
        sa.Column("boarding_point_id", sa.String(50), sa.ForeignKey("pickup_points.point_id"), nullable=False),
        sa.Column("drop_off_point_id", sa.String(50), sa.ForeignKey("pickup_points.point_id"), nullable=False),
        sa.Column("weekdays", sa.JSON(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("price_per_trip", MONEY, nullable=False),
        sa.Column("total_monthly_price", MONEY, nullable=False),
        sa.Column("discount_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("payment_method", sa.String(10), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="active"),
        sa.Column("cancellation_date", sa.Date(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"])
    op.create_index("ix_subscriptions_route_id", "subscriptions", ["route_id"])
    op.create_index("ix_subscriptions_time_slot_id", "subscriptions", ["time_slot_id"])
    op.create_index("ix_subscriptions_end_date", "subscriptions", ["end_date"])
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])

    op.create_table(
        "subscription_invoices",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("invoice_number", sa.String(30), nullable=False),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("billing_month", sa.String(7), nullable=False),
        sa.Column("amount_due", MONEY, nullable=False),
        sa.Column("amount_paid", MONEY, nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("wallet_transaction_id", sa.String(36), sa.ForeignKey("wallet_transactions.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "billing_month", name="ux_invoice_subscription_month"),
    )
    op.create_index("ix_subscription_invoices_invoice_number", "subscription_invoices", ["invoice_number"], unique=True)
    op.create_index("ix_subscription_invoices_subscription_id", "subscription_invoices", ["subscription_id"])
    op.create_index("ix_subscription_invoices_user_id", "subscription_invoices", ["user_id"])
    op.create_index("ix_subscription_invoices_status", "subscription_invoices", ["status"])

    op.create_table(
        "trip_slot_runs",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("route_id", sa.String(50), nullable=False),
        sa.Column("time_slot_id", sa.String(50), nullable=False),
        sa.Column("outcome", sa.String(30), nullable=False),
        sa.Column("booking_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("generated_by", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("service_date", "route_id", "time_slot_id", name="ux_trip_slot_run_key"),
    )

    op.create_table(
        "trips",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("trip_reference_id", sa.String(20), nullable=False),
        sa.Column("slot_run_id", sa.Integer(), sa.ForeignKey("trip_slot_runs.id"), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("route_id", sa.String(50), nullable=False),
        sa.Column("time_slot_id", sa.String(50), nullable=False),
        sa.Column("vehicle_tier", sa.String(20), nullable=False),
        sa.Column("vehicle_capacity", sa.Integer(), nullable=False),
        sa.Column("generated_by", sa.String(20), nullable=False),
        sa.Column("rationale", sa.String(500), nullable=True),
        sa.Column("driver_id", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_trips_trip_reference_id", "trips", ["trip_reference_id"], unique=True)
    op.create_index("ix_trips_slot_run_id", "trips", ["slot_run_id"])
    op.create_index("ix_trips_service_date", "trips", ["service_date"])
    op.create_index("ix_trips_route_id", "trips", ["route_id"])

    op.create_table(
        "trip_bookings",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("trip_id", sa.Integer(), sa.ForeignKey("trips.id"), nullable=False),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("boarding_point_id", sa.String(50), nullable=False),
        sa.Column("drop_off_point_id", sa.String(50), nullable=False),
        sa.Column("pickup_sequence", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_trip_bookings_trip_id", "trip_bookings", ["trip_id"])
    op.create_index("ix_trip_bookings_subscription_id", "trip_bookings", ["subscription_id"])

    op.create_table(
        "blackout_dates",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("source", sa.String(30), nullable=False, server_default="manual"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_blackout_dates_start_date", "blackout_dates", ["start_date"])
    op.create_index("ix_blackout_dates_end_date", "blackout_dates", ["end_date"])

    op.create_table(
        "cash_settlement_records",
        sa.Column("id", sa.Integer(), nullable=False, autoincrement=True),
        sa.Column("subscription_id", sa.String(36), sa.ForeignKey("subscriptions.id"), nullable=False),
        sa.Column("user_id", sa.String(100), nullable=False),
        sa.Column("service_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("acknowledged_by", sa.String(100), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subscription_id", "service_date", name="ux_cash_settlement_sub_date"),
    )
    op.create_index("ix_cash_settlement_records_subscription_id", "cash_settlement_records", ["subscription_id"])
    op.create_index("ix_cash_settlement_records_user_id", "cash_settlement_records", ["user_id"])
    op.create_index("ix_cash_settlement_records_service_date", "cash_settlement_records", ["service_date"])
    op.create_index("ix_cash_settlement_records_status", "cash_settlement_records", ["status"])


def downgrade() -> None:
    """Drop all tables (reverse order of foreign keys)."""
    op.drop_table("cash_settlement_records")
    op.drop_table("blackout_dates")
    op.drop_table("trip_bookings")
    op.drop_table("trips")
    op.drop_table("trip_slot_runs")
    op.drop_table("subscription_invoices")
    op.drop_table("subscriptions")
    op.drop_table("wallet_transactions")
    op.drop_table("wallets")
    op.drop_table("pickup_points")
    op.drop_table("time_slots")
    op.drop_table("routes")
