"""
SQLAlchemy ORM models.

Purpose:
- Carpool catalogue (Route, TimeSlot, PickupPoint) read by pricing and matching
- Wallet ledger (Wallet, WalletTransaction)
- Subscription lifecycle and billing (Subscription, SubscriptionInvoice)
- Trip generation output (TripSlotRun, Trip, TripBooking)
- BlackoutDate and CashSettlementRecord

Notes:
- Money is Numeric(12, 2) -> decimal.Decimal, never float
- Wallet and Subscription carry a version column (optimistic concurrency)
- user_id is a business key owned by the external auth service; no users table here
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, Date, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from core.db import Base

MONEY = Numeric(12, 2, asdecimal=True)


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Route(Base):
    """
    A carpool route offered for subscription.

    Columns:
    - route_id: business key (e.g., "R1")
    - price_per_seat: price of one seat on one trip
    - discount_amount: flat monthly discount applied by the cost calculator
    """
    __tablename__ = "routes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    route_id = Column(String(50), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=False)
    price_per_seat = Column(MONEY, nullable=False)
    discount_amount = Column(MONEY, nullable=False, default=0)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class TimeSlot(Base):
    __tablename__ = "time_slots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    time_slot_id = Column(String(50), unique=True, index=True, nullable=False)
    route_id = Column(String(50), ForeignKey("routes.route_id"), nullable=False, index=True)
    departure_time = Column(String(10), nullable=False)  # "08:30"


class PickupPoint(Base):
    """Boarding / drop-off point; lower sequence_order is picked up earlier."""
    __tablename__ = "pickup_points"

    id = Column(Integer, primary_key=True, autoincrement=True)
    point_id = Column(String(50), unique=True, index=True, nullable=False)
    route_id = Column(String(50), ForeignKey("routes.route_id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    sequence_order = Column(Integer, nullable=False, default=0)


class Wallet(Base):
    """
    One wallet per user. balance is a cache of sum(WalletTransaction.amount)
    and is only ever written by services.wallet_ledger.
    """
    __tablename__ = "wallets"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(100), unique=True, index=True, nullable=False)
    balance = Column(MONEY, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}


class WalletTransaction(Base):
    """Immutable ledger entry; corrections are new offsetting entries."""
    __tablename__ = "wallet_transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)  # signed: credits > 0, debits < 0
    type = Column(String(10), nullable=False)
    category = Column(String(30), nullable=False, index=True)
    description = Column(String(500), nullable=False)
    balance_after = Column(MONEY, nullable=False)
    reference_id = Column(String(100), nullable=True, index=True)
    performed_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)


class Subscription(Base):
    """
    Recurring seat reservation on a route/time-slot for a set of weekdays
    (0=Monday .. 6=Sunday). Mutated only by services.subscription_service
    and services.billing_service; never deleted.
    """
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(100), index=True, nullable=False)
    route_id = Column(String(50), ForeignKey("routes.route_id"), nullable=False, index=True)
    time_slot_id = Column(String(50), ForeignKey("time_slots.time_slot_id"), nullable=False, index=True)
    boarding_point_id = Column(String(50), ForeignKey("pickup_points.point_id"), nullable=False)
    drop_off_point_id = Column(String(50), ForeignKey("pickup_points.point_id"), nullable=False)
    weekdays = Column(JSON, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False, index=True)
    price_per_trip = Column(MONEY, nullable=False)
    total_monthly_price = Column(MONEY, nullable=False)
    discount_amount = Column(MONEY, nullable=False, default=0)
    payment_method = Column(String(10), nullable=False)
    status = Column(String(30), nullable=False, default="active", index=True)
    cancellation_date = Column(Date, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __mapper_args__ = {"version_id_col": version}


class SubscriptionInvoice(Base):
    __tablename__ = "subscription_invoices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invoice_number = Column(String(30), unique=True, index=True, nullable=False)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    billing_month = Column(String(7), nullable=False)  # YYYY-MM
    amount_due = Column(MONEY, nullable=False)
    amount_paid = Column(MONEY, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending", index=True)
    due_date = Column(Date, nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    wallet_transaction_id = Column(String(36), ForeignKey("wallet_transactions.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("subscription_id", "billing_month", name="ux_invoice_subscription_month"),
    )


class TripSlotRun(Base):
    """
    Idempotency key for trip generation. A row exists once a
    (service_date, route, time slot) has been processed; concurrent runs
    collide on the unique constraint instead of duplicating trips.
    """
    __tablename__ = "trip_slot_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_date = Column(Date, nullable=False)
    route_id = Column(String(50), nullable=False)
    time_slot_id = Column(String(50), nullable=False)
    outcome = Column(String(30), nullable=False)
    booking_count = Column(Integer, nullable=False, default=0)
    generated_by = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("service_date", "route_id", "time_slot_id", name="ux_trip_slot_run_key"),
    )

    trips = relationship("Trip", back_populates="slot_run", lazy="selectin")


class Trip(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_reference_id = Column(String(20), unique=True, index=True, nullable=False)
    slot_run_id = Column(Integer, ForeignKey("trip_slot_runs.id"), nullable=False, index=True)
    service_date = Column(Date, nullable=False, index=True)
    route_id = Column(String(50), nullable=False, index=True)
    time_slot_id = Column(String(50), nullable=False)
    vehicle_tier = Column(String(20), nullable=False)
    vehicle_capacity = Column(Integer, nullable=False)
    generated_by = Column(String(20), nullable=False)
    rationale = Column(String(500), nullable=True)
    # set by the external driver-assignment flow
    driver_id = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    slot_run = relationship("TripSlotRun", back_populates="trips", lazy="raise")
    bookings = relationship(
        "TripBooking",
        back_populates="trip",
        lazy="selectin",
        order_by="TripBooking.pickup_sequence",
    )


class TripBooking(Base):
    __tablename__ = "trip_bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id = Column(String(100), nullable=False)
    boarding_point_id = Column(String(50), nullable=False)
    drop_off_point_id = Column(String(50), nullable=False)
    pickup_sequence = Column(Integer, nullable=False)

    trip = relationship("Trip", back_populates="bookings", lazy="raise")


class BlackoutDate(Base):
    """Inclusive date range with no trips; from the holiday calendar or manual entry."""
    __tablename__ = "blackout_dates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    start_date = Column(Date, nullable=False, index=True)
    end_date = Column(Date, nullable=False, index=True)
    source = Column(String(30), nullable=False, default="manual")
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class CashSettlementRecord(Base):
    __tablename__ = "cash_settlement_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    service_date = Column(Date, nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    acknowledged_by = Column(String(100), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("subscription_id", "service_date", name="ux_cash_settlement_sub_date"),
    )
