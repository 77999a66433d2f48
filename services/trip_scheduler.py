"""
Trip generation scheduler.

Daily batch (TRIP_GENERATION_HOUR local time, for the next
TRIP_GENERATION_HORIZON_DAYS days) that turns active subscriptions into
trips:

for each service date, unless it is a blackout date:
    for each (route, time slot) with eligible bookings:
        < MIN_PASSENGERS_PER_TRIP -> no trip; cash bookings get a settlement
                                     record, online bookings go to the
                                     OnlineShortfallPolicy
        otherwise                 -> matcher (optimizer, deterministic fallback)
        persist TripSlotRun + trips + bookings in one transaction

Idempotency: trip_slot_runs is unique on (service_date, route, time slot).
A key that already has a run, or loses the insert race to a concurrent run,
is reported as already_processed and nothing is written. A failure in one
key is reported and never aborts the others.
"""
import base64
import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config.settings import settings
from core.clock import local_today
from core.exceptions import ValidationError
from infra.redis_client import run_lock
from models.db_models import PickupPoint, Subscription, Trip, TripBooking, TripSlotRun
from models.enums import PaymentMethod, SlotOutcome, SubscriptionStatus
from services.cash_settlement_service import CashSettlementService
from services.holiday_calendar import HolidayCalendar
from services.notification_service import NotificationService, notification_service
from services.policies import OnlineShortfallPolicy, shortfall_policy_from_settings
from services.trip_matcher import FallbackTripMatcher, MatchResult, Passenger, default_matcher
from services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "already_processed"
ERROR = "error"

# A pending cancellation keeps riding until its end date
RIDING_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PENDING_CANCELLATION.value)


def new_trip_reference() -> str:
    """TRP- followed by 8 base32 characters (40 random bits)."""
    return "TRP-" + base64.b32encode(secrets.token_bytes(5)).decode("ascii")


@dataclass
class SlotReport:
    service_date: date
    route_id: str
    time_slot_id: str
    outcome: str
    bookings: int = 0
    trips: List[dict] = field(default_factory=list)
    generated_by: Optional[str] = None
    fallback_reason: Optional[str] = None
    cash_flagged: int = 0
    shortfall_actions: List[dict] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "service_date": self.service_date.isoformat(),
            "route_id": self.route_id,
            "time_slot_id": self.time_slot_id,
            "outcome": self.outcome,
            "bookings": self.bookings,
            "trips": self.trips,
            "generated_by": self.generated_by,
            "fallback_reason": self.fallback_reason,
            "cash_flagged": self.cash_flagged,
            "shortfall_actions": [
                {k: (str(v) if k == "amount" else v) for k, v in action.items()}
                for action in self.shortfall_actions
            ],
            "error": self.error,
        }


@dataclass
class RunReport:
    start_date: date
    end_date: date
    dry_run: bool = False
    locked_out: bool = False
    blackouts: List[dict] = field(default_factory=list)
    slots: List[SlotReport] = field(default_factory=list)

    @property
    def trips_created(self) -> int:
        if self.dry_run:
            return 0
        return sum(len(s.trips) for s in self.slots if s.outcome == SlotOutcome.TRIPS_CREATED.value)

    @property
    def passengers_assigned(self) -> int:
        return sum(s.bookings for s in self.slots if s.outcome == SlotOutcome.TRIPS_CREATED.value)

    @property
    def cash_flagged(self) -> int:
        return sum(s.cash_flagged for s in self.slots)

    @property
    def errors(self) -> List[dict]:
        return [s.to_dict() for s in self.slots if s.outcome == ERROR]

    def count(self, outcome: str) -> int:
        return sum(1 for s in self.slots if s.outcome == outcome)

    def strategies(self) -> dict:
        used = {}
        for s in self.slots:
            if s.generated_by:
                used[s.generated_by] = used.get(s.generated_by, 0) + 1
        return used

    def summary(self) -> dict:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "dry_run": self.dry_run,
            "locked_out": self.locked_out,
            "trips_created": self.trips_created,
            "passengers_assigned": self.passengers_assigned,
            "below_threshold": self.count(SlotOutcome.BELOW_THRESHOLD.value),
            "already_processed": self.count(ALREADY_PROCESSED),
            "cash_flagged": self.cash_flagged,
            "blackout_dates": len(self.blackouts),
            "strategies": self.strategies(),
            "errors": len(self.errors),
        }

    def to_dict(self) -> dict:
        data = self.summary()
        data["blackouts"] = self.blackouts
        data["slots"] = [s.to_dict() for s in self.slots]
        return data


class TripGenerationScheduler:
    def __init__(self, session: AsyncSession, matcher: Optional[FallbackTripMatcher] = None,
                 calendar: Optional[HolidayCalendar] = None,
                 reconciler: Optional[CashSettlementService] = None,
                 shortfall_policy: Optional[OnlineShortfallPolicy] = None,
                 notifier: Optional[NotificationService] = None,
                 ledger: Optional[WalletLedger] = None,
                 min_passengers: Optional[int] = None):
        self.session = session
        self.matcher = matcher or default_matcher()
        self.calendar = calendar or HolidayCalendar(session)
        self.reconciler = reconciler or CashSettlementService(session)
        self.shortfall_policy = shortfall_policy or shortfall_policy_from_settings()
        self.notifier = notifier or notification_service
        self.ledger = ledger or WalletLedger(session)
        self.min_passengers = min_passengers or settings.MIN_PASSENGERS_PER_TRIP

    async def run_for_horizon(self, today: Optional[date] = None, dry_run: bool = False) -> RunReport:
        today = today or local_today()
        horizon = max(1, settings.TRIP_GENERATION_HORIZON_DAYS)
        return await self.run(today + timedelta(days=1), today + timedelta(days=horizon), dry_run=dry_run)

    async def run(self, start_date: date, end_date: Optional[date] = None, dry_run: bool = False) -> RunReport:
        end_date = end_date or start_date
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        report = RunReport(start_date=start_date, end_date=end_date, dry_run=dry_run)

        lock_name = f"trip-generation:{start_date.isoformat()}:{end_date.isoformat()}"
        async with run_lock(lock_name, settings.TRIP_RUN_LOCK_TTL_SECONDS) as acquired:
            if not acquired:
                report.locked_out = True
                logger.warning("Trip generation %s..%s skipped: another run holds the lock", start_date, end_date)
                return report
            day = start_date
            while day <= end_date:
                await self._run_day(day, report)
                day += timedelta(days=1)

        logger.info("Trip generation %s..%s: %s", start_date, end_date, report.summary())
        if not dry_run:
            await self._notify_ops(report)
        return report

    async def _run_day(self, day: date, report: RunReport) -> None:
        blackout = await self.calendar.blackout_for(day)
        if blackout is not None:
            logger.info("No trips on %s: blackout %r", day, blackout.name)
            report.blackouts.append({"date": day.isoformat(), "name": blackout.name})
            return
        for route_id, time_slot_id in await self._slot_keys(day):
            slot = await self._process_slot(day, route_id, time_slot_id, report.dry_run)
            if slot is not None:
                report.slots.append(slot)

    async def _slot_keys(self, day: date) -> list[tuple[str, str]]:
        result = await self.session.execute(
            select(Subscription.route_id, Subscription.time_slot_id)
            .where(Subscription.status.in_(RIDING_STATUSES))
            .where(Subscription.start_date <= day)
            .where(Subscription.end_date >= day)
            .distinct()
            .order_by(Subscription.route_id, Subscription.time_slot_id)
        )
        return [(row[0], row[1]) for row in result.all()]

    async def _existing_run(self, day: date, route_id: str, time_slot_id: str) -> TripSlotRun | None:
        result = await self.session.execute(
            select(TripSlotRun)
            .where(TripSlotRun.service_date == day)
            .where(TripSlotRun.route_id == route_id)
            .where(TripSlotRun.time_slot_id == time_slot_id)
        )
        return result.scalar_one_or_none()

    async def eligible_bookings(self, day: date, route_id: str, time_slot_id: str) -> list[tuple[Subscription, Passenger]]:
        """Riding subscriptions on this route/slot whose weekdays include `day`."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.status.in_(RIDING_STATUSES))
            .where(Subscription.route_id == route_id)
            .where(Subscription.time_slot_id == time_slot_id)
            .where(Subscription.start_date <= day)
            .where(Subscription.end_date >= day)
            .order_by(Subscription.id)
        )
        subscriptions = [s for s in result.scalars().all() if day.weekday() in (s.weekdays or [])]
        if not subscriptions:
            return []

        points = await self.session.execute(
            select(PickupPoint.point_id, PickupPoint.sequence_order).where(PickupPoint.route_id == route_id)
        )
        sequence = {point_id: order for point_id, order in points.all()}
        return [
            (s, Passenger(
                subscription_id=s.id,
                user_id=s.user_id,
                boarding_point_id=s.boarding_point_id,
                drop_off_point_id=s.drop_off_point_id,
                boarding_sequence=sequence.get(s.boarding_point_id, 0),
                payment_method=s.payment_method,
            ))
            for s in subscriptions
        ]

    async def _process_slot(self, day: date, route_id: str, time_slot_id: str, dry_run: bool) -> SlotReport | None:
        slot = SlotReport(service_date=day, route_id=route_id, time_slot_id=time_slot_id, outcome=ALREADY_PROCESSED)
        try:
            existing = await self._existing_run(day, route_id, time_slot_id)
            if existing is not None:
                slot.bookings = existing.booking_count
                return slot

            bookings = await self.eligible_bookings(day, route_id, time_slot_id)
            if not bookings:
                return None
            slot.bookings = len(bookings)

            if len(bookings) < self.min_passengers:
                await self._below_threshold(slot, bookings, dry_run)
            else:
                passengers = [p for _, p in bookings]
                match = await self.matcher.match(route_id, time_slot_id, day, passengers)
                await self._create_trips(slot, match, dry_run)
        except IntegrityError:
            await self.session.rollback()
            logger.info("Slot %s %s/%s already processed by a concurrent run", day, route_id, time_slot_id)
            slot.outcome = ALREADY_PROCESSED
            slot.trips, slot.cash_flagged, slot.shortfall_actions = [], 0, []
            return slot
        except Exception as e:
            await self.session.rollback()
            logger.exception("Trip generation failed for %s %s/%s", day, route_id, time_slot_id)
            slot.outcome = ERROR
            slot.error = f"{type(e).__name__}: {e}"
            slot.trips, slot.cash_flagged, slot.shortfall_actions = [], 0, []
            return slot

        if not dry_run:
            await self._notify_slot(slot, bookings)
        return slot

    async def _below_threshold(self, slot: SlotReport, bookings, dry_run: bool) -> None:
        slot.outcome = SlotOutcome.BELOW_THRESHOLD.value
        cash = [s for s, _ in bookings if s.payment_method == PaymentMethod.CASH.value]
        online = [s for s, _ in bookings if s.payment_method != PaymentMethod.CASH.value]
        if dry_run:
            slot.cash_flagged = len(cash)
            return

        self.session.add(TripSlotRun(
            service_date=slot.service_date,
            route_id=slot.route_id,
            time_slot_id=slot.time_slot_id,
            outcome=SlotOutcome.BELOW_THRESHOLD.value,
            booking_count=slot.bookings,
        ))
        await self.session.flush()
        for subscription in cash:
            _, created = await self.reconciler.flag_pending(subscription.id, slot.service_date, commit=False)
            if created:
                slot.cash_flagged += 1
        for subscription in online:
            slot.shortfall_actions.append(
                await self.shortfall_policy.apply(self.ledger, subscription, slot.service_date)
            )
        await self.session.commit()
        logger.info("Slot %s %s/%s below threshold (%s < %s): %s cash flagged",
                    slot.service_date, slot.route_id, slot.time_slot_id,
                    slot.bookings, self.min_passengers, slot.cash_flagged)

    async def _create_trips(self, slot: SlotReport, match: MatchResult, dry_run: bool) -> None:
        slot.outcome = SlotOutcome.TRIPS_CREATED.value
        slot.generated_by = match.generated_by.value
        slot.fallback_reason = match.fallback_reason
        if dry_run:
            slot.trips = [
                {"trip_reference_id": None, "vehicle_tier": g.tier.name, "vehicle_capacity": g.tier.capacity,
                 "subscription_ids": [p.subscription_id for p in g.passengers]}
                for g in match.groups
            ]
            return

        run = TripSlotRun(
            service_date=slot.service_date,
            route_id=slot.route_id,
            time_slot_id=slot.time_slot_id,
            outcome=SlotOutcome.TRIPS_CREATED.value,
            booking_count=slot.bookings,
            generated_by=match.generated_by.value,
        )
        self.session.add(run)
        await self.session.flush()

        for group in match.groups:
            trip = Trip(
                trip_reference_id=new_trip_reference(),
                slot_run_id=run.id,
                service_date=slot.service_date,
                route_id=slot.route_id,
                time_slot_id=slot.time_slot_id,
                vehicle_tier=group.tier.name,
                vehicle_capacity=group.tier.capacity,
                generated_by=match.generated_by.value,
                rationale=group.rationale,
            )
            self.session.add(trip)
            await self.session.flush()
            for sequence, passenger in enumerate(group.passengers, start=1):
                self.session.add(TripBooking(
                    trip_id=trip.id,
                    subscription_id=passenger.subscription_id,
                    user_id=passenger.user_id,
                    boarding_point_id=passenger.boarding_point_id,
                    drop_off_point_id=passenger.drop_off_point_id,
                    pickup_sequence=sequence,
                ))
            slot.trips.append({
                "trip_reference_id": trip.trip_reference_id,
                "vehicle_tier": group.tier.name,
                "vehicle_capacity": group.tier.capacity,
                "subscription_ids": [p.subscription_id for p in group.passengers],
            })
        await self.session.commit()
        logger.info("Slot %s %s/%s: %s trip(s) for %s passenger(s) via %s",
                    slot.service_date, slot.route_id, slot.time_slot_id,
                    len(slot.trips), slot.bookings, slot.generated_by)

    async def _notify_slot(self, slot: SlotReport, bookings) -> None:
        if slot.outcome == SlotOutcome.BELOW_THRESHOLD.value:
            for subscription, _ in bookings:
                await self.notifier.notify(
                    subscription.user_id,
                    f"Not enough passengers for your {slot.time_slot_id} ride on {slot.service_date}; "
                    "no trip will run that day.",
                    event="trip.not_running",
                )
        elif slot.outcome == SlotOutcome.TRIPS_CREATED.value:
            for trip in slot.trips:
                await self.notifier.notify(
                    settings.OPS_NOTIFY_USER_ID,
                    f"Driver needed: {trip['trip_reference_id']} {slot.route_id}/{slot.time_slot_id} "
                    f"on {slot.service_date} ({trip['vehicle_tier']}, {len(trip['subscription_ids'])} passengers).",
                    event="trip.driver_assignment_needed",
                )

    async def _notify_ops(self, report: RunReport) -> None:
        s = report.summary()
        await self.notifier.notify(
            settings.OPS_NOTIFY_USER_ID,
            f"Trip generation {s['start_date']}..{s['end_date']}: {s['trips_created']} trips, "
            f"{s['passengers_assigned']} passengers, {s['below_threshold']} below threshold, "
            f"{s['cash_flagged']} cash flags, {s['blackout_dates']} blackout dates, {s['errors']} errors. "
            f"Strategies: {s['strategies'] or 'none'}.",
            event="trip_generation.summary",
        )

    async def list_trips(self, service_date: Optional[date] = None, route_id: Optional[str] = None) -> list[Trip]:
        stmt = (
            select(Trip)
            .order_by(Trip.service_date, Trip.route_id, Trip.time_slot_id, Trip.id)
            .execution_options(populate_existing=True)
        )
        if service_date:
            stmt = stmt.where(Trip.service_date == service_date)
        if route_id:
            stmt = stmt.where(Trip.route_id == route_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def trip_to_dict(trip: Trip) -> dict:
        return {
            "trip_reference_id": trip.trip_reference_id,
            "service_date": trip.service_date.isoformat(),
            "route_id": trip.route_id,
            "time_slot_id": trip.time_slot_id,
            "vehicle_tier": trip.vehicle_tier,
            "vehicle_capacity": trip.vehicle_capacity,
            "generated_by": trip.generated_by,
            "rationale": trip.rationale,
            "driver_id": trip.driver_id,
            "passengers": [
                {
                    "pickup_sequence": b.pickup_sequence,
                    "subscription_id": b.subscription_id,
                    "user_id": b.user_id,
                    "boarding_point_id": b.boarding_point_id,
                    "drop_off_point_id": b.drop_off_point_id,
                }
                for b in trip.bookings
            ],
        }
