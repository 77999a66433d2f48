"""
Subscription lifecycle.

States:
    active -> pending_cancellation -> cancelled
    active -> cancelled            (admin cancel, prorated refund)
    active -> expired              (period ended without renewal)
cancelled and expired are terminal; nothing leaves them.

Every transition:
- holds the per-subscription asyncio lock (then, if money moves, the
  ledger takes the per-wallet lock: always subscription before wallet)
- re-reads the row FOR UPDATE and re-checks the state under the lock
- commits through the version column; a lost race (StaleDataError) is
  retried, and the retry sees the winner's state
"""
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Iterable, Optional

from sqlalchemy import and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config.settings import settings
from core.clock import local_today
from core.exceptions import ConcurrencyConflict, NotFound, ValidationError
from core.locks import subscription_locks
from core.response import money
from models.db_models import PickupPoint, Route, Subscription, SubscriptionInvoice, TimeSlot
from models.enums import InvoiceStatus, PaymentMethod, SubscriptionStatus, TransactionCategory
from services.billing_service import add_months, billing_month_of, new_invoice_number
from services.cost_calculator import CENT, CostBreakdown, calculate_for_route, normalize_weekdays, to_money
from services.notification_service import NotificationService, notification_service
from services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)


def prorated_refund(total_price, start_date: date, end_date: date, today: date) -> Decimal:
    """
    Unused share of the period price.

    remaining = max(0, end - today) days, total = end - start days;
    0 when total <= 0; never more than the price.
    """
    price = to_money(total_price)
    total_days = (end_date - start_date).days
    if total_days <= 0:
        return Decimal("0.00")
    remaining_days = max(0, (end_date - today).days)
    refund = (price * remaining_days / total_days).quantize(CENT, rounding=ROUND_HALF_UP)
    return min(refund, price)


class SubscriptionService:
    def __init__(self, session: AsyncSession, ledger: Optional[WalletLedger] = None,
                 notifier: Optional[NotificationService] = None):
        self.session = session
        self.ledger = ledger or WalletLedger(session)
        self.notifier = notifier or notification_service

    # ------------- queries -------------
    async def get(self, subscription_id: str) -> Subscription:
        subscription = await self.session.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")
        return subscription

    async def list_subscriptions(self, status: Optional[str] = None, user_id: Optional[str] = None,
                                 route_id: Optional[str] = None,
                                 payment_method: Optional[str] = None) -> list[Subscription]:
        stmt = select(Subscription).order_by(Subscription.created_at.desc(), Subscription.id)
        if status:
            stmt = stmt.where(Subscription.status == SubscriptionStatus(status).value)
        if user_id:
            stmt = stmt.where(Subscription.user_id == user_id)
        if route_id:
            stmt = stmt.where(Subscription.route_id == route_id)
        if payment_method:
            stmt = stmt.where(Subscription.payment_method == PaymentMethod(payment_method).value)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _get_route(self, route_id: str) -> Route:
        result = await self.session.execute(select(Route).where(Route.route_id == route_id))
        route = result.scalar_one_or_none()
        if route is None or not route.is_active:
            raise NotFound(f"Route {route_id} not found")
        return route

    async def preview_cost(self, route_id: str, weekdays: Iterable[int]) -> CostBreakdown:
        route = await self._get_route(route_id)
        return calculate_for_route(route, weekdays)

    async def _validate_slot_and_points(self, route_id: str, time_slot_id: str,
                                        boarding_point_id: str, drop_off_point_id: str) -> None:
        slot = await self.session.execute(
            select(TimeSlot.id).where(TimeSlot.time_slot_id == time_slot_id).where(TimeSlot.route_id == route_id)
        )
        if slot.first() is None:
            raise ValidationError(f"Time slot {time_slot_id} does not belong to route {route_id}")
        if boarding_point_id == drop_off_point_id:
            raise ValidationError("Boarding and drop-off points must differ")
        result = await self.session.execute(
            select(PickupPoint.point_id)
            .where(PickupPoint.route_id == route_id)
            .where(PickupPoint.point_id.in_([boarding_point_id, drop_off_point_id]))
        )
        found = set(result.scalars().all())
        for point_id in (boarding_point_id, drop_off_point_id):
            if point_id not in found:
                raise ValidationError(f"Point {point_id} does not belong to route {route_id}")

    # ------------- purchase -------------
    async def purchase(self, user_id: str, route_id: str, weekdays: Iterable[int], time_slot_id: str,
                       boarding_point_id: str, drop_off_point_id: str, start_date: date,
                       payment_method: str, today: Optional[date] = None) -> Subscription:
        """
        Create an active subscription for one billing period.

        online: the first period is debited from the wallet and a paid
        invoice recorded, in the same transaction as the subscription row.
        InsufficientBalance leaves nothing behind.
        cash: a pending invoice is recorded; no wallet movement.
        """
        days = normalize_weekdays(weekdays)
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError("payment_method must be 'cash' or 'online'")
        today = today or local_today()
        if start_date < today:
            raise ValidationError("start_date must not be in the past")

        route = await self._get_route(route_id)
        await self._validate_slot_and_points(route_id, time_slot_id, boarding_point_id, drop_off_point_id)
        breakdown = calculate_for_route(route, days)

        subscription = Subscription(
            user_id=user_id,
            route_id=route_id,
            time_slot_id=time_slot_id,
            boarding_point_id=boarding_point_id,
            drop_off_point_id=drop_off_point_id,
            weekdays=days,
            start_date=start_date,
            end_date=add_months(start_date, settings.BILLING_PERIOD_MONTHS),
            price_per_trip=breakdown.price_per_seat,
            total_monthly_price=breakdown.monthly_cost,
            discount_amount=breakdown.discount_amount,
            payment_method=method.value,
            status=SubscriptionStatus.ACTIVE.value,
        )
        invoice = SubscriptionInvoice(
            invoice_number=new_invoice_number(start_date),
            user_id=user_id,
            billing_month=billing_month_of(start_date),
            amount_due=breakdown.monthly_cost,
            amount_paid=0,
            status=InvoiceStatus.PENDING.value,
            due_date=start_date,
        )
        try:
            self.session.add(subscription)
            await self.session.flush()
            invoice.subscription_id = subscription.id
            if method == PaymentMethod.ONLINE:
                if breakdown.monthly_cost > 0:
                    tx = await self.ledger.debit(
                        user_id,
                        breakdown.monthly_cost,
                        TransactionCategory.SUBSCRIPTION_CHARGE,
                        f"Subscription {route_id} {billing_month_of(start_date)}",
                        reference_id=invoice.invoice_number,
                        commit=False,
                    )
                    invoice.wallet_transaction_id = tx.id
                invoice.status = InvoiceStatus.PAID.value
                invoice.amount_paid = breakdown.monthly_cost
                invoice.paid_at = datetime.now(timezone.utc)
            self.session.add(invoice)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info("Subscription %s purchased: user=%s route=%s slot=%s days=%s method=%s price=%s",
                    subscription.id, user_id, route_id, time_slot_id, days, method.value, breakdown.monthly_cost)
        await self.notifier.notify(
            user_id,
            f"Subscription confirmed on {route.name} from {start_date} to {subscription.end_date}: "
            f"{money(breakdown.monthly_cost)} ({method.value}).",
            event="subscription.purchased",
        )
        return subscription

    # ------------- transitions -------------
    async def _transition(self, subscription_id: str, apply: Callable):
        """
        Run `apply(subscription)` on a freshly locked row and commit.
        apply may raise to abort (nothing is committed) and may await.
        """
        async with subscription_locks.hold(subscription_id):
            for attempt in range(1, settings.WALLET_MAX_RETRIES + 1):
                try:
                    result = await self.session.execute(
                        select(Subscription)
                        .where(Subscription.id == subscription_id)
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    )
                    subscription = result.scalar_one_or_none()
                    if subscription is None:
                        raise NotFound(f"Subscription {subscription_id} not found")
                    outcome = await apply(subscription)
                    await self.session.commit()
                    return subscription, outcome
                except StaleDataError:
                    await self.session.rollback()
                    logger.warning("Subscription %s changed concurrently (attempt %s)", subscription_id, attempt)
                except Exception:
                    await self.session.rollback()
                    raise
            raise ConcurrencyConflict(f"Subscription {subscription_id} kept changing; retry later")

    async def cancel(self, subscription_id: str, reason: str, today: Optional[date] = None,
                     admin_id: Optional[str] = None) -> dict:
        """
        Admin cancellation with a prorated refund to the wallet (online only).
        Returns {"refund_amount": Decimal, "subscription": Subscription}.
        """
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")
        today = today or local_today()

        async def apply(subscription: Subscription):
            if SubscriptionStatus(subscription.status).is_terminal:
                raise ValidationError(f"Subscription is already {subscription.status}")
            refund = Decimal("0.00")
            if subscription.payment_method == PaymentMethod.ONLINE.value:
                refund = prorated_refund(subscription.total_monthly_price, subscription.start_date,
                                         subscription.end_date, today)
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.cancellation_date = today
            subscription.cancellation_reason = reason.strip()
            if refund > 0:
                await self.ledger.credit(
                    subscription.user_id,
                    refund,
                    TransactionCategory.REFUND,
                    f"Prorated refund: {reason.strip()}",
                    reference_id=subscription.id,
                    performed_by=admin_id,
                    commit=False,
                )
            return refund

        subscription, refund = await self._transition(subscription_id, apply)
        logger.info("Subscription %s cancelled by %s on %s, refund=%s",
                    subscription_id, admin_id or "-", today, refund)
        message = "Your subscription has been cancelled."
        if refund > 0:
            message += f" {money(refund)} was refunded to your wallet."
        await self.notifier.notify(subscription.user_id, message, event="subscription.cancelled")
        return {"refund_amount": refund, "subscription": subscription}

    async def request_cancellation(self, subscription_id: str, user_id: str, reason: Optional[str] = None) -> Subscription:
        """Self-service: stop at period end, no refund."""

        async def apply(subscription: Subscription):
            if subscription.user_id != user_id:
                raise NotFound(f"Subscription {subscription_id} not found")
            if subscription.status != SubscriptionStatus.ACTIVE.value:
                raise ValidationError(f"Only active subscriptions can be cancelled (status={subscription.status})")
            subscription.status = SubscriptionStatus.PENDING_CANCELLATION.value
            subscription.cancellation_reason = (reason or "").strip() or None

        subscription, _ = await self._transition(subscription_id, apply)
        logger.info("Subscription %s pending cancellation at %s", subscription_id, subscription.end_date)
        await self.notifier.notify(
            user_id,
            f"Cancellation requested. Your subscription stays active until {subscription.end_date}.",
            event="subscription.cancellation_requested",
        )
        return subscription

    async def edit_dates(self, subscription_id: str, new_start: date, new_end: date) -> Subscription:
        """Admin correction of the period; no invoice or wallet side effects."""
        if new_start >= new_end:
            raise ValidationError("start_date must be before end_date")

        async def apply(subscription: Subscription):
            if SubscriptionStatus(subscription.status).is_terminal:
                raise ValidationError(f"Cannot edit a {subscription.status} subscription")
            subscription.start_date = new_start
            subscription.end_date = new_end

        subscription, _ = await self._transition(subscription_id, apply)
        logger.info("Subscription %s dates set to %s..%s", subscription_id, new_start, new_end)
        return subscription

    async def expire_sweep(self, today: Optional[date] = None) -> dict:
        """
        Finalize subscriptions whose period has passed:
        active -> expired, pending_cancellation -> cancelled.

        Active subscriptions with a failed renewal invoice are left to the
        billing retry (grace period). Safe to run any number of times.
        """
        today = today or local_today()
        in_grace = select(SubscriptionInvoice.subscription_id).where(
            SubscriptionInvoice.status == InvoiceStatus.FAILED.value
        )
        result = await self.session.execute(
            select(Subscription.id)
            .where(Subscription.end_date < today)
            .where(or_(
                and_(Subscription.status == SubscriptionStatus.ACTIVE.value, Subscription.id.not_in(in_grace)),
                Subscription.status == SubscriptionStatus.PENDING_CANCELLATION.value,
            ))
        )
        counts = {"expired": 0, "cancelled": 0}

        async def apply(subscription: Subscription):
            if subscription.end_date >= today:
                return None
            if subscription.status == SubscriptionStatus.ACTIVE.value:
                subscription.status = SubscriptionStatus.EXPIRED.value
                return "expired"
            if subscription.status == SubscriptionStatus.PENDING_CANCELLATION.value:
                subscription.status = SubscriptionStatus.CANCELLED.value
                subscription.cancellation_date = subscription.end_date
                return "cancelled"
            # went terminal since the scan
            return None

        for subscription_id in result.scalars().all():
            subscription, outcome = await self._transition(subscription_id, apply)
            if outcome:
                counts[outcome] += 1
                logger.info("Sweep: subscription %s %s (end_date=%s)", subscription_id, outcome, subscription.end_date)
        logger.info("Expiry sweep %s: %s", today, counts)
        return counts

    @staticmethod
    def to_dict(subscription: Subscription) -> dict:
        return {
            "id": subscription.id,
            "user_id": subscription.user_id,
            "route_id": subscription.route_id,
            "time_slot_id": subscription.time_slot_id,
            "boarding_point_id": subscription.boarding_point_id,
            "drop_off_point_id": subscription.drop_off_point_id,
            "weekdays": list(subscription.weekdays or []),
            "start_date": subscription.start_date.isoformat(),
            "end_date": subscription.end_date.isoformat(),
            "price_per_trip": money(subscription.price_per_trip),
            "total_monthly_price": money(subscription.total_monthly_price),
            "discount_amount": money(subscription.discount_amount),
            "payment_method": subscription.payment_method,
            "status": subscription.status,
            "cancellation_date": subscription.cancellation_date.isoformat() if subscription.cancellation_date else None,
            "cancellation_reason": subscription.cancellation_reason,
        }
