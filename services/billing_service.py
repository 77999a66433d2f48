"""
Billing / invoice generator.

Once a day (workers/daily_jobs_worker.py, or POST /internal/billing/run):
- every active subscription whose period ends on or before today gets one
  invoice for its next period (idempotent per subscription + billing month)
- online: the wallet is debited; paid -> the period is extended,
  insufficient balance -> invoice failed, InvoiceFailurePolicy decides
  whether the subscription expires now or after a grace period
- cash: the invoice stays pending (collected by the driver) and the
  period is extended

Periods are [start_date, end_date); a renewal moves start_date to the old
end_date and end_date forward by BILLING_PERIOD_MONTHS.
"""
import calendar
import logging
import secrets
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config.settings import settings
from core.clock import local_today
from core.exceptions import EngineError, InsufficientBalance, NotFound, ValidationError
from core.locks import subscription_locks
from core.response import money
from models.db_models import Subscription, SubscriptionInvoice
from models.enums import InvoiceStatus, PaymentMethod, SubscriptionStatus, TransactionCategory
from services.cost_calculator import to_money
from services.notification_service import NotificationService, notification_service
from services.policies import InvoiceFailurePolicy, invoice_failure_policy_from_settings
from services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

_INVOICE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def add_months(day: date, months: int) -> date:
    """Same day-of-month `months` later, clamped to the end of shorter months."""
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def billing_month_of(day: date) -> str:
    return day.strftime("%Y-%m")


def new_invoice_number(period_start: date) -> str:
    """INV-YYYYMM-XXXXXX"""
    suffix = "".join(secrets.choice(_INVOICE_ALPHABET) for _ in range(6))
    return f"INV-{period_start:%Y%m}-{suffix}"


def extend_period(subscription: Subscription) -> None:
    subscription.start_date = subscription.end_date
    subscription.end_date = add_months(subscription.end_date, settings.BILLING_PERIOD_MONTHS)


class BillingService:
    def __init__(self, session: AsyncSession, ledger: Optional[WalletLedger] = None,
                 failure_policy: Optional[InvoiceFailurePolicy] = None,
                 notifier: Optional[NotificationService] = None):
        self.session = session
        self.ledger = ledger or WalletLedger(session)
        self.failure_policy = failure_policy or invoice_failure_policy_from_settings()
        self.notifier = notifier or notification_service

    # ------------- queries -------------
    async def get_invoice(self, invoice_number: str) -> SubscriptionInvoice:
        result = await self.session.execute(
            select(SubscriptionInvoice).where(SubscriptionInvoice.invoice_number == invoice_number)
        )
        invoice = result.scalar_one_or_none()
        if invoice is None:
            raise NotFound(f"Invoice {invoice_number} not found")
        return invoice

    async def list_invoices(self, status: Optional[str] = None, user_id: Optional[str] = None,
                            subscription_id: Optional[str] = None) -> list[SubscriptionInvoice]:
        stmt = select(SubscriptionInvoice).order_by(SubscriptionInvoice.created_at.desc(), SubscriptionInvoice.id.desc())
        if status:
            stmt = stmt.where(SubscriptionInvoice.status == InvoiceStatus(status).value)
        if user_id:
            stmt = stmt.where(SubscriptionInvoice.user_id == user_id)
        if subscription_id:
            stmt = stmt.where(SubscriptionInvoice.subscription_id == subscription_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ------------- daily run -------------
    async def generate_invoices(self, today: Optional[date] = None) -> dict:
        today = today or local_today()
        result = await self.session.execute(
            select(Subscription.id)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .where(Subscription.end_date <= today)
            .order_by(Subscription.end_date, Subscription.id)
        )
        report = {"date": today.isoformat(), "paid": 0, "failed": 0, "expired": 0,
                  "cash_pending": 0, "skipped": 0, "errors": []}
        for subscription_id in result.scalars().all():
            try:
                outcome = await self._renew(subscription_id, today)
            except EngineError as e:
                await self.session.rollback()
                logger.error("Billing failed for subscription=%s: %s", subscription_id, e.detail)
                report["errors"].append({"subscription_id": subscription_id, "error": e.detail})
                continue
            except Exception as e:
                await self.session.rollback()
                logger.exception("Billing crashed for subscription=%s", subscription_id)
                report["errors"].append({"subscription_id": subscription_id, "error": str(e)})
                continue
            report[outcome] += 1
        logger.info("Billing run %s: %s", today, {k: v for k, v in report.items() if k != "errors"})
        return report

    async def retry_failed(self, today: Optional[date] = None) -> dict:
        today = today or local_today()
        result = await self.session.execute(
            select(SubscriptionInvoice.invoice_number)
            .join(Subscription, Subscription.id == SubscriptionInvoice.subscription_id)
            .where(SubscriptionInvoice.status == InvoiceStatus.FAILED.value)
            .where(Subscription.status == SubscriptionStatus.ACTIVE.value)
            .order_by(SubscriptionInvoice.due_date)
        )
        report = {"date": today.isoformat(), "paid": 0, "failed": 0, "expired": 0, "skipped": 0, "errors": []}
        for invoice_number in result.scalars().all():
            try:
                outcome = await self._retry(invoice_number, today)
            except Exception as e:
                await self.session.rollback()
                logger.exception("Invoice retry crashed for %s", invoice_number)
                report["errors"].append({"invoice_number": invoice_number, "error": str(e)})
                continue
            report[outcome] += 1
        logger.info("Invoice retry %s: %s", today, {k: v for k, v in report.items() if k != "errors"})
        return report

    async def run(self, today: Optional[date] = None) -> dict:
        """Retry yesterday's failures first, then invoice what is due today."""
        today = today or local_today()
        return {"retried": await self.retry_failed(today), "generated": await self.generate_invoices(today)}

    async def _load_subscription(self, subscription_id: str) -> Subscription | None:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _renew(self, subscription_id: str, today: date) -> str:
        async with subscription_locks.hold(subscription_id):
            subscription = await self._load_subscription(subscription_id)
            if subscription is None or subscription.status != SubscriptionStatus.ACTIVE.value \
                    or subscription.end_date > today:
                return "skipped"

            month = billing_month_of(subscription.end_date)
            existing = await self.session.execute(
                select(SubscriptionInvoice.id)
                .where(SubscriptionInvoice.subscription_id == subscription.id)
                .where(SubscriptionInvoice.billing_month == month)
            )
            if existing.first() is not None:
                # a failed invoice for this month is retry_failed's business
                return "skipped"

            invoice = SubscriptionInvoice(
                invoice_number=new_invoice_number(subscription.end_date),
                subscription_id=subscription.id,
                user_id=subscription.user_id,
                billing_month=month,
                amount_due=subscription.total_monthly_price,
                amount_paid=0,
                status=InvoiceStatus.PENDING.value,
                due_date=subscription.end_date,
            )
            self.session.add(invoice)
            try:
                await self.session.flush()
            except IntegrityError:
                await self.session.rollback()
                logger.info("Invoice for subscription=%s month=%s created concurrently", subscription_id, month)
                return "skipped"

            if subscription.payment_method == PaymentMethod.CASH.value:
                extend_period(subscription)
                await self.session.commit()
                logger.info("Cash invoice %s issued; subscription=%s extended to %s",
                            invoice.invoice_number, subscription.id, subscription.end_date)
                await self.notifier.notify(
                    subscription.user_id,
                    f"Invoice {invoice.invoice_number}: {money(invoice.amount_due)} due, payable in cash.",
                    event="invoice.issued",
                )
                return "cash_pending"

            return await self._collect(subscription, invoice, today)

    async def _retry(self, invoice_number: str, today: date) -> str:
        invoice = await self.get_invoice(invoice_number)
        async with subscription_locks.hold(invoice.subscription_id):
            subscription = await self._load_subscription(invoice.subscription_id)
            await self.session.refresh(invoice)
            if invoice.status != InvoiceStatus.FAILED.value or subscription is None \
                    or subscription.status != SubscriptionStatus.ACTIVE.value:
                return "skipped"
            return await self._collect(subscription, invoice, today)

    async def _collect(self, subscription: Subscription, invoice: SubscriptionInvoice, today: date) -> str:
        """Debit an online invoice. Commits on every outcome."""
        amount = to_money(invoice.amount_due)
        try:
            tx = None
            if amount > 0:
                tx = await self.ledger.debit(
                    subscription.user_id,
                    amount,
                    TransactionCategory.SUBSCRIPTION_CHARGE,
                    f"Subscription renewal {invoice.billing_month}",
                    reference_id=invoice.invoice_number,
                    commit=False,
                )
        except InsufficientBalance as e:
            invoice.status = InvoiceStatus.FAILED.value
            expire = self.failure_policy.should_expire(invoice, today)
            if expire:
                subscription.status = SubscriptionStatus.EXPIRED.value
            try:
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise
            logger.warning("Invoice %s failed (%s); policy=%s expired=%s",
                           invoice.invoice_number, e.detail, self.failure_policy.name, expire)
            if expire:
                message = f"Payment for invoice {invoice.invoice_number} failed. Your subscription has expired."
            else:
                message = (f"Payment for invoice {invoice.invoice_number} failed "
                           f"({money(amount)} due). Please top up your wallet.")
            await self.notifier.notify(subscription.user_id, message, event="invoice.failed")
            return "expired" if expire else "failed"
        except Exception:
            await self.session.rollback()
            raise

        invoice.status = InvoiceStatus.PAID.value
        invoice.amount_paid = amount
        invoice.paid_at = datetime.now(timezone.utc)
        invoice.wallet_transaction_id = tx.id if tx else None
        extend_period(subscription)
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info("Invoice %s paid (%s); subscription=%s extended to %s",
                    invoice.invoice_number, amount, subscription.id, subscription.end_date)
        await self.notifier.notify(
            subscription.user_id,
            f"Invoice {invoice.invoice_number} paid: {money(amount)}. Subscription renewed until {subscription.end_date}.",
            event="invoice.paid",
        )
        return "paid"

    # ------------- admin -------------
    async def refund_invoice(self, invoice_number: str, reason: str, admin_id: str) -> SubscriptionInvoice:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to refund an invoice")
        invoice = await self.get_invoice(invoice_number)
        async with subscription_locks.hold(invoice.subscription_id):
            try:
                await self.session.refresh(invoice, with_for_update=True)
                if invoice.status != InvoiceStatus.PAID.value:
                    raise ValidationError(f"Only paid invoices can be refunded (status={invoice.status})")
                amount = to_money(invoice.amount_paid)
                if amount > 0:
                    await self.ledger.credit(
                        invoice.user_id,
                        amount,
                        TransactionCategory.REFUND,
                        f"Invoice {invoice_number} refunded: {reason.strip()}",
                        reference_id=invoice_number,
                        performed_by=admin_id,
                        commit=False,
                    )
                invoice.status = InvoiceStatus.REFUNDED.value
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise
        logger.warning("AUDIT invoice_refund admin=%s invoice=%s amount=%s reason=%r",
                       admin_id, invoice_number, amount, reason.strip())
        await self.notifier.notify(invoice.user_id, f"Invoice {invoice_number} refunded: {money(amount)}.",
                                   event="invoice.refunded")
        return invoice

    @staticmethod
    def to_dict(invoice: SubscriptionInvoice) -> dict:
        return {
            "invoice_number": invoice.invoice_number,
            "subscription_id": invoice.subscription_id,
            "user_id": invoice.user_id,
            "billing_month": invoice.billing_month,
            "amount_due": money(invoice.amount_due),
            "amount_paid": money(invoice.amount_paid),
            "status": invoice.status,
            "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
            "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
            "wallet_transaction_id": invoice.wallet_transaction_id,
        }
