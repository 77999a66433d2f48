"""
Pluggable business policies.

OnlineShortfallPolicy: what an online (prepaid) subscriber gets when their
slot falls below the passenger threshold and no trip runs.
- NoRefundPolicy (default): nothing; the monthly fee is an estimate
- DailyRateCreditPolicy: credit one day's share of the period price,
  at most once per subscription and service date

InvoiceFailurePolicy: what happens to a subscription whose renewal charge
could not be debited.
- GracePeriodPolicy(days) (default): keep it active until due_date + days,
  then expire
- SuspendPolicy: expire immediately

Selected by ONLINE_SHORTFALL_POLICY / INVOICE_FAILURE_POLICY.
"""
import logging
from abc import ABC, abstractmethod
from datetime import date, timedelta
from decimal import Decimal

from config.settings import settings
from core.exceptions import ValidationError
from models.db_models import Subscription, SubscriptionInvoice
from models.enums import TransactionCategory
from services.cost_calculator import to_money

logger = logging.getLogger(__name__)


class OnlineShortfallPolicy(ABC):
    name = "base"

    @abstractmethod
    async def apply(self, ledger, subscription: Subscription, service_date: date) -> dict:
        """Runs inside the scheduler's transaction; must not commit."""


class NoRefundPolicy(OnlineShortfallPolicy):
    name = "no_refund"

    async def apply(self, ledger, subscription: Subscription, service_date: date) -> dict:
        return {"subscription_id": subscription.id, "action": "none"}


class DailyRateCreditPolicy(OnlineShortfallPolicy):
    name = "daily_rate_credit"

    @staticmethod
    def daily_rate(subscription: Subscription) -> Decimal:
        days = (subscription.end_date - subscription.start_date).days
        if days <= 0:
            return Decimal("0.00")
        return to_money(Decimal(subscription.total_monthly_price) / days)

    async def apply(self, ledger, subscription: Subscription, service_date: date) -> dict:
        reference = f"shortfall:{subscription.id}:{service_date.isoformat()}"
        if await ledger.find_by_reference(reference, TransactionCategory.REFUND):
            return {"subscription_id": subscription.id, "action": "already_credited"}
        amount = self.daily_rate(subscription)
        if amount <= 0:
            return {"subscription_id": subscription.id, "action": "none"}
        await ledger.credit(
            subscription.user_id,
            amount,
            TransactionCategory.REFUND,
            f"No trip on {service_date.isoformat()} (below minimum passengers)",
            reference_id=reference,
            commit=False,
        )
        logger.info("Shortfall credit %s to user=%s for %s", amount, subscription.user_id, service_date)
        return {"subscription_id": subscription.id, "action": "credited", "amount": amount}


class InvoiceFailurePolicy(ABC):
    name = "base"

    @abstractmethod
    def should_expire(self, invoice: SubscriptionInvoice, today: date) -> bool:
        ...


class GracePeriodPolicy(InvoiceFailurePolicy):
    name = "grace_period"

    def __init__(self, days: int = 3):
        self.days = days

    def should_expire(self, invoice: SubscriptionInvoice, today: date) -> bool:
        return invoice.due_date + timedelta(days=self.days) < today


class SuspendPolicy(InvoiceFailurePolicy):
    name = "suspend"

    def should_expire(self, invoice: SubscriptionInvoice, today: date) -> bool:
        return True


def shortfall_policy_from_settings(name: str | None = None) -> OnlineShortfallPolicy:
    name = name or settings.ONLINE_SHORTFALL_POLICY
    if name == NoRefundPolicy.name:
        return NoRefundPolicy()
    if name == DailyRateCreditPolicy.name:
        return DailyRateCreditPolicy()
    raise ValidationError(f"Unknown ONLINE_SHORTFALL_POLICY {name!r}")


def invoice_failure_policy_from_settings(name: str | None = None) -> InvoiceFailurePolicy:
    name = name or settings.INVOICE_FAILURE_POLICY
    if name == GracePeriodPolicy.name:
        return GracePeriodPolicy(settings.INVOICE_GRACE_DAYS)
    if name == SuspendPolicy.name:
        return SuspendPolicy()
    raise ValidationError(f"Unknown INVOICE_FAILURE_POLICY {name!r}")
