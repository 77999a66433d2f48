# models/enums.py
from enum import Enum


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionCategory(str, Enum):
    TOPUP = "topup"
    SUBSCRIPTION_CHARGE = "subscription_charge"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class PaymentMethod(str, Enum):
    CASH = "cash"
    ONLINE = "online"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PENDING_CANCELLATION = "pending_cancellation"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"


class SlotOutcome(str, Enum):
    TRIPS_CREATED = "trips_created"
    BELOW_THRESHOLD = "below_threshold"


class GeneratedBy(str, Enum):
    OPTIMIZER = "optimizer"
    FALLBACK = "fallback"


class BlackoutSource(str, Enum):
    MANUAL = "manual"
    HOLIDAY_CALENDAR = "holiday_calendar"
