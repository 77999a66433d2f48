from datetime import date
from decimal import Decimal

import pytest

from core.exceptions import NotFound, ValidationError
from services.billing_service import BillingService, add_months, billing_month_of, new_invoice_number
from services.policies import GracePeriodPolicy, SuspendPolicy
from services.subscription_service import SubscriptionService
from services.wallet_ledger import WalletLedger

DUE = date(2026, 12, 1)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2026, 11, 15), 2) == date(2027, 1, 15)
    assert billing_month_of(date(2026, 3, 9)) == "2026-03"


def test_invoice_number_format():
    number = new_invoice_number(date(2026, 11, 1))
    prefix, month, suffix = number.split("-")
    assert (prefix, month) == ("INV", "202611")
    assert len(suffix) == 6
    assert set(suffix) <= set("ABCDEFGHJKLMNPQRSTUVWXYZ23456789")


@pytest.mark.asyncio
async def test_online_renewal_debits_and_extends_period(session, notifier, make_subscription):
    ledger = WalletLedger(session)
    subscription = await make_subscription(user_id="rider-1", end=DUE)
    await ledger.top_up("rider-1", 3500)
    billing = BillingService(session, failure_policy=GracePeriodPolicy(3), notifier=notifier)

    report = await billing.generate_invoices(today=DUE)

    assert report["paid"] == 1 and report["errors"] == []
    await session.refresh(subscription)
    assert subscription.start_date == DUE
    assert subscription.end_date == date(2027, 1, 1)
    assert await ledger.balance_of("rider-1") == Decimal("500.00")

    invoice = (await billing.list_invoices(subscription_id=subscription.id))[0]
    assert invoice.status == "paid"
    assert invoice.billing_month == "2026-12"
    assert invoice.amount_paid == Decimal("3000.00")
    assert invoice.wallet_transaction_id is not None

    # nothing else is due until the new end date
    again = await billing.generate_invoices(today=DUE)
    assert again["paid"] == 0
    assert len(await billing.list_invoices(subscription_id=subscription.id)) == 1


@pytest.mark.asyncio
async def test_insufficient_balance_fails_invoice_and_keeps_grace(session, notifier, make_subscription):
    ledger = WalletLedger(session)
    subscription = await make_subscription(user_id="rider-1", end=DUE)
    await ledger.top_up("rider-1", 100)
    billing = BillingService(session, failure_policy=GracePeriodPolicy(3), notifier=notifier)

    report = await billing.generate_invoices(today=DUE)
    assert report["failed"] == 1
    await session.refresh(subscription)
    assert subscription.status == "active"
    assert subscription.end_date == DUE
    assert (await billing.list_invoices(status="failed"))[0].subscription_id == subscription.id
    assert await ledger.balance_of("rider-1") == Decimal("100.00")
    assert notifier.recent_notifications()[-1]["event"] == "invoice.failed"

    # the expiry sweep leaves a subscription in its grace period alone
    sweep = await SubscriptionService(session, notifier=notifier).expire_sweep(today=date(2026, 12, 2))
    assert sweep["expired"] == 0

    # topped up within the grace period: the retry collects and renews
    await ledger.top_up("rider-1", 2900)
    retried = await billing.retry_failed(today=date(2026, 12, 3))
    assert retried["paid"] == 1
    await session.refresh(subscription)
    assert subscription.status == "active"
    assert subscription.end_date == date(2027, 1, 1)
    assert await ledger.balance_of("rider-1") == Decimal("0.00")


@pytest.mark.asyncio
async def test_failed_invoice_expires_after_grace(session, notifier, make_subscription):
    subscription = await make_subscription(user_id="rider-1", end=DUE)
    billing = BillingService(session, failure_policy=GracePeriodPolicy(3), notifier=notifier)

    await billing.generate_invoices(today=DUE)
    still_failing = await billing.retry_failed(today=date(2026, 12, 4))
    assert still_failing["failed"] == 1

    expired = await billing.retry_failed(today=date(2026, 12, 5))
    assert expired["expired"] == 1
    await session.refresh(subscription)
    assert subscription.status == "expired"


@pytest.mark.asyncio
async def test_suspend_policy_expires_immediately(session, notifier, make_subscription):
    subscription = await make_subscription(user_id="rider-1", end=DUE)
    billing = BillingService(session, failure_policy=SuspendPolicy(), notifier=notifier)

    report = await billing.generate_invoices(today=DUE)

    assert report["expired"] == 1
    await session.refresh(subscription)
    assert subscription.status == "expired"


@pytest.mark.asyncio
async def test_cash_renewal_issues_pending_invoice(session, notifier, make_subscription):
    subscription = await make_subscription(user_id="rider-1", end=DUE, payment_method="cash")
    billing = BillingService(session, notifier=notifier)

    report = await billing.run(today=DUE)

    assert report["generated"]["cash_pending"] == 1
    assert report["retried"]["paid"] == 0
    await session.refresh(subscription)
    assert subscription.end_date == date(2027, 1, 1)
    invoice = (await billing.list_invoices(user_id="rider-1"))[0]
    assert invoice.status == "pending"
    assert await WalletLedger(session).get_wallet("rider-1") is None


@pytest.mark.asyncio
async def test_non_active_subscriptions_are_not_invoiced(session, notifier, make_subscription):
    await make_subscription(end=DUE, status="pending_cancellation")
    await make_subscription(end=DUE, status="cancelled")
    billing = BillingService(session, notifier=notifier)

    report = await billing.generate_invoices(today=DUE)

    assert report["paid"] + report["failed"] + report["cash_pending"] == 0
    assert await billing.list_invoices() == []


@pytest.mark.asyncio
async def test_refund_invoice(session, notifier, make_subscription):
    ledger = WalletLedger(session)
    subscription = await make_subscription(user_id="rider-1", end=DUE)
    await ledger.top_up("rider-1", 3000)
    billing = BillingService(session, notifier=notifier)
    await billing.generate_invoices(today=DUE)
    invoice = (await billing.list_invoices(subscription_id=subscription.id))[0]

    with pytest.raises(ValidationError):
        await billing.refund_invoice(invoice.invoice_number, "", "admin-1")

    refunded = await billing.refund_invoice(invoice.invoice_number, "charged twice", "admin-1")
    assert refunded.status == "refunded"
    assert await ledger.balance_of("rider-1") == Decimal("3000.00")
    tx = await ledger.find_by_reference(invoice.invoice_number, "refund")
    assert tx.performed_by == "admin-1"

    with pytest.raises(ValidationError):
        await billing.refund_invoice(invoice.invoice_number, "again", "admin-1")
    with pytest.raises(NotFound):
        await billing.refund_invoice("INV-000000-NOPE00", "missing", "admin-1")
    assert (await ledger.audit("rider-1"))["consistent"] is True
