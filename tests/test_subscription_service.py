import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.future import select

from core.exceptions import InsufficientBalance, NotFound, ValidationError
from models.db_models import Subscription, SubscriptionInvoice
from services.subscription_service import SubscriptionService, prorated_refund
from services.wallet_ledger import WalletLedger

from conftest import ROUTE_ID, SLOT_ID

NOV_1 = date(2026, 11, 1)


def _service(session, notifier):
    return SubscriptionService(session, notifier=notifier)


async def _purchase(svc, user_id="rider-1", method="online", weekdays=(0, 2, 4), start=NOV_1):
    return await svc.purchase(
        user_id=user_id,
        route_id=ROUTE_ID,
        weekdays=list(weekdays),
        time_slot_id=SLOT_ID,
        boarding_point_id="P1",
        drop_off_point_id="P5",
        start_date=start,
        payment_method=method,
        today=NOV_1,
    )


def test_prorated_refund_examples():
    # 30 day period, cancelled with 20 days left
    assert prorated_refund(Decimal("3000"), NOV_1, date(2026, 12, 1), date(2026, 11, 11)) == Decimal("2000.00")
    assert prorated_refund(Decimal("3000"), NOV_1, date(2026, 12, 1), date(2026, 12, 5)) == Decimal("0.00")
    assert prorated_refund(Decimal("3000"), NOV_1, NOV_1, NOV_1) == Decimal("0.00")
    # cancelled before the period started: capped at the price
    assert prorated_refund(Decimal("3000"), NOV_1, date(2026, 12, 1), date(2026, 10, 1)) == Decimal("3000.00")
    # 1000 * 1 / 3 = 333.333...
    assert prorated_refund(Decimal("1000"), NOV_1, date(2026, 11, 4), date(2026, 11, 3)) == Decimal("333.33")


@pytest.mark.asyncio
async def test_online_purchase_debits_wallet_and_records_paid_invoice(session, notifier):
    await WalletLedger(session).top_up("rider-1", 5000)
    svc = _service(session, notifier)

    subscription = await _purchase(svc)

    assert subscription.status == "active"
    assert subscription.end_date == date(2026, 12, 1)
    assert subscription.total_monthly_price == Decimal("3000.00")
    assert await WalletLedger(session).balance_of("rider-1") == Decimal("2000.00")

    invoices = (await session.execute(select(SubscriptionInvoice))).scalars().all()
    assert len(invoices) == 1
    assert invoices[0].status == "paid"
    assert invoices[0].billing_month == "2026-11"
    assert invoices[0].invoice_number.startswith("INV-202611-")
    assert notifier.recent_notifications()[-1]["event"] == "subscription.purchased"


@pytest.mark.asyncio
async def test_online_purchase_without_funds_leaves_nothing(session, notifier):
    await WalletLedger(session).top_up("rider-1", 100)
    svc = _service(session, notifier)

    with pytest.raises(InsufficientBalance):
        await _purchase(svc)

    assert (await session.execute(select(Subscription))).scalars().all() == []
    assert (await session.execute(select(SubscriptionInvoice))).scalars().all() == []
    assert await WalletLedger(session).balance_of("rider-1") == Decimal("100.00")


@pytest.mark.asyncio
async def test_cash_purchase_records_pending_invoice(session, notifier):
    svc = _service(session, notifier)
    subscription = await _purchase(svc, method="cash")

    assert subscription.payment_method == "cash"
    assert await WalletLedger(session).get_wallet("rider-1") is None
    invoice = (await session.execute(select(SubscriptionInvoice))).scalar_one()
    assert invoice.status == "pending"
    assert invoice.amount_due == Decimal("3000.00")


@pytest.mark.asyncio
async def test_purchase_validation(session, notifier):
    svc = _service(session, notifier)
    base = dict(user_id="rider-1", route_id=ROUTE_ID, weekdays=[0], time_slot_id=SLOT_ID,
                boarding_point_id="P1", drop_off_point_id="P5", start_date=NOV_1,
                payment_method="cash", today=NOV_1)

    with pytest.raises(ValidationError):
        await svc.purchase(**{**base, "start_date": date(2026, 10, 31)})
    with pytest.raises(ValidationError):
        await svc.purchase(**{**base, "payment_method": "card"})
    with pytest.raises(ValidationError):
        await svc.purchase(**{**base, "drop_off_point_id": "P1"})
    with pytest.raises(ValidationError):
        await svc.purchase(**{**base, "time_slot_id": "R9-0900"})
    with pytest.raises(ValidationError):
        await svc.purchase(**{**base, "boarding_point_id": "ELSEWHERE"})
    with pytest.raises(NotFound):
        await svc.purchase(**{**base, "route_id": "R404"})


@pytest.mark.asyncio
async def test_purchase_then_cancel_refunds_unused_share(session, notifier):
    """3000 for 2026-11-01..2026-12-01, cancelled on 2026-11-11: 2000 back to the wallet."""
    ledger = WalletLedger(session)
    await ledger.top_up("rider-1", 5000)
    svc = _service(session, notifier)
    subscription = await _purchase(svc)

    result = await svc.cancel(subscription.id, "moving abroad", today=date(2026, 11, 11), admin_id="admin-1")

    assert result["refund_amount"] == Decimal("2000.00")
    assert result["subscription"].status == "cancelled"
    assert result["subscription"].cancellation_date == date(2026, 11, 11)
    assert await ledger.balance_of("rider-1") == Decimal("4000.00")
    refund = await ledger.find_by_reference(subscription.id, "refund")
    assert refund.performed_by == "admin-1"
    assert (await ledger.audit("rider-1"))["consistent"] is True


@pytest.mark.asyncio
async def test_cancel_requires_reason_and_non_terminal_state(session, notifier, make_subscription):
    svc = _service(session, notifier)
    subscription = await make_subscription(payment_method="cash")
    subscription_id = subscription.id

    with pytest.raises(ValidationError):
        await svc.cancel(subscription_id, "  ", today=date(2026, 11, 11))

    result = await svc.cancel(subscription_id, "no longer needed", today=date(2026, 11, 11))
    assert result["refund_amount"] == Decimal("0.00")

    with pytest.raises(ValidationError):
        await svc.cancel(subscription_id, "again", today=date(2026, 11, 12))
    with pytest.raises(NotFound):
        await svc.cancel("missing", "whatever")


@pytest.mark.asyncio
async def test_request_cancellation_is_owner_only(session, notifier, make_subscription):
    svc = _service(session, notifier)
    subscription = await make_subscription(user_id="rider-1")
    # a failed transition rolls back and expires the instance: keep the id
    subscription_id = subscription.id

    with pytest.raises(NotFound):
        await svc.request_cancellation(subscription_id, "rider-2")

    updated = await svc.request_cancellation(subscription_id, "rider-1", "vacation")
    assert updated.status == "pending_cancellation"

    with pytest.raises(ValidationError):
        await svc.request_cancellation(subscription_id, "rider-1")


@pytest.mark.asyncio
async def test_cancel_racing_expiry_sweep_ends_in_one_terminal_state(session_maker, session, notifier,
                                                                     make_subscription):
    """Admin cancel and the expiry sweep hit the same lapsed subscription through separate sessions."""
    await WalletLedger(session).top_up("rider-1", 100)
    subscription = await make_subscription(user_id="rider-1", end=date(2026, 11, 20))
    subscription_id = subscription.id

    async def cancel():
        async with session_maker() as s:
            return await _service(s, notifier).cancel(subscription_id, "route closed",
                                                      today=date(2026, 11, 11), admin_id="admin-1")

    async def sweep():
        async with session_maker() as s:
            return await _service(s, notifier).expire_sweep(today=date(2026, 11, 21))

    cancelled, counts = await asyncio.gather(cancel(), sweep(), return_exceptions=True)
    assert not isinstance(counts, Exception)

    async with session_maker() as s:
        final = await _service(s, notifier).get(subscription_id)
        ledger = WalletLedger(s)
        balance = await ledger.balance_of("rider-1")
        assert (await ledger.audit("rider-1"))["consistent"] is True

    if isinstance(cancelled, Exception):
        # the sweep won: the late cancel is rejected and nothing is refunded
        assert isinstance(cancelled, ValidationError)
        assert final.status == "expired"
        assert counts == {"expired": 1, "cancelled": 0}
        assert balance == Decimal("100.00")
    else:
        assert final.status == "cancelled"
        assert counts == {"expired": 0, "cancelled": 0}
        assert balance == Decimal("100.00") + cancelled["refund_amount"]
        assert cancelled["refund_amount"] > 0


@pytest.mark.asyncio
async def test_edit_dates(session, notifier, make_subscription):
    svc = _service(session, notifier)
    subscription = await make_subscription()

    with pytest.raises(ValidationError):
        await svc.edit_dates(subscription.id, date(2026, 11, 10), date(2026, 11, 10))

    updated = await svc.edit_dates(subscription.id, date(2026, 11, 5), date(2026, 12, 5))
    assert (updated.start_date, updated.end_date) == (date(2026, 11, 5), date(2026, 12, 5))
    assert await WalletLedger(session).get_wallet(subscription.user_id) is None


@pytest.mark.asyncio
async def test_expire_sweep_finalizes_past_periods_once(session, notifier, make_subscription):
    svc = _service(session, notifier)
    lapsed = await make_subscription(end=date(2026, 11, 20))
    leaving = await make_subscription(end=date(2026, 11, 20), status="pending_cancellation")
    current = await make_subscription(end=date(2026, 12, 20))
    in_grace = await make_subscription(end=date(2026, 11, 20))
    session.add(SubscriptionInvoice(
        invoice_number="INV-202611-GRACE1", subscription_id=in_grace.id, user_id=in_grace.user_id,
        billing_month="2026-11", amount_due=Decimal("3000.00"), amount_paid=0, status="failed",
        due_date=date(2026, 11, 20),
    ))
    await session.commit()

    counts = await svc.expire_sweep(today=date(2026, 11, 21))
    assert counts == {"expired": 1, "cancelled": 1}

    assert (await svc.get(lapsed.id)).status == "expired"
    left = await svc.get(leaving.id)
    assert left.status == "cancelled"
    assert left.cancellation_date == date(2026, 11, 20)
    assert (await svc.get(current.id)).status == "active"
    assert (await svc.get(in_grace.id)).status == "active"

    assert await svc.expire_sweep(today=date(2026, 11, 21)) == {"expired": 0, "cancelled": 0}


@pytest.mark.asyncio
async def test_list_subscriptions_filters(session, notifier, make_subscription):
    svc = _service(session, notifier)
    await make_subscription(user_id="a", payment_method="cash")
    await make_subscription(user_id="b")
    await make_subscription(user_id="b", status="expired")

    assert len(await svc.list_subscriptions(user_id="b")) == 2
    assert len(await svc.list_subscriptions(status="active")) == 2
    assert [s.user_id for s in await svc.list_subscriptions(payment_method="cash")] == ["a"]
