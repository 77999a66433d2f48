import pytest

from core.exceptions import NotFound
from services.cash_settlement_service import CashSettlementService
from services.wallet_ledger import WalletLedger

from conftest import MONDAY


@pytest.mark.asyncio
async def test_flag_pending_is_idempotent(session, make_subscription):
    subscription = await make_subscription(user_id="rider-1", payment_method="cash")
    svc = CashSettlementService(session)

    record, created = await svc.flag_pending(subscription.id, MONDAY)
    again, created_again = await svc.flag_pending(subscription.id, MONDAY)

    assert created is True and created_again is False
    assert again.id == record.id
    assert record.user_id == "rider-1"
    assert len(await svc.list_records(status="pending")) == 1
    assert await WalletLedger(session).get_wallet("rider-1") is None


@pytest.mark.asyncio
async def test_flag_unknown_subscription(session):
    with pytest.raises(NotFound):
        await CashSettlementService(session).flag_pending("missing", MONDAY)


@pytest.mark.asyncio
async def test_acknowledge_once(session, make_subscription):
    subscription = await make_subscription(payment_method="cash")
    svc = CashSettlementService(session)
    record, _ = await svc.flag_pending(subscription.id, MONDAY)

    acked = await svc.acknowledge(record.id, "admin-1")
    assert acked.status == "acknowledged"
    assert acked.acknowledged_by == "admin-1"
    assert acked.acknowledged_at is not None

    with pytest.raises(NotFound):
        await svc.acknowledge(record.id, "admin-2")
    with pytest.raises(NotFound):
        await svc.acknowledge(9999, "admin-1")

    assert await svc.list_records(status="pending") == []
    assert len(await svc.list_records(service_date=MONDAY)) == 1
