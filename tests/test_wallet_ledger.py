import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.orm.exc import StaleDataError

from core.exceptions import ConcurrencyConflict, InsufficientBalance, ValidationError
from models.enums import TransactionCategory
from services.wallet_ledger import WalletLedger


@pytest.mark.asyncio
async def test_credit_and_debit_keep_balance_equal_to_log(session):
    """Cached balance always equals the sum of the transaction log."""
    ledger = WalletLedger(session)
    await ledger.top_up("u1", "500.00", reference_id="pay-1")
    await ledger.debit("u1", Decimal("120.50"), TransactionCategory.SUBSCRIPTION_CHARGE, "charge")
    await ledger.credit("u1", 20, TransactionCategory.REFUND, "refund")

    assert await ledger.balance_of("u1") == Decimal("399.50")
    audit = await ledger.audit("u1")
    assert audit["consistent"] is True
    assert audit["derived"] == Decimal("399.50")
    assert audit["transactions"] == 3


@pytest.mark.asyncio
async def test_transaction_amounts_are_signed(session):
    ledger = WalletLedger(session)
    await ledger.top_up("u1", 100)
    tx = await ledger.debit("u1", 30, TransactionCategory.SUBSCRIPTION_CHARGE, "charge", reference_id="INV-1")

    assert tx.amount == Decimal("-30.00")
    assert tx.balance_after == Decimal("70.00")
    assert tx.type == "debit"
    found = await ledger.find_by_reference("INV-1", TransactionCategory.SUBSCRIPTION_CHARGE)
    assert found is not None and found.id == tx.id


@pytest.mark.asyncio
async def test_debit_beyond_balance_is_rejected_and_leaves_no_trace(session):
    ledger = WalletLedger(session)
    await ledger.top_up("u1", 50)

    with pytest.raises(InsufficientBalance) as exc:
        await ledger.debit("u1", 80, TransactionCategory.SUBSCRIPTION_CHARGE, "charge")
    assert exc.value.required == Decimal("80.00")
    assert exc.value.available == Decimal("50.00")

    assert await ledger.balance_of("u1") == Decimal("50.00")
    assert len(await ledger.transactions("u1")) == 1


@pytest.mark.asyncio
async def test_debit_without_wallet_is_insufficient(session):
    ledger = WalletLedger(session)
    with pytest.raises(InsufficientBalance):
        await ledger.debit("nobody", 1, TransactionCategory.SUBSCRIPTION_CHARGE, "charge")
    assert await ledger.get_wallet("nobody") is None
    assert await ledger.balance_of("nobody") == Decimal("0.00")


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "0.00"])
async def test_non_positive_amounts_are_rejected(session, amount):
    ledger = WalletLedger(session)
    with pytest.raises(ValidationError):
        await ledger.credit("u1", amount, TransactionCategory.TOPUP, "bad")


@pytest.mark.asyncio
async def test_admin_adjust_requires_reason(session):
    ledger = WalletLedger(session)
    with pytest.raises(ValidationError):
        await ledger.admin_adjust("u1", 10, "credit", "   ", "admin-1")
    assert await ledger.get_wallet("u1") is None


@pytest.mark.asyncio
async def test_admin_adjust_records_admin_and_reason(session):
    ledger = WalletLedger(session)
    await ledger.top_up("u1", 100)
    tx = await ledger.admin_adjust("u1", 25, "debit", "duplicate top-up", "admin-1")

    assert tx.category == TransactionCategory.ADMIN_ADJUSTMENT.value
    assert tx.performed_by == "admin-1"
    assert "duplicate top-up" in tx.description
    assert await ledger.balance_of("u1") == Decimal("75.00")

    with pytest.raises(ValidationError):
        await ledger.admin_adjust("u1", 1, "sideways", "typo", "admin-1")


@pytest.mark.asyncio
async def test_concurrent_mutations_never_lose_updates(session_maker, catalogue):
    """Parallel credits and debits on one wallet, each through its own session."""
    async with session_maker() as s:
        await WalletLedger(s).top_up("u1", 100)

    async def op(kind, amount):
        async with session_maker() as s:
            ledger = WalletLedger(s)
            if kind == "credit":
                return await ledger.credit("u1", amount, TransactionCategory.TOPUP, "parallel credit")
            return await ledger.debit("u1", amount, TransactionCategory.SUBSCRIPTION_CHARGE, "parallel debit")

    ops = [("credit", 10)] * 5 + [("debit", 15)] * 8
    results = await asyncio.gather(*(op(kind, amount) for kind, amount in ops), return_exceptions=True)

    applied = Decimal("100.00")
    for (kind, amount), result in zip(ops, results):
        if isinstance(result, Exception):
            assert isinstance(result, InsufficientBalance)
            continue
        applied += amount if kind == "credit" else -amount

    async with session_maker() as s:
        ledger = WalletLedger(s)
        audit = await ledger.audit("u1")
        assert audit["consistent"] is True
        assert audit["cached"] == applied
        assert audit["cached"] >= 0


@pytest.mark.asyncio
async def test_version_conflicts_are_retried_then_surfaced(session, monkeypatch):
    ledger = WalletLedger(session, max_retries=3)
    calls = {"n": 0}

    async def always_stale(*args, **kwargs):
        calls["n"] += 1
        raise StaleDataError("wallet row changed")

    monkeypatch.setattr(ledger, "_append", always_stale)
    with pytest.raises(ConcurrencyConflict):
        await ledger.top_up("u1", 10)
    assert calls["n"] == 3
