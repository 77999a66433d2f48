"""
Wallet ledger.

Append-only transaction log per user with a cached balance.

Invariant: wallets.balance == sum(wallet_transactions.amount) for that wallet,
after any sequence of credits, debits, refunds and adjustments.

Every mutation runs the read-balance / append-transaction / write-balance
sequence:
- under a per-wallet asyncio lock (same process)
- with SELECT ... FOR UPDATE on the wallet row (MySQL; a no-op on SQLite)
- with an optimistic version check (wallets.version); a lost update raises
  StaleDataError, which is retried WALLET_MAX_RETRIES times and then
  surfaced as ConcurrencyConflict

commit=False lets a caller (purchase, invoice payment) fold the ledger write
into its own unit of work; the caller then owns commit/rollback.
"""
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config.settings import settings
from core.exceptions import ConcurrencyConflict, InsufficientBalance, ValidationError
from core.locks import wallet_locks
from core.response import money
from models.db_models import Wallet, WalletTransaction
from models.enums import TransactionCategory, TransactionType
from services.cost_calculator import to_money

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class WalletLedger:
    def __init__(self, session: AsyncSession, max_retries: Optional[int] = None):
        self.session = session
        self.max_retries = max_retries or settings.WALLET_MAX_RETRIES

    # ------------- reads -------------
    async def get_wallet(self, user_id: str) -> Wallet | None:
        result = await self.session.execute(select(Wallet).where(Wallet.user_id == user_id))
        return result.scalar_one_or_none()

    async def balance_of(self, user_id: str) -> Decimal:
        """Cached balance; 0 for a user who never had a credit."""
        wallet = await self.get_wallet(user_id)
        return to_money(wallet.balance) if wallet else ZERO

    async def transactions(self, user_id: str, limit: Optional[int] = None) -> list[WalletTransaction]:
        stmt = (
            select(WalletTransaction)
            .join(Wallet, Wallet.id == WalletTransaction.wallet_id)
            .where(Wallet.user_id == user_id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_reference(self, reference_id: str, category=None) -> WalletTransaction | None:
        stmt = select(WalletTransaction).where(WalletTransaction.reference_id == reference_id)
        if category is not None:
            stmt = stmt.where(WalletTransaction.category == TransactionCategory(category).value)
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def audit(self, user_id: str) -> dict:
        """Re-derive the balance from the transaction log and compare to the cache."""
        wallet = await self.get_wallet(user_id)
        if wallet is None:
            return {"user_id": user_id, "cached": ZERO, "derived": ZERO, "consistent": True, "transactions": 0}
        result = await self.session.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0), func.count(WalletTransaction.id))
            .where(WalletTransaction.wallet_id == wallet.id)
        )
        total, count = result.one()
        derived = to_money(total)
        cached = to_money(wallet.balance)
        if derived != cached:
            logger.error("Ledger drift for user=%s: cached=%s derived=%s", user_id, cached, derived)
        return {
            "user_id": user_id,
            "cached": cached,
            "derived": derived,
            "consistent": derived == cached,
            "transactions": int(count),
        }

    # ------------- writes -------------
    async def credit(self, user_id: str, amount, category, description: str,
                     reference_id: Optional[str] = None, performed_by: Optional[str] = None,
                     commit: bool = True) -> WalletTransaction:
        return await self._mutate(user_id, amount, TransactionType.CREDIT, category, description,
                                  reference_id, performed_by, commit)

    async def debit(self, user_id: str, amount, category, description: str,
                    reference_id: Optional[str] = None, performed_by: Optional[str] = None,
                    commit: bool = True) -> WalletTransaction:
        return await self._mutate(user_id, amount, TransactionType.DEBIT, category, description,
                                  reference_id, performed_by, commit)

    async def top_up(self, user_id: str, amount, reference_id: Optional[str] = None) -> WalletTransaction:
        return await self.credit(user_id, amount, TransactionCategory.TOPUP, "Wallet top-up", reference_id)

    async def admin_adjust(self, user_id: str, amount, direction: str, reason: str, admin_id: str) -> WalletTransaction:
        """Manual correction by an admin. Always requires a reason; always audit-logged."""
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for wallet adjustments")
        try:
            tx_type = TransactionType(direction)
        except ValueError:
            raise ValidationError("direction must be 'credit' or 'debit'")
        tx = await self._mutate(
            user_id, amount, tx_type, TransactionCategory.ADMIN_ADJUSTMENT,
            f"Admin adjustment: {reason.strip()}", None, admin_id, True,
        )
        logger.warning(
            "AUDIT admin_adjustment admin=%s user=%s direction=%s amount=%s reason=%r tx=%s",
            admin_id, user_id, tx_type.value, tx.amount, reason.strip(), tx.id,
        )
        return tx

    async def _mutate(self, user_id, amount, tx_type: TransactionType, category, description,
                      reference_id, performed_by, commit: bool) -> WalletTransaction:
        value = to_money(amount)
        if value <= 0:
            raise ValidationError("Amount must be greater than 0")
        try:
            category = TransactionCategory(category)
        except ValueError:
            raise ValidationError(f"Unknown transaction category {category!r}")
        signed = value if tx_type == TransactionType.CREDIT else -value

        async with wallet_locks.hold(user_id):
            if not commit:
                # caller owns the unit of work: no retry, no rollback here
                try:
                    return await self._append(user_id, signed, tx_type, category, description, reference_id, performed_by)
                except StaleDataError:
                    raise ConcurrencyConflict(f"Wallet for {user_id} changed concurrently")

            for attempt in range(1, self.max_retries + 1):
                try:
                    tx = await self._append(user_id, signed, tx_type, category, description, reference_id, performed_by)
                    await self.session.commit()
                    logger.info(
                        "Ledger %s user=%s amount=%s category=%s balance_after=%s ref=%s",
                        tx_type.value, user_id, signed, category.value, tx.balance_after, reference_id,
                    )
                    return tx
                except (StaleDataError, IntegrityError) as e:
                    await self.session.rollback()
                    logger.warning("Wallet conflict for user=%s (attempt %s/%s): %s",
                                   user_id, attempt, self.max_retries, type(e).__name__)
                except Exception:
                    await self.session.rollback()
                    raise
            raise ConcurrencyConflict(f"Wallet for {user_id} kept changing; gave up after {self.max_retries} attempts")

    async def _lock_wallet(self, user_id: str, create: bool) -> Wallet | None:
        result = await self.session.execute(
            select(Wallet)
            .where(Wallet.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        wallet = result.scalar_one_or_none()
        if wallet is None and create:
            wallet = Wallet(user_id=user_id, balance=ZERO)
            self.session.add(wallet)
            await self.session.flush()
            logger.info("Created wallet %s for user=%s", wallet.id, user_id)
        return wallet

    async def _append(self, user_id, signed: Decimal, tx_type, category, description,
                      reference_id, performed_by) -> WalletTransaction:
        wallet = await self._lock_wallet(user_id, create=signed > 0)
        balance = to_money(wallet.balance) if wallet else ZERO
        if signed < 0 and balance < -signed:
            raise InsufficientBalance(required=-signed, available=balance)

        new_balance = to_money(balance + signed)
        wallet.balance = new_balance
        tx = WalletTransaction(
            wallet_id=wallet.id,
            amount=signed,
            type=tx_type.value,
            category=category.value,
            description=description,
            balance_after=new_balance,
            reference_id=reference_id,
            performed_by=performed_by,
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    @staticmethod
    def to_dict(tx: WalletTransaction) -> dict:
        return {
            "id": tx.id,
            "amount": money(tx.amount),
            "type": tx.type,
            "category": tx.category,
            "description": tx.description,
            "balance_after": money(tx.balance_after),
            "reference_id": tx.reference_id,
            "performed_by": tx.performed_by,
            "created_at": tx.created_at.isoformat() if tx.created_at else None,
        }
