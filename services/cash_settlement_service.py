"""
Cash settlement reconciler.

When a cash subscriber's slot is below the passenger threshold, the driver
never collects that day's fare, so nothing is refunded: the day is recorded
as a pending settlement record for ops to acknowledge. This service never
touches the wallet.
"""
import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from core.exceptions import NotFound
from models.db_models import CashSettlementRecord, Subscription
from models.enums import SettlementStatus

logger = logging.getLogger(__name__)


class CashSettlementService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _find(self, subscription_id: str, service_date: date) -> CashSettlementRecord | None:
        result = await self.session.execute(
            select(CashSettlementRecord)
            .where(CashSettlementRecord.subscription_id == subscription_id)
            .where(CashSettlementRecord.service_date == service_date)
        )
        return result.scalar_one_or_none()

    async def flag_pending(self, subscription_id: str, service_date: date,
                           commit: bool = True) -> tuple[CashSettlementRecord, bool]:
        """
        Record (subscription, date) as pending. Idempotent: a second call
        returns the existing record and created=False.

        With commit=False the record joins the caller's transaction (the
        trip scheduler's slot run).
        """
        existing = await self._find(subscription_id, service_date)
        if existing is not None:
            return existing, False

        subscription = await self.session.get(Subscription, subscription_id)
        if subscription is None:
            raise NotFound(f"Subscription {subscription_id} not found")

        record = CashSettlementRecord(
            subscription_id=subscription_id,
            user_id=subscription.user_id,
            service_date=service_date,
            status=SettlementStatus.PENDING.value,
        )
        self.session.add(record)
        if not commit:
            await self.session.flush()
            return record, True
        try:
            await self.session.commit()
        except IntegrityError:
            # flagged concurrently by another run
            await self.session.rollback()
            existing = await self._find(subscription_id, service_date)
            if existing is None:
                raise
            return existing, False
        logger.info("Cash settlement flagged: subscription=%s date=%s", subscription_id, service_date)
        return record, True

    async def acknowledge(self, record_id: int, admin_id: str) -> CashSettlementRecord:
        """pending -> acknowledged. Absent or already acknowledged records raise NotFound."""
        try:
            result = await self.session.execute(
                select(CashSettlementRecord)
                .where(CashSettlementRecord.id == record_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            record = result.scalar_one_or_none()
            if record is None or record.status != SettlementStatus.PENDING.value:
                raise NotFound(f"No pending cash settlement record {record_id}")
            record.status = SettlementStatus.ACKNOWLEDGED.value
            record.acknowledged_by = admin_id
            record.acknowledged_at = datetime.now(timezone.utc)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info("Cash settlement %s acknowledged by %s", record_id, admin_id)
        return record

    async def list_records(self, status: Optional[str] = None,
                           service_date: Optional[date] = None) -> list[CashSettlementRecord]:
        stmt = select(CashSettlementRecord).order_by(CashSettlementRecord.service_date.desc(),
                                                     CashSettlementRecord.id)
        if status:
            stmt = stmt.where(CashSettlementRecord.status == SettlementStatus(status).value)
        if service_date:
            stmt = stmt.where(CashSettlementRecord.service_date == service_date)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def to_dict(record: CashSettlementRecord) -> dict:
        return {
            "id": record.id,
            "subscription_id": record.subscription_id,
            "user_id": record.user_id,
            "service_date": record.service_date.isoformat(),
            "status": record.status,
            "acknowledged_by": record.acknowledged_by,
            "acknowledged_at": record.acknowledged_at.isoformat() if record.acknowledged_at else None,
            "created_at": record.created_at.isoformat() if record.created_at else None,
        }
