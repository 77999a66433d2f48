# api/routes_admin.py
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import require_admin
from core.clock import local_today
from core.db import get_db_session
from core.response import money, ok
from models.enums import InvoiceStatus, PaymentMethod, SettlementStatus, SubscriptionStatus
from models.schemas import (
    AdminCancelRequest, BlackoutRequest, EditDatesRequest, HolidayImportRequest,
    InvoiceRefundRequest, WalletAdjustmentRequest,
)
from services.billing_service import BillingService
from services.cash_settlement_service import CashSettlementService
from services.holiday_calendar import HolidayCalendar
from services.subscription_service import SubscriptionService
from services.trip_scheduler import TripGenerationScheduler
from services.trip_matcher import FallbackTripMatcher
from services.wallet_ledger import WalletLedger

router = APIRouter()


# ---------- subscriptions ----------
@router.get("/subscriptions")
async def list_subscriptions(
    status: Optional[SubscriptionStatus] = None,
    user_id: Optional[str] = None,
    route_id: Optional[str] = None,
    payment_method: Optional[PaymentMethod] = None,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    svc = SubscriptionService(session)
    rows = await svc.list_subscriptions(
        status=status.value if status else None,
        user_id=user_id,
        route_id=route_id,
        payment_method=payment_method.value if payment_method else None,
    )
    return ok([svc.to_dict(s) for s in rows])


@router.get("/subscriptions/{subscription_id}")
async def get_subscription(subscription_id: str, admin: dict = Depends(require_admin),
                           session: AsyncSession = Depends(get_db_session)):
    svc = SubscriptionService(session)
    return ok(svc.to_dict(await svc.get(subscription_id)))


@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(subscription_id: str, req: AdminCancelRequest,
                              admin: dict = Depends(require_admin),
                              session: AsyncSession = Depends(get_db_session)):
    """Cancel now with a prorated wallet refund (online subscriptions)."""
    svc = SubscriptionService(session)
    result = await svc.cancel(subscription_id, req.reason, admin_id=admin["user_id"])
    return ok({"refund_amount": money(result["refund_amount"]), "subscription": svc.to_dict(result["subscription"])})


@router.patch("/subscriptions/{subscription_id}/dates")
async def edit_subscription_dates(subscription_id: str, req: EditDatesRequest,
                                  admin: dict = Depends(require_admin),
                                  session: AsyncSession = Depends(get_db_session)):
    svc = SubscriptionService(session)
    subscription = await svc.edit_dates(subscription_id, req.start_date, req.end_date)
    return ok(svc.to_dict(subscription))


@router.post("/subscriptions/expire-sweep")
async def expire_sweep(today: Optional[date] = None, admin: dict = Depends(require_admin),
                       session: AsyncSession = Depends(get_db_session)):
    return ok(await SubscriptionService(session).expire_sweep(today))


# ---------- cash settlements ----------
@router.get("/cash-settlements")
async def list_cash_settlements(status: Optional[SettlementStatus] = None, service_date: Optional[date] = None,
                                admin: dict = Depends(require_admin),
                                session: AsyncSession = Depends(get_db_session)):
    svc = CashSettlementService(session)
    rows = await svc.list_records(status=status.value if status else None, service_date=service_date)
    return ok([svc.to_dict(r) for r in rows])


@router.post("/cash-settlements/{record_id}/acknowledge")
async def acknowledge_cash_settlement(record_id: int, admin: dict = Depends(require_admin),
                                      session: AsyncSession = Depends(get_db_session)):
    svc = CashSettlementService(session)
    return ok(svc.to_dict(await svc.acknowledge(record_id, admin["user_id"])))


# ---------- wallets ----------
@router.get("/wallets/{user_id}")
async def view_wallet(user_id: str, limit: int = Query(50, ge=1, le=500),
                      admin: dict = Depends(require_admin),
                      session: AsyncSession = Depends(get_db_session)):
    ledger = WalletLedger(session)
    return ok({
        "user_id": user_id,
        "balance": money(await ledger.balance_of(user_id)),
        "transactions": [ledger.to_dict(tx) for tx in await ledger.transactions(user_id, limit)],
    })


@router.post("/wallets/{user_id}/adjust")
async def adjust_wallet(user_id: str, req: WalletAdjustmentRequest, admin: dict = Depends(require_admin),
                        session: AsyncSession = Depends(get_db_session)):
    ledger = WalletLedger(session)
    tx = await ledger.admin_adjust(user_id, req.amount, req.direction, req.reason, admin["user_id"])
    return ok(ledger.to_dict(tx))


@router.get("/wallets/{user_id}/audit")
async def audit_wallet(user_id: str, admin: dict = Depends(require_admin),
                       session: AsyncSession = Depends(get_db_session)):
    report = await WalletLedger(session).audit(user_id)
    report["cached"] = money(report["cached"])
    report["derived"] = money(report["derived"])
    return ok(report)


# ---------- blackouts / holidays ----------
@router.get("/blackouts")
async def list_blackouts(start: Optional[date] = None, end: Optional[date] = None,
                         admin: dict = Depends(require_admin),
                         session: AsyncSession = Depends(get_db_session)):
    calendar = HolidayCalendar(session)
    return ok([calendar.to_dict(b) for b in await calendar.list_blackouts(start, end)])


@router.post("/blackouts")
async def add_blackout(req: BlackoutRequest, admin: dict = Depends(require_admin),
                       session: AsyncSession = Depends(get_db_session)):
    calendar = HolidayCalendar(session)
    return ok(calendar.to_dict(await calendar.add_blackout(req.name, req.start_date, req.end_date)))


@router.delete("/blackouts/{blackout_id}")
async def remove_blackout(blackout_id: int, admin: dict = Depends(require_admin),
                          session: AsyncSession = Depends(get_db_session)):
    await HolidayCalendar(session).remove_blackout(blackout_id)
    return ok({"deleted": blackout_id})


@router.get("/holidays/suggestions")
async def holiday_suggestions(admin: dict = Depends(require_admin),
                              session: AsyncSession = Depends(get_db_session)):
    return ok(await HolidayCalendar(session).holiday_suggestions(local_today()))


@router.post("/holidays/import")
async def import_holidays(req: HolidayImportRequest, admin: dict = Depends(require_admin),
                          session: AsyncSession = Depends(get_db_session)):
    calendar = HolidayCalendar(session)
    result = await calendar.import_holidays(local_today(), year=req.year, names=req.names)
    return ok({"created": [calendar.to_dict(b) for b in result["created"]], "skipped": result["skipped"]})


# ---------- invoices ----------
@router.get("/invoices")
async def list_invoices(status: Optional[InvoiceStatus] = None, user_id: Optional[str] = None,
                        subscription_id: Optional[str] = None, admin: dict = Depends(require_admin),
                        session: AsyncSession = Depends(get_db_session)):
    svc = BillingService(session)
    rows = await svc.list_invoices(status=status.value if status else None, user_id=user_id,
                                   subscription_id=subscription_id)
    return ok([svc.to_dict(i) for i in rows])


@router.post("/invoices/{invoice_number}/refund")
async def refund_invoice(invoice_number: str, req: InvoiceRefundRequest, admin: dict = Depends(require_admin),
                         session: AsyncSession = Depends(get_db_session)):
    svc = BillingService(session)
    return ok(svc.to_dict(await svc.refund_invoice(invoice_number, req.reason, admin["user_id"])))


# ---------- trips ----------
@router.get("/trips")
async def list_trips(service_date: Optional[date] = None, route_id: Optional[str] = None,
                     admin: dict = Depends(require_admin),
                     session: AsyncSession = Depends(get_db_session)):
    # listing never calls the optimizer
    scheduler = TripGenerationScheduler(session, matcher=FallbackTripMatcher())
    trips = await scheduler.list_trips(service_date=service_date, route_id=route_id)
    return ok([scheduler.trip_to_dict(t) for t in trips])
