# api/routes_user.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import get_current_user
from core.db import get_db_session
from core.response import money, ok
from models.schemas import CancellationRequest, CostPreviewRequest, PurchaseRequest, TopUpRequest
from services.subscription_service import SubscriptionService
from services.wallet_ledger import WalletLedger

router = APIRouter()


@router.get("/wallet")
async def my_wallet(user: dict = Depends(get_current_user), session: AsyncSession = Depends(get_db_session)):
    ledger = WalletLedger(session)
    return ok({"user_id": user["user_id"], "balance": money(await ledger.balance_of(user["user_id"]))})


@router.post("/wallet/top-up")
async def top_up(req: TopUpRequest, user: dict = Depends(get_current_user),
                 session: AsyncSession = Depends(get_db_session)):
    """Credit the wallet after a confirmed external payment."""
    ledger = WalletLedger(session)
    tx = await ledger.top_up(user["user_id"], req.amount, reference_id=req.reference_id)
    return ok(ledger.to_dict(tx))


@router.get("/wallet/transactions")
async def my_transactions(limit: int = Query(50, ge=1, le=500), user: dict = Depends(get_current_user),
                          session: AsyncSession = Depends(get_db_session)):
    ledger = WalletLedger(session)
    return ok([ledger.to_dict(tx) for tx in await ledger.transactions(user["user_id"], limit)])


@router.post("/subscriptions/preview")
async def preview_cost(req: CostPreviewRequest, user: dict = Depends(get_current_user),
                       session: AsyncSession = Depends(get_db_session)):
    breakdown = await SubscriptionService(session).preview_cost(req.route_id, req.weekdays)
    return ok(breakdown.to_dict())


@router.post("/subscriptions")
async def purchase(req: PurchaseRequest, user: dict = Depends(get_current_user),
                   session: AsyncSession = Depends(get_db_session)):
    svc = SubscriptionService(session)
    subscription = await svc.purchase(
        user_id=user["user_id"],
        route_id=req.route_id,
        weekdays=req.weekdays,
        time_slot_id=req.time_slot_id,
        boarding_point_id=req.boarding_point_id,
        drop_off_point_id=req.drop_off_point_id,
        start_date=req.start_date,
        payment_method=req.payment_method,
    )
    return ok(svc.to_dict(subscription))


@router.get("/subscriptions")
async def my_subscriptions(user: dict = Depends(get_current_user), session: AsyncSession = Depends(get_db_session)):
    svc = SubscriptionService(session)
    return ok([svc.to_dict(s) for s in await svc.list_subscriptions(user_id=user["user_id"])])


@router.post("/subscriptions/{subscription_id}/cancel-request")
async def request_cancellation(subscription_id: str, req: CancellationRequest,
                               user: dict = Depends(get_current_user),
                               session: AsyncSession = Depends(get_db_session)):
    """Stop renewing; the subscription stays usable until its end date."""
    svc = SubscriptionService(session)
    subscription = await svc.request_cancellation(subscription_id, user["user_id"], req.reason)
    return ok(svc.to_dict(subscription))
