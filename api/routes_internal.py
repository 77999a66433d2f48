# api/routes_internal.py
"""
HTTP entry points for the daily jobs (external cron / ops).

Same operations workers/daily_jobs_worker.py runs on its own clock; both
are safe to overlap because trip generation and invoicing are idempotent.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import require_admin
from core.clock import local_today
from core.db import get_db_session
from core.response import ok
from models.schemas import BillingRunRequest, TripGenerationRunRequest
from services.billing_service import BillingService
from services.subscription_service import SubscriptionService
from services.trip_scheduler import TripGenerationScheduler

router = APIRouter()


@router.post("/trip-generation/run")
async def run_trip_generation(req: TripGenerationRunRequest, caller: dict = Depends(require_admin),
                              session: AsyncSession = Depends(get_db_session)):
    """Generate trips for [start_date, end_date]; defaults to the configured horizon from today."""
    scheduler = TripGenerationScheduler(session)
    if req.start_date is None:
        report = await scheduler.run_for_horizon(local_today(), dry_run=req.dry_run)
    else:
        report = await scheduler.run(req.start_date, req.end_date, dry_run=req.dry_run)
    return ok(report.to_dict())


@router.post("/billing/run")
async def run_billing(req: BillingRunRequest, caller: dict = Depends(require_admin),
                      session: AsyncSession = Depends(get_db_session)):
    """Retry failed invoices, invoice due subscriptions, then (optionally) the expiry sweep."""
    today = req.today or local_today()
    result = await BillingService(session).run(today)
    if req.sweep:
        result["sweep"] = await SubscriptionService(session).expire_sweep(today)
    return ok(result)
