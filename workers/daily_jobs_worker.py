"""
Daily jobs worker (time trigger).

Purpose:
- BILLING_RUN_HOUR local time: retry failed invoices, invoice due
  subscriptions, then the expiry sweep
- TRIP_GENERATION_HOUR local time: trip generation for the next
  TRIP_GENERATION_HORIZON_DAYS days
- Each job gets its own DB session; one failing job never stops the loop

Usage:
- python -m workers.daily_jobs_worker
- python -m workers.daily_jobs_worker --once trips|billing   (run one job now and exit)

Production notes:
- Run a single replica; overlapping runs are still safe (idempotent jobs,
  Redis run lock for trip generation)
"""
import argparse
import asyncio
import logging
from datetime import datetime, timedelta

from config.settings import settings
from core.clock import local_now
from core.db import async_session_maker
from core.logging import configure_logging
from services.billing_service import BillingService
from services.subscription_service import SubscriptionService
from services.trip_scheduler import TripGenerationScheduler

configure_logging()
logger = logging.getLogger(__name__)


def next_run_at(now: datetime, hour: int) -> datetime:
    """Next occurrence of hour:00 strictly after `now` (same tzinfo)."""
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class DailyJobsWorker:
    def __init__(self, session_maker=None):
        self.session_maker = session_maker or async_session_maker
        if self.session_maker is None:
            raise RuntimeError("Database is not configured (DATABASE_URL=disabled)")

    async def run_billing(self):
        today = local_now().date()
        async with self.session_maker() as session:
            result = await BillingService(session).run(today)
            result["sweep"] = await SubscriptionService(session).expire_sweep(today)
        logger.info("Billing job done for %s: %s", today, result["sweep"])
        return result

    async def run_trip_generation(self):
        async with self.session_maker() as session:
            report = await TripGenerationScheduler(session).run_for_horizon(local_now().date())
        return report

    async def _job_loop(self, name: str, hour: int, job):
        while True:
            now = local_now()
            wake = next_run_at(now, hour)
            logger.info("[%s] next run at %s", name, wake.isoformat())
            await asyncio.sleep((wake - now).total_seconds())
            try:
                await job()
            except Exception:
                logger.exception("[%s] job failed; retrying at the next scheduled time", name)

    async def run(self):
        logger.info("Daily jobs worker started (tz=%s, billing=%02d:00, trips=%02d:00)",
                    settings.TIMEZONE, settings.BILLING_RUN_HOUR, settings.TRIP_GENERATION_HOUR)
        await asyncio.gather(
            self._job_loop("billing", settings.BILLING_RUN_HOUR, self.run_billing),
            self._job_loop("trip-generation", settings.TRIP_GENERATION_HOUR, self.run_trip_generation),
        )


async def main(once: str | None = None):
    worker = DailyJobsWorker()
    if once == "trips":
        await worker.run_trip_generation()
    elif once == "billing":
        await worker.run_billing()
    else:
        await worker.run()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Carpool daily jobs")
    parser.add_argument("--once", choices=["trips", "billing"], help="run one job now and exit")
    args = parser.parse_args()
    asyncio.run(main(args.once))
